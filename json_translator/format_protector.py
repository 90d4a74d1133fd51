"""Detection and verification of tokens that must survive translation unchanged.

Four classes of tokens are protected: placeholders (``{name}``, ``{{name}}``,
``%s``, ``%(name)s``), markup tags (``<b>``), absolute URLs and lightweight
markdown spans. A translation is valid when it contains the same multiset of
``(class, value)`` pairs as its source; positions are not compared.
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from json_translator.errors import FormatError

logger = logging.getLogger(__name__)


class ElementClass(Enum):
    PLACEHOLDER = "placeholder"
    MARKUP = "markup"
    URL = "url"
    MARKDOWN = "markdown"


PLACEHOLDER_PATTERN = re.compile(r'\{\{[^{}]+\}\}|\{[^{}]+\}|%\([^)]+\)[sd]|%[sd]')
MARKUP_PATTERN = re.compile(r'<[^<>]+>')
URL_PATTERN = re.compile(r'https?://\S+')
MARKDOWN_PATTERN = re.compile(r'\*\*[^*]+\*\*|\*[^*]+\*|__[^_]+__|_[^_]+_|\[[^\]]+\]\([^)]+\)')

_EXTRACTION_RULES: Tuple[Tuple[ElementClass, re.Pattern], ...] = (
    (ElementClass.PLACEHOLDER, PLACEHOLDER_PATTERN),
    (ElementClass.MARKUP, MARKUP_PATTERN),
    (ElementClass.URL, URL_PATTERN),
    (ElementClass.MARKDOWN, MARKDOWN_PATTERN),
)

_INSTRUCTION_LABELS: Dict[ElementClass, str] = {
    ElementClass.PLACEHOLDER: "Placeholders (never translate)",
    ElementClass.MARKUP: "Markup tags (keep intact)",
    ElementClass.URL: "URLs (keep intact)",
    ElementClass.MARKDOWN: "Markdown (preserve syntax)",
}


@dataclass(frozen=True)
class FormatElement:
    element_class: ElementClass
    value: str
    position: int

    @property
    def signature(self) -> Tuple[ElementClass, str]:
        return self.element_class, self.value


@dataclass
class ValidationReport:
    is_valid: bool = True
    missing_elements: List[FormatElement] = field(default_factory=list)
    extra_elements: List[FormatElement] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def extract_format_elements(text: str) -> List[FormatElement]:
    """
    Extract all protected tokens from ``text``.

    Each rule is applied independently and the results are unioned, so a
    token matched by two rules (a URL inside a markdown link) is reported
    once per rule. Markdown spans that start or end inside a placeholder or
    URL (``{first_name} and {last_name}``) are not markdown and are skipped.
    """
    elements: List[FormatElement] = []
    if not text:
        return elements
    protected_spans: List[Tuple[int, int]] = []
    for element_class, pattern in _EXTRACTION_RULES:
        for match in pattern.finditer(text):
            if element_class is ElementClass.MARKDOWN and _cuts_into(match.span(), protected_spans):
                continue
            if element_class in (ElementClass.PLACEHOLDER, ElementClass.URL):
                protected_spans.append(match.span())
            elements.append(FormatElement(element_class, match.group(0), match.start()))
    return elements


def _cuts_into(span: Tuple[int, int], protected_spans: List[Tuple[int, int]]) -> bool:
    start, end = span
    return any(span_start < start < span_end or span_start < end < span_end
               for span_start, span_end in protected_spans)


def has_format_elements(text: str) -> bool:
    return bool(extract_format_elements(text))


def _group_by_signature(elements: List[FormatElement]) -> Dict[Tuple[ElementClass, str], List[FormatElement]]:
    grouped: Dict[Tuple[ElementClass, str], List[FormatElement]] = {}
    for element in elements:
        grouped.setdefault(element.signature, []).append(element)
    return grouped


def get_validation_report(original: str, translated: str) -> ValidationReport:
    """
    Compare the protected tokens of a source text and its translation.

    Returns:
        ValidationReport: ``missing_elements`` lists source tokens the
        translation lacks, ``extra_elements`` tokens the translation added.
        ``errors`` holds one message per deficient token group.
    """
    report = ValidationReport()
    original_groups = _group_by_signature(extract_format_elements(original))
    translated_groups = _group_by_signature(extract_format_elements(translated))
    original_counts = Counter({signature: len(group) for signature, group in original_groups.items()})
    translated_counts = Counter({signature: len(group) for signature, group in translated_groups.items()})

    for signature, shortfall in (original_counts - translated_counts).items():
        element_class, value = signature
        report.missing_elements.extend(original_groups[signature][:shortfall])
        report.errors.append(f"Missing {shortfall} occurrence(s) of {element_class.value} '{value}'")

    for signature, surplus in (translated_counts - original_counts).items():
        report.extra_elements.extend(translated_groups[signature][-surplus:])

    report.is_valid = not report.missing_elements
    return report


def validate_format(original: str, translated: str) -> None:
    """
    Raise if ``translated`` lacks any protected token of ``original``.

    Raises:
        FormatError: Listing every missing token group.
    """
    report = get_validation_report(original, translated)
    if not report.is_valid:
        raise FormatError(
            "format elements lost in translation: " + "; ".join(report.errors),
            missing_count=len(report.missing_elements)
        )


def build_format_instructions(text: str) -> str:
    """Describe the protected tokens of ``text`` for a translation prompt; empty when there are none."""
    elements = extract_format_elements(text)
    if not elements:
        return ""

    values_by_class: Dict[ElementClass, List[str]] = {}
    for element in elements:
        values = values_by_class.setdefault(element.element_class, [])
        if element.value not in values:
            values.append(element.value)

    lines = ["**Format Preservation (critical)**:"]
    for element_class, label in _INSTRUCTION_LABELS.items():
        if element_class in values_by_class:
            lines.append(f"- {label}: {', '.join(values_by_class[element_class])}")
    return "\n".join(lines)
