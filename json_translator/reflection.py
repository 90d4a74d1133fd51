"""Heuristic quality checks and a single consolidated correction pass.

The checks run locally and cost nothing. Only when they find critical or
high severity issues is the completion service asked, in one call, to
correct the flagged translations.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from json_translator.batch_scheduler import decode_newlines, encode_newlines
from json_translator.completion import CompletionService
from json_translator.errors import ProviderError, TranslationError
from json_translator.format_protector import get_validation_report, has_format_elements
from json_translator.terminology import Terminology

logger = logging.getLogger(__name__)

MIN_COMPLETENESS_RATIO = 0.2
SHORT_TEXT_LENGTH = 10
MIN_ITEMS_FOR_REFLECTION = 3


class IssueKind(Enum):
    TERMINOLOGY = "terminology"
    FORMAT = "format"
    CONTEXT = "context"
    NATURALNESS = "naturalness"
    COMPLETENESS = "completeness"


class Severity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


ACTIONABLE_SEVERITIES = frozenset({Severity.CRITICAL, Severity.HIGH})


@dataclass
class QualityIssue:
    key: str
    kind: IssueKind
    severity: Severity
    description: str

    @property
    def actionable(self) -> bool:
        return self.severity in ACTIONABLE_SEVERITIES


@dataclass
class ReflectionInput:
    source_texts: Dict[str, str]
    translated_texts: Dict[str, str]
    source_language: str
    target_language: str
    terminology: Optional[Terminology] = None
    source_language_name: Optional[str] = None
    target_language_name: Optional[str] = None


@dataclass
class ReflectionResult:
    issues: List[QualityIssue] = field(default_factory=list)
    improved_texts: Dict[str, str] = field(default_factory=dict)
    reflection_needed: bool = False
    api_calls_used: int = 0
    total_tokens: int = 0
    error: Optional[TranslationError] = None


def _check_format(key: str, source: str, translated: str) -> List[QualityIssue]:
    if not has_format_elements(source):
        return []
    report = get_validation_report(source, translated)
    if report.is_valid:
        return []
    return [QualityIssue(key, IssueKind.FORMAT, Severity.CRITICAL, "; ".join(report.errors))]


def _check_terminology(key: str, source: str, translated: str, terminology: Optional[Terminology],
                       target_language: str) -> List[QualityIssue]:
    if terminology is None:
        return []
    issues = []
    for term in terminology.preserve_terms:
        if term in source and term not in translated:
            issues.append(QualityIssue(key, IssueKind.TERMINOLOGY, Severity.CRITICAL,
                                       f"Preserved term '{term}' is missing or was translated"))

    source_lower = source.casefold()
    translated_lower = translated.casefold()
    for term in terminology.source_terms():
        if term.casefold() not in source_lower:
            continue
        expected = terminology.get_term_translation(term, target_language)
        if expected and expected.casefold() not in translated_lower:
            issues.append(QualityIssue(key, IssueKind.TERMINOLOGY, Severity.HIGH,
                                       f"Term '{term}' should be translated as '{expected}'"))
    return issues


def _check_completeness(key: str, source: str, translated: str) -> List[QualityIssue]:
    if not translated.strip():
        return [QualityIssue(key, IssueKind.COMPLETENESS, Severity.CRITICAL, "Translation is empty")]
    if len(source) > SHORT_TEXT_LENGTH and len(translated) < MIN_COMPLETENESS_RATIO * len(source):
        return [QualityIssue(key, IssueKind.COMPLETENESS, Severity.HIGH,
                             f"Translation is suspiciously short ({len(translated)} vs {len(source)} characters)")]
    return []


class ReflectionEngine:
    """Runs the quality heuristics and, when needed, one correction call."""

    def __init__(self, completion_service: CompletionService, temperature: float = 0.1,
                 max_tokens: Optional[int] = 4096):
        self.completion_service = completion_service
        self.temperature = temperature
        self.max_tokens = max_tokens

    def should_reflect(self, translations: Dict[str, str], terminology: Optional[Terminology]) -> bool:
        if terminology is not None and not terminology.is_empty():
            return True
        return len(translations) >= MIN_ITEMS_FOR_REFLECTION

    def check_quality(self, reflection_input: ReflectionInput) -> List[QualityIssue]:
        """Run all heuristics over every translated key that has a source text."""
        issues: List[QualityIssue] = []
        for key, translated in reflection_input.translated_texts.items():
            source = reflection_input.source_texts.get(key)
            if source is None:
                continue
            issues.extend(_check_format(key, source, translated))
            issues.extend(_check_terminology(key, source, translated, reflection_input.terminology,
                                             reflection_input.target_language))
            issues.extend(_check_completeness(key, source, translated))
        return issues

    def build_correction_prompt(self, reflection_input: ReflectionInput,
                                issues_by_key: Dict[str, List[QualityIssue]]) -> str:
        source_label = reflection_input.source_language_name or reflection_input.source_language
        target_label = reflection_input.target_language_name or reflection_input.target_language

        blocks = []
        for key, issues in issues_by_key.items():
            issue_lines = "\n".join(f"- [{issue.severity.value}/{issue.kind.value}] {issue.description}"
                                    for issue in issues)
            blocks.append(
                f"Key: {key}\n"
                f"Source: {encode_newlines(reflection_input.source_texts[key])}\n"
                f"Current translation: {encode_newlines(reflection_input.translated_texts[key])}\n"
                f"Issues:\n{issue_lines}"
            )

        return f"""Review and correct the following {source_label} to {target_label} translations from a JSON i18n file. Each entry lists the problems found by automated checks.

**Flagged Translations**:
{chr(10).join(blocks)}

**Instructions**:
- Fix every listed issue while keeping the meaning of the source.
- Keep placeholders, HTML tags, URLs and markdown exactly as in the source.
- Keep <newline> markers where line breaks belong.
- Return one line per key in the format `KEY: corrected translation`, using the keys exactly as given.
- Do not add explanations."""

    @staticmethod
    def parse_corrections(content: str, flagged_keys: Iterable[str]) -> Dict[str, str]:
        """Parse ``KEY: text`` lines, split on the first colon, keeping only flagged keys."""
        allowed = set(flagged_keys)
        corrections: Dict[str, str] = {}
        for raw_line in content.splitlines():
            key, separator, text = raw_line.strip().partition(":")
            key = key.strip().strip("`")
            text = text.strip()
            if separator and key in allowed and text:
                corrections[key] = decode_newlines(text)
        return corrections

    async def reflect(self, reflection_input: ReflectionInput) -> ReflectionResult:
        """
        Check the translations and correct critical and high severity issues in one call.

        A failed correction call does not raise; it is recorded in
        ``ReflectionResult.error`` and the caller keeps the original translations.
        """
        result = ReflectionResult()
        if not reflection_input.translated_texts:
            return result

        result.issues = self.check_quality(reflection_input)
        issues_by_key: Dict[str, List[QualityIssue]] = {}
        for issue in result.issues:
            if issue.actionable:
                issues_by_key.setdefault(issue.key, []).append(issue)

        logger.info("Quality check found %d issues, %d keys need correction",
                    len(result.issues), len(issues_by_key))
        if not issues_by_key:
            return result

        result.reflection_needed = True
        prompt = self.build_correction_prompt(reflection_input, issues_by_key)
        try:
            result.api_calls_used = 1
            response = await self.completion_service.complete(
                prompt,
                system_message="You are a meticulous localization reviewer who fixes translation errors.",
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except ProviderError as exc:
            logger.warning(f"Reflection correction call failed, keeping original translations: {exc}")
            result.error = TranslationError("reflection correction call failed", cause=exc,
                                            flagged_keys=len(issues_by_key))
            return result

        result.total_tokens = response.token_usage.total_tokens
        result.improved_texts = self.parse_corrections(response.text, issues_by_key)
        for key, improved in result.improved_texts.items():
            report = get_validation_report(reflection_input.source_texts[key], improved)
            if not report.is_valid:
                logger.warning("Corrected translation for key '%s' still fails the format check: %s",
                               key, "; ".join(report.errors))
        logger.info("Reflection corrected %d of %d flagged keys", len(result.improved_texts), len(issues_by_key))
        return result
