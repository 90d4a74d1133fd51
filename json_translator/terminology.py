"""Terminology: terms to keep verbatim and terms to translate consistently.

Consistent terms are stored as index-aligned lists per language: the term at
position ``i`` of the source-language list translates to the entry at
position ``i`` of each target-language list.
"""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jsonschema

from json_translator.completion import CompletionService, TokenUsage, count_tokens
from json_translator.errors import DocumentIOError, ProviderError, TerminologyError

logger = logging.getLogger(__name__)

TERMINOLOGY_FILE_NAME = "terminology.json"

TERMINOLOGY_SCHEMA = {
    "type": "object",
    "properties": {
        "sourceLanguage": {"type": "string", "minLength": 1},
        "preserveTerms": {"type": "array", "items": {"type": "string"}},
        "consistentTerms": {
            "type": "object",
            "additionalProperties": {"type": "array", "items": {"type": "string"}}
        }
    },
    "required": ["sourceLanguage"]
}

_DETECTED_TERM_LIST = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "term": {"type": "string", "minLength": 1},
            "reason": {"type": "string"},
            "frequency": {"type": "integer"},
            "examples": {"type": "array", "items": {"type": "string"}}
        },
        "required": ["term"]
    }
}

DETECTION_SCHEMA = {
    "type": "object",
    "properties": {
        "preserveTerms": _DETECTED_TERM_LIST,
        "consistentTerms": _DETECTED_TERM_LIST
    }
}

TERM_TRANSLATION_SCHEMA = {
    "type": "object",
    "patternProperties": {
        "^.*$": {"type": "string"}
    },
    "additionalProperties": False
}


@dataclass
class Terminology:
    source_language: str
    preserve_terms: List[str] = field(default_factory=list)
    consistent_terms: Dict[str, List[str]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.preserve_terms and not self.consistent_terms.get(self.source_language)

    def source_terms(self) -> List[str]:
        return self.consistent_terms.get(self.source_language, [])

    def get_term_translation(self, term: str, target_language: str) -> Optional[str]:
        """Return the agreed target-language form of ``term``, or None when unknown."""
        if term in self.preserve_terms:
            return term
        source_terms = self.source_terms()
        if term not in source_terms:
            return None
        index = source_terms.index(term)
        target_terms = self.consistent_terms.get(target_language, [])
        if index < len(target_terms) and target_terms[index]:
            return target_terms[index]
        return None

    def get_missing_translations(self, target_language: str) -> List[str]:
        return [term for term in self.source_terms()
                if self.get_term_translation(term, target_language) is None]

    def add_preserve_term(self, term: str) -> None:
        if term and term not in self.preserve_terms:
            self.preserve_terms.append(term)

    def add_consistent_term(self, language: str, term: str) -> None:
        terms = self.consistent_terms.setdefault(language, [])
        if term and term not in terms:
            terms.append(term)

    def set_term_translation(self, term: str, target_language: str, translation: str) -> None:
        """Record ``translation`` at the index of ``term`` in the target-language list."""
        source_terms = self.source_terms()
        if term not in source_terms:
            raise TerminologyError(f"'{term}' is not a consistent term", term=term)
        index = source_terms.index(term)
        target_terms = self.consistent_terms.setdefault(target_language, [])
        while len(target_terms) <= index:
            target_terms.append("")
        target_terms[index] = translation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceLanguage": self.source_language,
            "preserveTerms": list(self.preserve_terms),
            "consistentTerms": {language: list(terms) for language, terms in self.consistent_terms.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Terminology":
        try:
            jsonschema.validate(instance=data, schema=TERMINOLOGY_SCHEMA)
        except jsonschema.ValidationError as schema_exc:
            raise TerminologyError(f"invalid terminology data: {schema_exc.message}") from schema_exc
        return cls(
            source_language=data["sourceLanguage"],
            preserve_terms=list(data.get("preserveTerms", [])),
            consistent_terms={language: list(terms) for language, terms in data.get("consistentTerms", {}).items()},
        )


def build_prompt_dictionary(terminology: Optional[Terminology], target_language: str) -> str:
    """
    Format the terminology directive for a translation prompt.

    Args:
        terminology: The terminology to describe, or None.
        target_language: Language code of the translation target.

    Returns:
        str: The directive, or an empty string when there is nothing to say.
    """
    if terminology is None:
        return ""

    sections: List[str] = []
    if terminology.preserve_terms:
        lines = [f'- "{term}" (never translate, keep exactly as is)' for term in terminology.preserve_terms]
        sections.append("**Terms to Preserve**:\n" + "\n".join(lines))

    required = []
    for term in terminology.source_terms():
        translation = terminology.get_term_translation(term, target_language)
        if translation:
            required.append(f'- "{term}" → "{translation}"')
    if required:
        sections.append("**Required Term Translations**:\n" + "\n".join(required))

    if not sections:
        return ""
    sections.append("Follow these terminology rules exactly.")
    return "\n\n".join(sections)


class TerminologyRepository:
    """Stores one ``terminology.json`` per identifier (a directory below ``base_dir``)."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def path_for(self, identifier: str) -> str:
        return os.path.join(self.base_dir, identifier, TERMINOLOGY_FILE_NAME)

    def exists(self, identifier: str) -> bool:
        return os.path.isfile(self.path_for(identifier))

    def load(self, identifier: str) -> Terminology:
        path = self.path_for(identifier)
        try:
            with open(path, 'r', encoding='utf-8') as terminology_file:
                data = json.load(terminology_file)
        except json.JSONDecodeError as json_exc:
            raise TerminologyError("terminology file is not valid JSON", cause=json_exc, path=path) from json_exc
        except OSError as os_exc:
            raise DocumentIOError("could not read terminology file", cause=os_exc, path=path) from os_exc
        try:
            return Terminology.from_dict(data)
        except TerminologyError as exc:
            exc.with_context("path", path)
            raise

    def save(self, identifier: str, terminology: Terminology) -> str:
        path = self.path_for(identifier)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'w', encoding='utf-8') as terminology_file:
                json.dump(terminology.to_dict(), terminology_file, ensure_ascii=False, indent=2)
                terminology_file.write("\n")
        except OSError as os_exc:
            raise DocumentIOError("could not write terminology file", cause=os_exc, path=path) from os_exc
        logger.info("Saved terminology to %s", path)
        return path


_CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$')


def _parse_json_answer(content: str, schema: Dict[str, Any]) -> Any:
    stripped = _CODE_FENCE.sub("", content.strip())
    try:
        parsed = json.loads(stripped)
        jsonschema.validate(instance=parsed, schema=schema)
    except json.JSONDecodeError as json_exc:
        logger.debug(f"Invalid terminology response (JSON Decode Error):\n---\n{content}\n---")
        raise TerminologyError("completion did not return valid JSON", cause=json_exc) from json_exc
    except jsonschema.ValidationError as schema_exc:
        logger.debug(f"Invalid terminology response (Schema Error):\n---\n{content}\n---")
        raise TerminologyError(f"completion JSON did not match the schema: {schema_exc.message}") from schema_exc
    return parsed


class TerminologyManager:
    """Detects terminology in source texts and translates missing consistent terms."""

    def __init__(self, completion_service: CompletionService, max_detection_tokens: int = 12000,
                 max_tokens: Optional[int] = None, model_name: str = 'gpt-3.5-turbo'):
        self.completion_service = completion_service
        self.max_detection_tokens = max_detection_tokens
        self.max_tokens = max_tokens
        self.model_name = model_name

    def _select_detection_texts(self, texts: Sequence[str]) -> List[str]:
        selected: List[str] = []
        budget = self.max_detection_tokens
        for text in dict.fromkeys(texts):
            cost = count_tokens(text, self.model_name)
            if cost > budget:
                logger.warning("Terminology detection limited to %d of %d distinct texts by the token budget.",
                               len(selected), len(set(texts)))
                break
            budget -= cost
            selected.append(text)
        return selected

    def build_detection_prompt(self, texts: Sequence[str], source_language: str) -> str:
        document = "\n".join(f"- {text}" for text in texts)
        return f"""Analyze the following {source_language} texts from a JSON i18n file ({len(texts)} texts) and identify terms that need special handling during translation.

<DOCUMENT>
{document}
</DOCUMENT>

Identify two kinds of terms:
1. **preserveTerms**: brand names, product names, technical acronyms and proper nouns that must never be translated.
2. **consistentTerms**: domain terms that appear repeatedly and must be translated the same way everywhere.

Only include terms that actually appear in the document. Focus on quality over quantity (typically 5-15 terms).

Respond with JSON only, in this shape:
{{"preserveTerms": [{{"term": "API", "reason": "Technical acronym", "frequency": 3, "examples": ["API key"]}}],
 "consistentTerms": [{{"term": "credits", "reason": "Core business concept", "frequency": 5, "examples": ["Buy credits"]}}]}}"""

    async def detect_terminology(self, texts: Sequence[str], source_language: str) -> Tuple[Terminology, TokenUsage]:
        """
        Ask the completion service for preserve and consistent terms in ``texts``.

        Raises:
            TerminologyError: If the call fails or the answer is not valid JSON of the expected shape.
        """
        selected = self._select_detection_texts(texts)
        terminology = Terminology(source_language=source_language)
        if not selected:
            return terminology, TokenUsage()

        prompt = self.build_detection_prompt(selected, source_language)
        try:
            response = await self.completion_service.complete(
                prompt,
                system_message="You are an expert terminology analyst for software localization.",
                temperature=0.1,
                max_tokens=self.max_tokens,
                json_response=True,
            )
        except ProviderError as exc:
            raise TerminologyError("terminology detection call failed", cause=exc,
                                   language=source_language, text_count=len(selected)) from exc

        detected = _parse_json_answer(response.text, DETECTION_SCHEMA)
        for entry in detected.get("preserveTerms", []):
            terminology.add_preserve_term(entry["term"].strip())
        for entry in detected.get("consistentTerms", []):
            term = entry["term"].strip()
            if term not in terminology.preserve_terms:
                terminology.add_consistent_term(source_language, term)

        logger.info("Detected %d preserve terms and %d consistent terms",
                    len(terminology.preserve_terms), len(terminology.source_terms()))
        return terminology, response.token_usage

    async def translate_missing_terms(self, terminology: Terminology, target_language: str,
                                      target_language_name: Optional[str] = None) -> TokenUsage:
        """
        Fill in target-language forms for consistent terms that have none yet.

        Returns:
            TokenUsage: Usage of the single completion call, or empty usage when nothing was missing.

        Raises:
            TerminologyError: If the call fails or the answer is not a JSON object of strings.
        """
        missing = terminology.get_missing_translations(target_language)
        if not missing:
            return TokenUsage()

        language_label = target_language_name or target_language
        term_list = "\n".join(f'- "{term}"' for term in missing)
        prompt = f"""Translate the following {terminology.source_language} terms to {language_label}. They are recurring terms of a software user interface and must be translated consistently.

{term_list}

Respond with a JSON object that maps each term to its translation, for example {{"credits": "..."}}."""
        try:
            response = await self.completion_service.complete(
                prompt,
                system_message="You are a professional terminology translator for software localization.",
                temperature=0.1,
                max_tokens=self.max_tokens,
                json_response=True,
            )
        except ProviderError as exc:
            raise TerminologyError("term translation call failed", cause=exc,
                                   language=target_language, term_count=len(missing)) from exc

        translations = _parse_json_answer(response.text, TERM_TRANSLATION_SCHEMA)
        added = 0
        for term in missing:
            translation = translations.get(term, "").strip()
            if translation:
                terminology.set_term_translation(term, target_language, translation)
                added += 1
        logger.info("Translated %d of %d missing terms to %s", added, len(missing), target_language)
        return response.token_usage
