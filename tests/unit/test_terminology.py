"""Unit tests for terminology model, prompt dictionary, repository and manager."""
import json
import os

import pytest

from json_translator.errors import DocumentIOError, ProviderError, TerminologyError
from json_translator.terminology import (
    Terminology,
    TerminologyManager,
    TerminologyRepository,
    build_prompt_dictionary,
)


@pytest.fixture
def terminology():
    return Terminology(
        source_language="en",
        preserve_terms=["Bisq", "API"],
        consistent_terms={"en": ["credits", "wallet"], "de": ["Guthaben"]},
    )


class TestTerminologyModel:

    def test_preserve_term_translates_to_itself(self, terminology):
        assert terminology.get_term_translation("Bisq", "de") == "Bisq"

    def test_consistent_term_uses_aligned_index(self, terminology):
        assert terminology.get_term_translation("credits", "de") == "Guthaben"
        assert terminology.get_term_translation("wallet", "de") is None
        assert terminology.get_term_translation("unknown", "de") is None

    def test_missing_translations(self, terminology):
        assert terminology.get_missing_translations("de") == ["wallet"]
        assert terminology.get_missing_translations("fr") == ["credits", "wallet"]

    def test_set_term_translation_pads_the_list(self, terminology):
        terminology.set_term_translation("wallet", "fr", "portefeuille")

        assert terminology.consistent_terms["fr"] == ["", "portefeuille"]
        assert terminology.get_term_translation("credits", "fr") is None
        assert terminology.get_term_translation("wallet", "fr") == "portefeuille"

    def test_set_translation_of_unknown_term_fails(self, terminology):
        with pytest.raises(TerminologyError):
            terminology.set_term_translation("nope", "de", "Nein")

    def test_add_terms_ignores_duplicates(self, terminology):
        terminology.add_preserve_term("API")
        terminology.add_consistent_term("en", "credits")
        terminology.add_consistent_term("en", "account")

        assert terminology.preserve_terms == ["Bisq", "API"]
        assert terminology.source_terms() == ["credits", "wallet", "account"]

    def test_is_empty(self, terminology):
        assert not terminology.is_empty()
        assert Terminology("en").is_empty()
        assert Terminology("en", consistent_terms={"de": ["x"]}).is_empty()

    def test_dict_conversion(self, terminology):
        assert Terminology.from_dict(terminology.to_dict()) == terminology

    def test_from_dict_validates_schema(self):
        with pytest.raises(TerminologyError):
            Terminology.from_dict({"preserveTerms": ["x"]})


class TestPromptDictionary:

    def test_lists_preserved_and_required_terms(self, terminology):
        directive = build_prompt_dictionary(terminology, "de")

        assert '- "Bisq" (never translate, keep exactly as is)' in directive
        assert '- "credits" → "Guthaben"' in directive
        assert "wallet" not in directive
        assert directive.endswith("Follow these terminology rules exactly.")

    def test_empty_without_terminology(self):
        assert build_prompt_dictionary(None, "de") == ""
        assert build_prompt_dictionary(Terminology("en"), "de") == ""


class TestRepository:

    def test_save_and_load(self, tmp_path, terminology):
        repository = TerminologyRepository(str(tmp_path))

        assert not repository.exists("project")
        path = repository.save("project", terminology)

        assert repository.exists("project")
        assert path == os.path.join(str(tmp_path), "project", "terminology.json")
        assert repository.load("project") == terminology

    def test_missing_file_is_io_error(self, tmp_path):
        with pytest.raises(DocumentIOError):
            TerminologyRepository(str(tmp_path)).load("absent")

    def test_invalid_content_is_terminology_error(self, tmp_path):
        target = tmp_path / "broken" / "terminology.json"
        target.parent.mkdir()
        target.write_text(json.dumps({"sourceLanguage": "en", "preserveTerms": [1, 2]}), encoding="utf-8")

        with pytest.raises(TerminologyError) as exc_info:
            TerminologyRepository(str(tmp_path)).load("broken")

        assert exc_info.value.get_context("path") == str(target)

    def test_malformed_json_is_terminology_error(self, tmp_path):
        target = tmp_path / "bad" / "terminology.json"
        target.parent.mkdir()
        target.write_text("{not json", encoding="utf-8")

        with pytest.raises(TerminologyError):
            TerminologyRepository(str(tmp_path)).load("bad")


class TestTerminologyManager:

    @pytest.mark.asyncio
    async def test_detect_terminology_parses_fenced_json(self, scripted_service):
        answer = {
            "preserveTerms": [{"term": "Bisq", "reason": "Brand", "frequency": 2, "examples": ["Bisq app"]}],
            "consistentTerms": [{"term": "offer"}, {"term": "Bisq"}],
        }
        service = scripted_service(lambda prompt: "```json\n" + json.dumps(answer) + "\n```")
        manager = TerminologyManager(service)

        detected, usage = await manager.detect_terminology(["Bisq app", "Create offer", "Bisq app"], "en")

        assert detected.preserve_terms == ["Bisq"]
        assert detected.source_terms() == ["offer"]
        assert usage.total_tokens == 10
        assert service.prompts[0].count("- Bisq app") == 1

    @pytest.mark.asyncio
    async def test_detect_terminology_rejects_bad_json(self, scripted_service):
        manager = TerminologyManager(scripted_service(lambda prompt: "Sure! Here are the terms."))

        with pytest.raises(TerminologyError):
            await manager.detect_terminology(["text"], "en")

    @pytest.mark.asyncio
    async def test_detect_terminology_wraps_provider_errors(self, scripted_service):
        manager = TerminologyManager(scripted_service(lambda prompt: ProviderError("down")))

        with pytest.raises(TerminologyError) as exc_info:
            await manager.detect_terminology(["text"], "en")

        assert isinstance(exc_info.value.cause, ProviderError)

    @pytest.mark.asyncio
    async def test_translate_missing_terms(self, scripted_service, terminology):
        service = scripted_service(lambda prompt: json.dumps({"wallet": "Geldbörse", "other": "x"}))
        manager = TerminologyManager(service)

        await manager.translate_missing_terms(terminology, "de", "German")

        assert terminology.get_term_translation("wallet", "de") == "Geldbörse"
        assert terminology.get_missing_translations("de") == []
        assert "to German" in service.prompts[0]

    @pytest.mark.asyncio
    async def test_translate_missing_terms_without_gaps_makes_no_call(self, scripted_service):
        service = scripted_service(lambda prompt: "{}")
        complete = Terminology("en", consistent_terms={"en": ["a"], "de": ["b"]})

        await TerminologyManager(service).translate_missing_terms(complete, "de")

        assert service.calls == 0
