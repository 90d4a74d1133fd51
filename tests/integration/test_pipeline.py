"""Integration tests for the translation pipeline with a scripted completion service."""
import json

import pytest

from conftest import numbered_texts, prefixed_translation
from json_translator.batch_scheduler import ProgressEventType
from json_translator.errors import ProviderError, TranslationError, ValidationError
from json_translator.languages import LEFT_TO_RIGHT_MARK
from json_translator.pipeline import TranslationOptions, TranslationPipeline
from json_translator.reflection import IssueKind, Severity
from json_translator.terminology import Terminology


def routed(batch, review=None, detect=None, terms=None):
    """Dispatch prompts to per-stage handlers based on their markers."""
    def handler(prompt):
        if "**Flagged Translations**" in prompt:
            return review(prompt)
        if "<DOCUMENT>" in prompt:
            return detect(prompt)
        if "maps each term to its translation" in prompt:
            return terms(prompt)
        return batch(prompt)
    return handler


def no_detection(**overrides):
    return TranslationOptions(skip_terminology_detection=True, retry_base_delay=0, **overrides)


class TestFullTranslation:

    @pytest.mark.asyncio
    async def test_translates_every_string_leaf(self, scripted_service, sample_tree):
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(sample_tree, "en", "de", options=no_detection())

        assert result.target_tree == {
            "app": {"title": "DE Dashboard", "welcome": "DE Hello {name}, welcome back!"},
            "buttons": {"save": "DE Save", "cancel": "DE Cancel"},
            "items": ["DE First", "DE Second"],
            "meta": {"version": 3, "beta": True},
        }
        assert result.stats.total_items == 6
        assert result.stats.success_items == 6
        assert result.stats.failed_items == 0
        assert result.stats.api_calls == 1
        assert result.stats.total_tokens == 10
        assert result.quality_issues == []
        assert "to German" in service.prompts[0]

    @pytest.mark.asyncio
    async def test_small_batches_and_progress_events(self, scripted_service, sample_tree):
        events = []
        service = scripted_service(prefixed_translation("x"))
        pipeline = TranslationPipeline(service, progress_callback=events.append)

        result = await pipeline.translate(sample_tree, "en", "fr", options=no_detection(batch_size=2, concurrency=2))

        assert result.stats.api_calls == 3
        completed = sorted(event.batch_index for event in events if event.event_type is ProgressEventType.COMPLETE)
        assert completed == [1, 2, 3]
        assert all(event.total_batches == 3 and event.concurrency == 2 for event in events)

    @pytest.mark.asyncio
    async def test_missing_lines_keep_source_text(self, scripted_service):
        service = scripted_service(lambda prompt: "[1] Eins")
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate({"a": "One", "b": "Two"}, "en", "de", options=no_detection())

        assert result.target_tree == {"a": "Eins", "b": "Two"}
        assert result.stats.success_items == 1
        assert result.stats.failed_items == 1

    @pytest.mark.asyncio
    async def test_non_tree_source_is_rejected(self, scripted_service):
        pipeline = TranslationPipeline(scripted_service(prefixed_translation("")))

        with pytest.raises(ValidationError):
            await pipeline.translate("plain text", "en", "de", options=no_detection())


class TestFiltering:

    @pytest.mark.asyncio
    async def test_only_included_keys_are_translated(self, scripted_service, sample_tree):
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(
            sample_tree, "en", "de",
            options=no_detection(include_patterns=["buttons.*, app.**"], exclude_patterns=["app.welcome"])
        )

        assert result.target_tree == {
            "app": {"title": "DE Dashboard"},
            "buttons": {"save": "DE Save", "cancel": "DE Cancel"},
        }
        assert result.stats.filter_stats.total_keys == 8
        assert result.stats.filter_stats.included_keys == 3
        assert result.stats.filter_stats.excluded_keys == 5

    @pytest.mark.asyncio
    async def test_existing_translations_of_excluded_keys_are_kept(self, scripted_service):
        previous_source = {"app": {"title": "Title"}, "meta": {"note": "Internal"}}
        source = {"app": {"title": "Title", "new": "New"}, "meta": {"note": "Internal", "extra": "Extra"}}
        existing = {"app": {"title": "Titel"}, "meta": {"note": "Intern (hand edited)"}}
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(source, "en", "de", options=no_detection(exclude_patterns=["meta.**"]),
                                          existing_target=existing, previous_source=previous_source)

        assert result.target_tree == {
            "app": {"title": "Titel", "new": "DE New"},
            "meta": {"note": "Intern (hand edited)"},
        }
        assert [text for _, text in numbered_texts(service.prompts[0])] == ["New"]
        assert result.stats.incremental_stats.deleted_keys == 0

    @pytest.mark.asyncio
    async def test_forced_run_keeps_excluded_existing_translations(self, scripted_service):
        source = {"app": {"title": "Title"}, "meta": {"note": "Internal"}}
        existing = {"meta": {"note": "Intern"}, "app": {"title": "Titel"}}
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(
            source, "en", "de",
            options=no_detection(exclude_patterns=["meta.**"], force=True), existing_target=existing
        )

        assert result.target_tree == {"app": {"title": "DE Title"}, "meta": {"note": "Intern"}}
        assert list(result.target_tree) == ["app", "meta"]

    @pytest.mark.asyncio
    async def test_malformed_pattern_fails_before_any_call(self, scripted_service, sample_tree):
        service = scripted_service(prefixed_translation(""))
        pipeline = TranslationPipeline(service)

        with pytest.raises(ValidationError):
            await pipeline.translate(sample_tree, "en", "de", options=TranslationOptions(include_patterns=["a..b"]))

        assert service.calls == 0


class TestIncremental:

    @pytest.mark.asyncio
    async def test_only_changed_keys_are_sent(self, scripted_service):
        previous_source = {"greet": "Hello", "bye": "Bye", "old": "Old"}
        source = {"greet": "Hello", "bye": "Goodbye", "new": "New"}
        existing = {"greet": "Hallo", "bye": "Tschau", "old": "Alt"}
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(source, "en", "de", options=no_detection(),
                                          existing_target=existing, previous_source=previous_source)

        assert result.target_tree == {"greet": "Hallo", "bye": "DE Goodbye", "new": "DE New"}
        assert list(result.target_tree) == ["greet", "bye", "new"]
        assert [text for _, text in numbered_texts(service.prompts[0])] == ["Goodbye", "New"]
        incremental = result.stats.incremental_stats
        assert (incremental.new_keys, incremental.modified_keys, incremental.unchanged_keys,
                incremental.deleted_keys) == (1, 1, 1, 1)

    @pytest.mark.asyncio
    async def test_nothing_changed_makes_no_calls(self, scripted_service):
        source = {"greet": "Hello", "nested": {"n": 1}}
        existing = {"greet": "Hallo", "nested": {"n": 1}}
        service = scripted_service(prefixed_translation(""))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(source, "en", "de", options=TranslationOptions(),
                                          existing_target=existing, previous_source=source)

        assert service.calls == 0
        assert result.target_tree == existing
        assert result.stats.api_calls == 0

    @pytest.mark.asyncio
    async def test_diff_against_existing_target(self, scripted_service):
        source = {"brand": "Bisq", "greet": "Hello"}
        existing = {"brand": "Bisq", "greet": "Hallo", "stale": "Weg"}
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(source, "en", "de", options=no_detection(), existing_target=existing)

        assert result.target_tree == {"brand": "Bisq", "greet": "DE Hello"}
        assert result.stats.incremental_stats.unchanged_keys == 1
        assert result.stats.incremental_stats.deleted_keys == 1

    @pytest.mark.asyncio
    async def test_force_translates_everything(self, scripted_service):
        source = {"greet": "Hello"}
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(source, "en", "de", options=no_detection(force=True),
                                          existing_target={"greet": "Hello"})

        assert result.target_tree == {"greet": "DE Hello"}
        assert result.stats.incremental_stats is None


class TestFailures:

    @pytest.mark.asyncio
    async def test_exhausted_batch_fails_the_run(self, scripted_service):
        service = scripted_service(lambda prompt: ProviderError("service unavailable"))
        pipeline = TranslationPipeline(service)

        with pytest.raises(TranslationError) as exc_info:
            await pipeline.translate({"a": "One"}, "en", "de", options=no_detection(max_retries=2))

        assert exc_info.value.get_context("batch_index") == 1
        assert exc_info.value.get_context("target_language") == "de"
        assert service.calls == 2


class TestReflection:

    @pytest.mark.asyncio
    async def test_dropped_placeholder_is_corrected_in_one_call(self, scripted_service):
        def batch(prompt):
            return "[1] Hola\n[2] Adiós\n[3] Guardar"

        service = scripted_service(routed(batch, review=lambda prompt: "greet: Hola {name}"))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(
            {"greet": "Hello {name}", "bye": "Goodbye", "save": "Save"}, "en", "es", options=no_detection()
        )

        assert result.target_tree == {"greet": "Hola {name}", "bye": "Adiós", "save": "Guardar"}
        assert [(issue.key, issue.kind, issue.severity) for issue in result.quality_issues] == [
            ("greet", IssueKind.FORMAT, Severity.CRITICAL)
        ]
        assert result.stats.api_calls == 2
        assert result.reflection_error is None

    @pytest.mark.asyncio
    async def test_token_cap_reaches_every_call(self, scripted_service):
        service = scripted_service(routed(
            lambda prompt: "[1] Geldbörse\n[2] Hallo",
            review=lambda prompt: "wallet: Bisq Geldbörse",
            detect=lambda prompt: json.dumps({"preserveTerms": [{"term": "Bisq"}]}),
        ))
        pipeline = TranslationPipeline(service, max_tokens=512, model_name="gpt-4o")

        result = await pipeline.translate({"wallet": "Bisq wallet", "greet": "Hello"}, "en", "de",
                                          options=TranslationOptions(retry_base_delay=0))

        assert result.target_tree == {"wallet": "Bisq Geldbörse", "greet": "Hallo"}
        assert service.calls == 3
        assert service.max_tokens == [512, 512, 512]
        assert pipeline.terminology_manager.model_name == "gpt-4o"
        assert pipeline.reflection_engine.max_tokens == 512

    @pytest.mark.asyncio
    async def test_reflection_failure_keeps_translations(self, scripted_service):
        service = scripted_service(routed(
            lambda prompt: "[1] Hola\n[2] Adiós\n[3] Guardar",
            review=lambda prompt: ProviderError("review model down"),
        ))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate(
            {"greet": "Hello {name}", "bye": "Goodbye", "save": "Save"}, "en", "es", options=no_detection()
        )

        assert result.target_tree["greet"] == "Hola"
        assert result.reflection_error is not None
        assert len(result.quality_issues) == 1

    @pytest.mark.asyncio
    async def test_two_items_without_terminology_skip_reflection(self, scripted_service):
        service = scripted_service(routed(lambda prompt: "[1] Hola\n[2] Adiós",
                                          review=lambda prompt: pytest.fail("no review expected")))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate({"greet": "Hello {name}", "bye": "Goodbye"}, "en", "es",
                                          options=no_detection())

        assert result.quality_issues == []
        assert service.calls == 1


class TestTerminology:

    @pytest.mark.asyncio
    async def test_detected_terms_are_translated_and_used(self, scripted_service):
        detection = {"preserveTerms": [{"term": "Bisq"}], "consistentTerms": [{"term": "credits"}]}

        def batch(prompt):
            return "\n".join(f"[{number}] {text.replace('credits', 'Guthaben')}"
                             for number, text in numbered_texts(prompt))

        service = scripted_service(routed(
            batch,
            detect=lambda prompt: json.dumps(detection),
            terms=lambda prompt: json.dumps({"credits": "Guthaben"}),
        ))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate({"buy": "Buy credits in Bisq"}, "en", "de",
                                          options=TranslationOptions(retry_base_delay=0))

        batch_prompt = service.prompts[2]
        assert '- "Bisq" (never translate, keep exactly as is)' in batch_prompt
        assert '- "credits" → "Guthaben"' in batch_prompt
        assert result.target_tree == {"buy": "Buy Guthaben in Bisq"}
        assert result.terminology.get_term_translation("credits", "de") == "Guthaben"
        assert result.stats.api_calls == 3
        assert result.quality_issues == []

    @pytest.mark.asyncio
    async def test_detection_failure_is_not_fatal(self, scripted_service):
        service = scripted_service(routed(prefixed_translation("DE "), detect=lambda prompt: "not json"))
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate({"a": "One"}, "en", "de", options=TranslationOptions(retry_base_delay=0))

        assert result.target_tree == {"a": "DE One"}
        assert result.terminology is None
        assert result.stats.api_calls == 2

    @pytest.mark.asyncio
    async def test_given_terminology_skips_detection(self, scripted_service):
        service = scripted_service(routed(prefixed_translation("DE "), detect=lambda prompt: pytest.fail("detected")))
        terminology = Terminology("en", preserve_terms=["API"])
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate({"a": "API key"}, "en", "de", terminology=terminology,
                                          options=TranslationOptions(retry_base_delay=0))

        assert result.target_tree == {"a": "DE API key"}
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_disabled_terminology_ignores_given_terms(self, scripted_service):
        service = scripted_service(prefixed_translation("DE "))
        pipeline = TranslationPipeline(service)

        await pipeline.translate({"a": "API key"}, "en", "de", terminology=Terminology("en", preserve_terms=["API"]),
                                 options=TranslationOptions(disable_terminology=True))

        assert "Terms to Preserve" not in service.prompts[0]


class TestRightToLeft:

    @pytest.mark.asyncio
    async def test_urls_are_wrapped_for_rtl_targets(self, scripted_service):
        service = scripted_service(lambda prompt: "[1] زر https://bisq.network")
        pipeline = TranslationPipeline(service)

        result = await pipeline.translate({"visit": "Visit https://bisq.network"}, "en", "ar",
                                          options=no_detection())

        assert result.target_tree["visit"] == f"زر {LEFT_TO_RIGHT_MARK}https://bisq.network{LEFT_TO_RIGHT_MARK}"
        assert "to Arabic" in service.prompts[0]
