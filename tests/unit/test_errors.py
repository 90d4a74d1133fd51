"""Unit tests for the error types."""
from json_translator.errors import (
    ConfigError,
    DocumentIOError,
    ErrorKind,
    FormatError,
    ProviderError,
    TerminologyError,
    TranslationError,
    TranslatorError,
    ValidationError,
)


class TestTranslatorError:

    def test_message_cause_and_context_are_rendered(self):
        cause = ValueError("bad value")

        error = TranslationError("batch 2 failed", cause=cause, batch_index=2)

        assert str(error) == "translation error: batch 2 failed: bad value [batch_index=2]"
        assert error.__cause__ is cause

    def test_with_context_chains(self):
        error = ValidationError("invalid pattern").with_context("pattern", "a..b").with_context("position", 2)

        assert error.get_context("pattern") == "a..b"
        assert error.get_context("missing", "default") == "default"
        assert str(error) == "validation error: invalid pattern [pattern=a..b, position=2]"

    def test_kinds(self):
        kinds = {
            ValidationError: ErrorKind.VALIDATION,
            DocumentIOError: ErrorKind.IO,
            ProviderError: ErrorKind.PROVIDER,
            FormatError: ErrorKind.FORMAT,
            TerminologyError: ErrorKind.TERMINOLOGY,
            TranslationError: ErrorKind.TRANSLATION,
            ConfigError: ErrorKind.CONFIG,
        }
        for error_type, kind in kinds.items():
            error = error_type("message")
            assert isinstance(error, TranslatorError)
            assert error.kind is kind
