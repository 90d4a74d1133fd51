"""Error types raised by the translation pipeline.

Every error carries a kind, a human readable message, an optional underlying
cause and a free-form context dictionary (batch index, pattern, key, ...).
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    VALIDATION = "validation"
    IO = "io"
    PROVIDER = "provider"
    FORMAT = "format"
    TERMINOLOGY = "terminology"
    TRANSLATION = "translation"
    CONFIG = "config"


class TranslatorError(Exception):
    """Base class for all pipeline errors."""
    kind = ErrorKind.TRANSLATION

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: Dict[str, Any] = dict(context)
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, key: str, value: Any) -> "TranslatorError":
        self.context[key] = value
        return self

    def get_context(self, key: str, default: Any = None) -> Any:
        return self.context.get(key, default)

    def __str__(self) -> str:
        text = f"{self.kind.value} error: {self.message}"
        if self.cause is not None:
            text += f": {self.cause}"
        if self.context:
            pairs = ", ".join(f"{key}={value}" for key, value in self.context.items())
            text += f" [{pairs}]"
        return text


class ValidationError(TranslatorError):
    """Invalid input such as a malformed key pattern or a non-tree document."""
    kind = ErrorKind.VALIDATION


class DocumentIOError(TranslatorError):
    """Reading or writing a file failed."""
    kind = ErrorKind.IO


class ProviderError(TranslatorError):
    """The completion service call failed."""
    kind = ErrorKind.PROVIDER


class FormatError(TranslatorError):
    """A response or translation did not have the expected shape or format tokens."""
    kind = ErrorKind.FORMAT


class TerminologyError(TranslatorError):
    kind = ErrorKind.TERMINOLOGY


class TranslationError(TranslatorError):
    """A translation run could not be completed."""
    kind = ErrorKind.TRANSLATION


class ConfigError(TranslatorError):
    kind = ErrorKind.CONFIG
