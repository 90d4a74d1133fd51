"""Batched, concurrent translation with retry and fail-fast cancellation."""
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tqdm.asyncio import tqdm

from json_translator.completion import CompletionService
from json_translator.errors import FormatError, ProviderError, TranslationError
from json_translator.format_protector import build_format_instructions, get_validation_report

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
DEFAULT_CONCURRENCY = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0

NEWLINE_TOKEN = "<newline>"

_CONTEXT_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("title", ("title", "name", "label")),
    ("description", ("description", "desc", "detail")),
    ("action", ("button", "action", "cta")),
    ("message", ("error", "warning", "alert")),
)

_INDEXED_LINE = re.compile(r'^\[(\d+)\]\s?(.*)$')


class BatchState(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProgressEventType(Enum):
    START = "start"
    RETRY = "retry"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class BatchItem:
    key: str
    text: str
    context: str = "general"


@dataclass
class Batch:
    index: int
    items: List[BatchItem]
    state: BatchState = BatchState.PENDING
    attempts: int = 0

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class BatchProgressEvent:
    event_type: ProgressEventType
    batch_index: int
    total_batches: int
    batch_size: int
    concurrency: int
    attempt: int = 0
    max_attempts: int = 0
    duration: float = 0.0
    tokens: int = 0
    error: Optional[Exception] = None


ProgressCallback = Callable[[BatchProgressEvent], None]


@dataclass
class BatchStats:
    api_calls: int = 0
    total_tokens: int = 0
    succeeded_batches: int = 0


def infer_context(key_path: str) -> str:
    """Guess the UI role of a text from its key path (title, description, action, message or general)."""
    lowered = key_path.lower()
    for context, keywords in _CONTEXT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return context
    return "general"


def create_batches(items: Sequence[BatchItem], batch_size: int = DEFAULT_BATCH_SIZE) -> List[Batch]:
    """Split ``items`` into consecutive batches of at most ``batch_size`` items, numbered from 1."""
    if batch_size <= 0:
        batch_size = DEFAULT_BATCH_SIZE
    return [
        Batch(index=number + 1, items=list(items[start:start + batch_size]))
        for number, start in enumerate(range(0, len(items), batch_size))
    ]


def encode_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\n", NEWLINE_TOKEN)


def decode_newlines(text: str) -> str:
    return text.replace(NEWLINE_TOKEN, "\n")


def build_batch_prompt(items: Sequence[BatchItem], source_language: str, target_language: str,
                       term_dictionary: str = "") -> str:
    """
    Build the translation prompt for one batch.

    The prompt lists every source text as ``[n] text`` (1-based) and asks for
    the same numbering in the answer.
    """
    sections = [
        f"Translate the following {source_language} texts to {target_language} for a JSON i18n file.",
    ]
    if term_dictionary:
        sections.append(term_dictionary)

    sections.append(
        "**Instructions**:\n"
        "- Keep placeholders such as {name}, {{count}}, %s and %(name)s exactly as they are.\n"
        "- Keep HTML tags, URLs and markdown syntax intact.\n"
        f"- Keep {NEWLINE_TOKEN} markers where line breaks belong.\n"
        "- Follow the terminology rules above, if any.\n"
        "- Return one line per text in the format `[n] translation`, using the same numbers.\n"
        "- Do not add explanations."
    )

    context_lines = []
    format_lines = []
    for number, item in enumerate(items, start=1):
        if item.context != "general":
            context_lines.append(f"- Item {number} ({item.key}): {item.context}")
        instructions = build_format_instructions(item.text)
        if instructions:
            format_lines.append(f"Item {number}:\n{instructions}")
    if context_lines:
        sections.append("**Item Context**:\n" + "\n".join(context_lines))
    if format_lines:
        sections.append("\n\n".join(format_lines))

    numbered = "\n".join(f"[{number}] {encode_newlines(item.text)}" for number, item in enumerate(items, start=1))
    sections.append(f"**Texts to Translate**:\n{numbered}")
    sections.append("**Translations**:")
    return "\n\n".join(sections)


def parse_batch_response(content: str, items: Sequence[BatchItem]) -> Dict[str, str]:
    """
    Map ``[n] translation`` lines of a response back to item keys.

    Lines without a valid index, and indices outside ``1..len(items)``, are ignored.

    Raises:
        FormatError: If no line could be mapped to an item.
    """
    translations: Dict[str, str] = {}
    for raw_line in content.splitlines():
        match = _INDEXED_LINE.match(raw_line.strip())
        if not match:
            continue
        number = int(match.group(1))
        if 1 <= number <= len(items):
            translations[items[number - 1].key] = decode_newlines(match.group(2).strip())
    if not translations:
        raise FormatError("failed to parse any translation from the response",
                          item_count=len(items), response_length=len(content))
    return translations


class BatchScheduler:
    """Dispatches batches to a completion service under a concurrency cap.

    Each batch is retried with exponential backoff. The first batch that
    exhausts its retries cancels every batch still pending or in flight and
    fails the whole run.
    """

    def __init__(self, completion_service: CompletionService,
                 retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
                 progress_callback: Optional[ProgressCallback] = None,
                 system_message: Optional[str] = None,
                 temperature: float = 0.3,
                 max_tokens: Optional[int] = None,
                 show_progress: bool = False):
        self.completion_service = completion_service
        self.retry_base_delay = retry_base_delay
        self.progress_callback = progress_callback
        self.system_message = system_message or (
            "You are a professional software localization translator. "
            "You translate user interface texts accurately and naturally."
        )
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.show_progress = show_progress

    def _emit(self, event: BatchProgressEvent) -> None:
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(event)
        except Exception as exc:
            logger.warning("Progress callback failed on %s event for batch %d: %s",
                           event.event_type.value, event.batch_index, exc)

    def _retry_delay(self, attempt: int, exc: Exception) -> float:
        if isinstance(exc, ProviderError):
            retry_after = exc.get_context("retry_after")
            if retry_after is not None:
                return float(retry_after)
        return self.retry_base_delay * (2 ** (attempt - 1))

    def _warn_on_format_loss(self, batch: Batch, translations: Dict[str, str]) -> None:
        for item in batch.items:
            translated = translations.get(item.key)
            if translated is None:
                logger.warning("Batch %d: no translation returned for key '%s'", batch.index, item.key)
                continue
            report = get_validation_report(item.text, translated)
            if not report.is_valid:
                logger.warning("Batch %d: format check failed for key '%s': %s",
                               batch.index, item.key, "; ".join(report.errors))

    async def _translate_with_retry(self, batch: Batch, prompt: str, total_batches: int, concurrency: int,
                                    max_retries: int) -> Tuple[Dict[str, str], int, int]:
        api_calls = 0
        tokens = 0
        for attempt in range(1, max_retries + 1):
            batch.attempts = attempt
            batch.state = BatchState.IN_FLIGHT
            started = time.monotonic()
            try:
                api_calls += 1
                response = await self.completion_service.complete(
                    prompt, system_message=self.system_message, temperature=self.temperature,
                    max_tokens=self.max_tokens
                )
                tokens += response.token_usage.total_tokens
                translations = parse_batch_response(response.text, batch.items)
            except (ProviderError, FormatError) as exc:
                if attempt < max_retries:
                    batch.state = BatchState.RETRYING
                    delay = self._retry_delay(attempt, exc)
                    self._emit(BatchProgressEvent(
                        ProgressEventType.RETRY, batch.index, total_batches, len(batch), concurrency,
                        attempt=attempt, max_attempts=max_retries, duration=time.monotonic() - started, error=exc
                    ))
                    logger.info(f"Retrying batch {batch.index} in {delay:.2f} seconds "
                                f"(Attempt {attempt}/{max_retries}): {exc}")
                    await asyncio.sleep(delay)
                    continue
                batch.state = BatchState.FAILED
                self._emit(BatchProgressEvent(
                    ProgressEventType.ERROR, batch.index, total_batches, len(batch), concurrency,
                    attempt=attempt, max_attempts=max_retries, duration=time.monotonic() - started, error=exc
                ))
                logger.error(f"Batch {batch.index} failed after {max_retries} attempts: {exc}")
                raise TranslationError(f"batch {batch.index} failed after {max_retries} attempts", cause=exc,
                                       batch_index=batch.index, batch_size=len(batch)) from exc

            batch.state = BatchState.SUCCEEDED
            self._emit(BatchProgressEvent(
                ProgressEventType.COMPLETE, batch.index, total_batches, len(batch), concurrency,
                attempt=attempt, max_attempts=max_retries, duration=time.monotonic() - started, tokens=tokens
            ))
            self._warn_on_format_loss(batch, translations)
            return translations, api_calls, tokens

        raise TranslationError(f"batch {batch.index} was never attempted",
                               batch_index=batch.index, batch_size=len(batch))

    async def _run_batch(self, batch: Batch, prompt: str, total_batches: int, concurrency: int, max_retries: int,
                         semaphore: asyncio.Semaphore, cancelled: asyncio.Event,
                         results: Dict[str, str], stats: BatchStats) -> None:
        async with semaphore:
            if cancelled.is_set():
                logger.debug("Skipping batch %d: run already failed", batch.index)
                return
            self._emit(BatchProgressEvent(
                ProgressEventType.START, batch.index, total_batches, len(batch), concurrency,
                max_attempts=max_retries
            ))
            translations, api_calls, tokens = await self._translate_with_retry(
                batch, prompt, total_batches, concurrency, max_retries
            )
            results.update(translations)
            stats.api_calls += api_calls
            stats.total_tokens += tokens
            stats.succeeded_batches += 1

    async def process_batches(self, batches: Sequence[Batch], source_language: str, target_language: str,
                              term_dictionary: str = "", concurrency: int = DEFAULT_CONCURRENCY,
                              max_retries: int = DEFAULT_MAX_RETRIES) -> Tuple[Dict[str, str], BatchStats]:
        """
        Translate all batches, at most ``concurrency`` at a time.

        Args:
            batches: Batches to translate.
            source_language: Source language name used in prompts.
            target_language: Target language name used in prompts.
            term_dictionary: Terminology directive to include in every prompt.
            concurrency: Maximum number of batches in flight.
            max_retries: Attempts per batch, including the first one.

        Returns:
            A tuple of the key to translation mapping and the run statistics.

        Raises:
            TranslationError: Naming the first batch that exhausted its retries.
                All other batches are cancelled and their results discarded.
        """
        results: Dict[str, str] = {}
        stats = BatchStats()
        if not batches:
            return results, stats

        concurrency = concurrency if concurrency > 0 else DEFAULT_CONCURRENCY
        max_retries = max_retries if max_retries > 0 else DEFAULT_MAX_RETRIES
        semaphore = asyncio.Semaphore(concurrency)
        cancelled = asyncio.Event()

        logger.info("Translating %d batches (%d items) from %s to %s with concurrency %d",
                    len(batches), sum(len(batch) for batch in batches), source_language, target_language,
                    concurrency)

        tasks = [
            asyncio.create_task(self._run_batch(
                batch,
                build_batch_prompt(batch.items, source_language, target_language, term_dictionary),
                len(batches), concurrency, max_retries, semaphore, cancelled, results, stats
            ))
            for batch in batches
        ]
        try:
            for next_done in tqdm.as_completed(tasks, total=len(tasks), desc="Translating batches",
                                               unit="batch", disable=not self.show_progress):
                await next_done
        except BaseException:
            cancelled.set()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        logger.info("Translated %d batches with %d API calls and %d tokens",
                    stats.succeeded_batches, stats.api_calls, stats.total_tokens)
        return results, stats
