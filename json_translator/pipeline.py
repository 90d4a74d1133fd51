"""End-to-end translation of a text tree: filter, diff, batch, reflect, rebuild."""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from json_translator.batch_scheduler import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    BatchItem,
    BatchScheduler,
    ProgressCallback,
    create_batches,
    infer_context,
)
from json_translator.completion import CompletionService
from json_translator.diff_engine import (
    DiffResult,
    analyze_diff,
    carry_forward_translations,
    merge_diff,
    should_translate,
)
from json_translator.errors import TerminologyError, TranslationError, TranslatorError, ValidationError
from json_translator.key_filter import FilterStats, filter_keys, parse_pattern_list
from json_translator.languages import Language, add_directional_marks, is_rtl_language, language_name
from json_translator.reflection import QualityIssue, ReflectionEngine, ReflectionInput
from json_translator.terminology import Terminology, TerminologyManager, build_prompt_dictionary
from json_translator.text_tree import FlatMap, TextTree, apply_translations, flatten, rebuild_tree

logger = logging.getLogger(__name__)


@dataclass
class TranslationOptions:
    batch_size: int = DEFAULT_BATCH_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    force: bool = False
    skip_terminology_detection: bool = False
    disable_terminology: bool = False


@dataclass
class IncrementalStats:
    new_keys: int = 0
    modified_keys: int = 0
    deleted_keys: int = 0
    unchanged_keys: int = 0


@dataclass
class TranslationStats:
    total_items: int = 0
    success_items: int = 0
    failed_items: int = 0
    api_calls: int = 0
    total_tokens: int = 0
    duration: float = 0.0
    filter_stats: Optional[FilterStats] = None
    incremental_stats: Optional[IncrementalStats] = None


@dataclass
class TranslationResult:
    target_tree: TextTree
    stats: TranslationStats
    quality_issues: List[QualityIssue] = field(default_factory=list)
    terminology: Optional[Terminology] = None
    reflection_error: Optional[TranslatorError] = None


class TranslationPipeline:
    """Composes filtering, incremental diffing, batching, reflection and tree reconstruction.

    Args:
        completion_service: Service used for translation and terminology calls.
        review_service: Service used for the reflection call; defaults to ``completion_service``.
        languages: Language table used for prompt names and RTL handling.
        progress_callback: Receives batch progress events.
        show_progress: Display a tqdm progress bar over batches.
        max_tokens: Completion token cap for every call; the reflection call keeps its own default when None.
        model_name: Model whose tokenizer sizes the terminology detection input.
    """

    def __init__(self, completion_service: CompletionService,
                 review_service: Optional[CompletionService] = None,
                 languages: Optional[Mapping[str, Language]] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 show_progress: bool = False,
                 max_tokens: Optional[int] = None,
                 model_name: str = 'gpt-3.5-turbo'):
        self.completion_service = completion_service
        self.languages = languages
        self.progress_callback = progress_callback
        self.show_progress = show_progress
        self.max_tokens = max_tokens
        self.terminology_manager = TerminologyManager(completion_service, max_tokens=max_tokens,
                                                      model_name=model_name)
        reflection_service = review_service or completion_service
        if max_tokens is None:
            self.reflection_engine = ReflectionEngine(reflection_service)
        else:
            self.reflection_engine = ReflectionEngine(reflection_service, max_tokens=max_tokens)

    async def _prepare_terminology(self, terminology: Optional[Terminology], texts: List[str],
                                   source_language: str, target_language: str,
                                   options: TranslationOptions, stats: TranslationStats) -> Optional[Terminology]:
        if options.disable_terminology:
            return None

        if terminology is None and not options.skip_terminology_detection and texts:
            try:
                stats.api_calls += 1
                terminology, usage = await self.terminology_manager.detect_terminology(texts, source_language)
                stats.total_tokens += usage.total_tokens
            except TerminologyError as exc:
                logger.warning(f"Terminology detection failed, continuing without terminology: {exc}")
                return None

        if terminology is not None and terminology.get_missing_translations(target_language):
            try:
                stats.api_calls += 1
                usage = await self.terminology_manager.translate_missing_terms(
                    terminology, target_language, language_name(target_language, self.languages)
                )
                stats.total_tokens += usage.total_tokens
            except TerminologyError as exc:
                logger.warning(f"Term translation failed, continuing with partial terminology: {exc}")
        return terminology

    async def translate(self, source_tree: TextTree, source_language: str, target_language: str,
                        terminology: Optional[Terminology] = None,
                        options: Optional[TranslationOptions] = None,
                        existing_target: Optional[TextTree] = None,
                        previous_source: Optional[TextTree] = None) -> TranslationResult:
        """
        Translate every string leaf of ``source_tree``.

        Args:
            source_tree: The source-language tree.
            source_language: Source language code.
            target_language: Target language code.
            terminology: Known terminology; detected from the source when None.
            options: Run options; defaults are used when None.
            existing_target: A previous translation. Enables incremental mode
                unless ``options.force`` is set. Its values for keys removed by
                the exclude or include patterns are carried into the result.
            previous_source: The source tree ``existing_target`` was translated
                from. When given, changes are detected against it and unchanged
                keys keep their value from ``existing_target``.

        Returns:
            TranslationResult: The translated tree with run statistics and quality issues.

        Raises:
            ValidationError: On malformed key patterns or a source that is not an object or array.
            TranslationError: When a batch exhausts its retries. No partial tree is returned.
        """
        started = time.monotonic()
        options = options or TranslationOptions()
        includes = parse_pattern_list(options.include_patterns)
        excludes = parse_pattern_list(options.exclude_patterns)
        if not isinstance(source_tree, (dict, list)):
            raise ValidationError("source document must be a JSON object or array",
                                  actual_type=type(source_tree).__name__)

        stats = TranslationStats()
        working_tree = source_tree
        kept_existing: FlatMap = {}
        if includes or excludes:
            filtered = filter_keys(source_tree, includes, excludes)
            stats.filter_stats = filtered.stats
            working_tree = rebuild_tree(filtered.included)
            if existing_target is not None:
                existing_flat = flatten(existing_target)
                kept_existing = {key: existing_flat[key] for key in filtered.excluded if key in existing_flat}
                logger.info("Keeping %d existing translations of filtered-out keys", len(kept_existing))

        document_order = flatten(source_tree)
        source_flat = flatten(working_tree)
        diff: Optional[DiffResult] = None
        pending: FlatMap = source_flat
        if existing_target is not None and not options.force:
            baseline = previous_source if previous_source is not None else existing_target
            diff = analyze_diff(working_tree, baseline)
            if previous_source is not None:
                diff = carry_forward_translations(diff, existing_target)
            if stats.filter_stats is not None:
                diff.deleted = [key for key in diff.deleted if key not in document_order]
                diff.stats.deleted_count = len(diff.deleted)
            stats.incremental_stats = IncrementalStats(
                new_keys=diff.stats.new_count,
                modified_keys=diff.stats.modified_count,
                deleted_keys=diff.stats.deleted_count,
                unchanged_keys=diff.stats.unchanged_count,
            )
            logger.info("Incremental mode: %d new, %d modified, %d unchanged, %d deleted keys",
                        diff.stats.new_count, diff.stats.modified_count,
                        diff.stats.unchanged_count, diff.stats.deleted_count)
            if not should_translate(diff, options.force):
                logger.info("No new or modified keys, nothing to translate.")
                stats.duration = time.monotonic() - started
                return TranslationResult(
                    target_tree=self._assemble(document_order, {}, {**kept_existing, **diff.unchanged}),
                    stats=stats,
                    terminology=terminology,
                )
            changed = diff.pending
            pending = {key: value for key, value in source_flat.items() if key in changed}

        items = [BatchItem(key, value, infer_context(key))
                 for key, value in pending.items() if isinstance(value, str) and value]
        stats.total_items = len(items)
        source_texts = {item.key: item.text for item in items}

        terminology = await self._prepare_terminology(
            terminology, [item.text for item in items], source_language, target_language, options, stats
        )
        term_dictionary = build_prompt_dictionary(terminology, target_language)

        source_name = language_name(source_language, self.languages)
        target_name = language_name(target_language, self.languages)
        scheduler = BatchScheduler(
            self.completion_service,
            retry_base_delay=options.retry_base_delay,
            progress_callback=self.progress_callback,
            max_tokens=self.max_tokens,
            show_progress=self.show_progress,
        )
        try:
            translations, batch_stats = await scheduler.process_batches(
                create_batches(items, options.batch_size), source_name, target_name, term_dictionary,
                concurrency=options.concurrency, max_retries=options.max_retries,
            )
        except TranslationError as exc:
            context = dict(exc.context, source_language=source_language, target_language=target_language)
            raise TranslationError("batch processing failed", cause=exc, **context) from exc
        stats.api_calls += batch_stats.api_calls
        stats.total_tokens += batch_stats.total_tokens

        result = TranslationResult(target_tree={}, stats=stats, terminology=terminology)
        if translations and self.reflection_engine.should_reflect(translations, terminology):
            reflection = await self.reflection_engine.reflect(ReflectionInput(
                source_texts=source_texts,
                translated_texts=translations,
                source_language=source_language,
                target_language=target_language,
                terminology=terminology,
                source_language_name=source_name,
                target_language_name=target_name,
            ))
            result.quality_issues = reflection.issues
            result.reflection_error = reflection.error
            stats.api_calls += reflection.api_calls_used
            stats.total_tokens += reflection.total_tokens
            translations.update(reflection.improved_texts)

        if is_rtl_language(target_language, self.languages):
            translations = {key: add_directional_marks(text) for key, text in translations.items()}

        stats.success_items = sum(1 for item in items if item.key in translations)
        stats.failed_items = stats.total_items - stats.success_items

        if diff is not None or kept_existing:
            unchanged = diff.unchanged if diff is not None else {}
            result.target_tree = self._assemble(document_order, {**pending, **translations},
                                                {**kept_existing, **unchanged})
        else:
            result.target_tree = apply_translations(working_tree, translations)

        stats.duration = time.monotonic() - started
        logger.info(
            "Translated %d/%d items to %s with %d API calls and %d tokens in %.2fs",
            stats.success_items, stats.total_items, target_language, stats.api_calls, stats.total_tokens,
            stats.duration
        )
        return result

    @staticmethod
    def _assemble(document_order: FlatMap, translated: Dict[str, object], unchanged: FlatMap) -> TextTree:
        merged = merge_diff(translated, unchanged)
        ordered = {key: merged[key] for key in document_order if key in merged}
        return rebuild_tree(ordered)
