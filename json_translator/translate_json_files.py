"""Translate the JSON i18n files of a locale folder into every configured target language.

The folder holds one ``<code>.json`` file per language. After a successful
run the source file is archived, so the next run only translates keys that
changed since then.
"""
import asyncio
import json
import logging
import os
import shutil
import sys
import tempfile
from typing import Optional

from json_translator.app_config import (
    AppConfig,
    build_translation_options,
    create_completion_service,
    load_app_config,
)
from json_translator.errors import DocumentIOError, TerminologyError, TranslatorError
from json_translator.pipeline import TranslationPipeline, TranslationResult
from json_translator.terminology import Terminology, TerminologyRepository
from json_translator.text_tree import TextTree

logger = logging.getLogger(__name__)

ARCHIVE_FOLDER_NAME = 'archive'


def document_path(folder: str, language: str) -> str:
    return os.path.join(folder, f"{language}.json")


def load_json_document(path: str) -> TextTree:
    try:
        with open(path, 'r', encoding='utf-8') as document:
            return json.load(document)
    except json.JSONDecodeError as json_exc:
        raise DocumentIOError("document is not valid JSON", cause=json_exc, path=path) from json_exc
    except OSError as os_exc:
        raise DocumentIOError("could not read document", cause=os_exc, path=path) from os_exc


def save_json_document(path: str, tree: TextTree) -> None:
    """Write ``tree`` as indented UTF-8 JSON, replacing ``path`` atomically."""
    folder = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(folder, exist_ok=True)
        with tempfile.NamedTemporaryFile('w', encoding='utf-8', dir=folder, suffix='.tmp',
                                         delete=False) as temp_file:
            json.dump(tree, temp_file, ensure_ascii=False, indent=2)
            temp_file.write("\n")
        os.replace(temp_file.name, path)
    except OSError as os_exc:
        raise DocumentIOError("could not write document", cause=os_exc, path=path) from os_exc


def load_terminology(repository: TerminologyRepository, identifier: str,
                     source_language: str) -> Optional[Terminology]:
    """
    Load the saved terminology for ``identifier``, or None when there is none yet.

    Raises:
        TerminologyError: If the file is invalid or was built for another source language.
    """
    if not repository.exists(identifier):
        logger.info("No terminology file at %s, terms will be detected.", repository.path_for(identifier))
        return None
    terminology = repository.load(identifier)
    if terminology.source_language != source_language:
        raise TerminologyError(
            f"terminology source language '{terminology.source_language}' does not match '{source_language}'",
            path=repository.path_for(identifier)
        )
    logger.info("Loaded %d preserve terms and %d consistent terms from %s",
                len(terminology.preserve_terms), len(terminology.source_terms()), repository.path_for(identifier))
    return terminology


def log_result(target_language: str, result: TranslationResult) -> None:
    stats = result.stats
    logger.info(f"[{target_language}] {stats.success_items}/{stats.total_items} items translated, "
                f"{stats.api_calls} API calls, {stats.total_tokens} tokens, {stats.duration:.2f}s")
    for issue in result.quality_issues:
        logger.info(f"[{target_language}] {issue.severity.value} {issue.kind.value} issue in '{issue.key}': "
                    f"{issue.description}")
    if result.reflection_error is not None:
        logger.warning(f"[{target_language}] Reflection skipped: {result.reflection_error}")


async def translate_folder(app_config: AppConfig, pipeline: TranslationPipeline) -> int:
    """
    Translate the source document of ``app_config.input_folder`` into every target language.

    Returns:
        int: Number of target languages that failed.
    """
    source_path = document_path(app_config.input_folder, app_config.source_language)
    archive_path = document_path(os.path.join(app_config.input_folder, ARCHIVE_FOLDER_NAME),
                                 app_config.source_language)
    source_tree = load_json_document(source_path)
    previous_source = load_json_document(archive_path) if os.path.exists(archive_path) else None

    repository = TerminologyRepository(app_config.terminology_dir)
    terminology = load_terminology(repository, app_config.source_language, app_config.source_language)

    failures = 0
    for target_language in app_config.target_languages:
        target_path = document_path(app_config.input_folder, target_language)
        existing_target = None
        if app_config.incremental and os.path.exists(target_path):
            existing_target = load_json_document(target_path)

        logger.info(f"Translating {source_path} to {target_language}")
        try:
            result = await pipeline.translate(
                source_tree,
                app_config.source_language,
                target_language,
                terminology=terminology,
                options=build_translation_options(app_config),
                existing_target=existing_target,
                previous_source=previous_source if existing_target is not None else None,
            )
        except TranslatorError as exc:
            logger.error(f"Translation to {target_language} failed: {exc}")
            failures += 1
            continue

        save_json_document(target_path, result.target_tree)
        log_result(target_language, result)
        if result.terminology is not None and not result.terminology.is_empty():
            terminology = result.terminology
            repository.save(app_config.source_language, terminology)

    if failures == 0:
        os.makedirs(os.path.dirname(archive_path), exist_ok=True)
        shutil.copyfile(source_path, archive_path)
        logger.info(f"Archived source document to '{archive_path}'.")
    return failures


async def main() -> int:
    app_config = load_app_config()
    if not app_config.target_languages:
        logger.error("No target_languages configured. Nothing to do.")
        return 1

    pipeline = TranslationPipeline(
        create_completion_service(app_config),
        review_service=create_completion_service(app_config, review=True),
        languages=app_config.languages,
        show_progress=True,
        max_tokens=app_config.max_model_tokens,
        model_name=app_config.model_name,
    )
    try:
        failures = await translate_folder(app_config, pipeline)
    except (DocumentIOError, TerminologyError) as exc:
        logger.error(f"Could not process {app_config.input_folder}: {exc}")
        return 1
    return 1 if failures else 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Translation interrupted by user.")
        sys.exit(130)
