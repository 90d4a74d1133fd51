"""Incremental diff between a source tree and an existing translation."""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from json_translator.text_tree import FlatMap, TextTree, flatten

logger = logging.getLogger(__name__)


@dataclass
class DiffStats:
    new_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    unchanged_count: int = 0
    total_keys: int = 0


@dataclass
class DiffResult:
    """Classification of source keys against an existing target.

    ``unchanged`` holds the existing target values, so they can be merged back
    without another translation round.
    """
    new: FlatMap = field(default_factory=dict)
    modified: FlatMap = field(default_factory=dict)
    unchanged: FlatMap = field(default_factory=dict)
    deleted: List[str] = field(default_factory=list)
    stats: DiffStats = field(default_factory=DiffStats)

    @property
    def pending(self) -> FlatMap:
        """New and modified source values."""
        return {**self.new, **self.modified}


def _canonical(value: Any) -> str:
    # Loose comparison: the string "42" and the number 42 are considered equal.
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def analyze_diff(source: TextTree, target: Optional[TextTree] = None) -> DiffResult:
    """
    Classify every source key as new, modified or unchanged, and list target-only keys.

    Args:
        source: The current source-language tree.
        target: The existing translation, or None when there is none yet.

    Returns:
        DiffResult: New and modified entries carry source values; unchanged
        entries carry the existing target values.
    """
    source_flat = flatten(source)
    result = DiffResult()

    if target is None:
        result.new = dict(source_flat)
    else:
        target_flat = flatten(target)
        for key, source_value in source_flat.items():
            if key not in target_flat:
                result.new[key] = source_value
            elif _canonical(source_value) != _canonical(target_flat[key]):
                result.modified[key] = source_value
            else:
                result.unchanged[key] = target_flat[key]
        result.deleted = [key for key in target_flat if key not in source_flat]

    result.stats = DiffStats(
        new_count=len(result.new),
        modified_count=len(result.modified),
        deleted_count=len(result.deleted),
        unchanged_count=len(result.unchanged),
        total_keys=len(source_flat),
    )
    logger.debug(
        "Diff: %d new, %d modified, %d unchanged, %d deleted",
        result.stats.new_count, result.stats.modified_count,
        result.stats.unchanged_count, result.stats.deleted_count
    )
    return result


def carry_forward_translations(diff: DiffResult, existing_translation: TextTree) -> DiffResult:
    """
    Replace unchanged values with the existing translation's values.

    Used when ``diff`` was computed against a previous source tree rather than
    the translation itself. Unchanged keys missing from the translation are
    reclassified as new.
    """
    translated_flat = flatten(existing_translation)
    unchanged: FlatMap = {}
    for key in list(diff.unchanged):
        if key in translated_flat:
            unchanged[key] = translated_flat[key]
        else:
            diff.new[key] = diff.unchanged[key]
    diff.unchanged = unchanged
    diff.stats.new_count = len(diff.new)
    diff.stats.unchanged_count = len(diff.unchanged)
    return diff


def should_translate(diff: DiffResult, force: bool = False) -> bool:
    return force or diff.stats.new_count > 0 or diff.stats.modified_count > 0


def merge_diff(translated: Dict[str, Any], unchanged: Dict[str, Any]) -> FlatMap:
    """Union of unchanged and freshly translated entries; translations win on overlap."""
    merged: FlatMap = dict(unchanged)
    merged.update(translated)
    return merged
