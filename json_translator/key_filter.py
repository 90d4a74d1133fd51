"""Glob-like key path patterns and include/exclude filtering of flattened trees.

Patterns are dot-separated segments. ``*`` matches exactly one segment and
``**`` matches everything below the literal prefix that precedes it:

    settings.title      exact key
    settings.*          any direct child of settings
    *.title             a ``title`` key one level below any top-level key
    settings.**         anything under settings, at any depth

A wildcard must fill a whole segment. Patterns such as ``btn*`` or
``a.**b`` are rejected with a ValidationError instead of being read as
prefix matches.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from json_translator.errors import ValidationError
from json_translator.text_tree import FlatMap, TextTree, flatten

logger = logging.getLogger(__name__)

SINGLE_WILDCARD = "*"
RECURSIVE_WILDCARD = "**"
_ONE_SEGMENT_REGEX = r'[^.]+'


class PatternKind(Enum):
    EXACT = "exact"
    SINGLE_WILDCARD = "single"
    RECURSIVE_WILDCARD = "recursive"
    POSITIONAL_WILDCARD = "positional"


@dataclass(frozen=True)
class KeyPattern:
    """A parsed pattern with its matcher, compiled once."""
    raw: str
    kind: PatternKind
    matcher: Callable[[str], bool] = field(repr=False, compare=False)

    def matches(self, key_path: str) -> bool:
        return self.matcher(key_path)


def classify_pattern(pattern: str) -> PatternKind:
    if RECURSIVE_WILDCARD in pattern:
        return PatternKind.RECURSIVE_WILDCARD
    if pattern.startswith(SINGLE_WILDCARD + "."):
        return PatternKind.POSITIONAL_WILDCARD
    if SINGLE_WILDCARD in pattern:
        return PatternKind.SINGLE_WILDCARD
    return PatternKind.EXACT


def _check_segments(pattern: str) -> List[str]:
    segments = pattern.split(".")
    for segment in segments:
        if not segment:
            raise ValidationError(f"invalid key pattern '{pattern}': empty path segment", pattern=pattern)
        if SINGLE_WILDCARD in segment and segment not in (SINGLE_WILDCARD, RECURSIVE_WILDCARD):
            raise ValidationError(
                f"invalid key pattern '{pattern}': wildcards must span a whole segment, got '{segment}'",
                pattern=pattern
            )
    return segments


def _segments_regex(segments: Sequence[str]) -> str:
    return r'\.'.join(_ONE_SEGMENT_REGEX if segment == SINGLE_WILDCARD else re.escape(segment)
                      for segment in segments)


def _regex_matcher(regex: str) -> Callable[[str], bool]:
    compiled = re.compile(regex)

    def matcher(key_path: str) -> bool:
        return compiled.fullmatch(key_path) is not None

    return matcher


def compile_pattern(pattern: str) -> KeyPattern:
    """
    Classify and compile a single pattern.

    Raises:
        ValidationError: If the pattern has empty segments or wildcards mixed
            with literal text inside a segment.
    """
    segments = _check_segments(pattern)
    kind = classify_pattern(pattern)

    if kind is PatternKind.EXACT:
        matcher: Callable[[str], bool] = pattern.__eq__
    elif kind is PatternKind.RECURSIVE_WILDCARD:
        prefix_segments = segments[:segments.index(RECURSIVE_WILDCARD)]
        if prefix_segments:
            matcher = _regex_matcher(_segments_regex(prefix_segments) + r'\..*')
        else:
            matcher = _regex_matcher(r'.*')
    else:
        matcher = _regex_matcher(_segments_regex(segments))

    return KeyPattern(raw=pattern, kind=kind, matcher=matcher)


def parse_patterns(csv: Optional[str]) -> List[KeyPattern]:
    """Split a comma separated pattern list, drop empty entries and compile each one."""
    if not csv:
        return []
    return [compile_pattern(part.strip()) for part in csv.split(",") if part.strip()]


def parse_pattern_list(patterns: Optional[Iterable[str]]) -> List[KeyPattern]:
    """Compile a list of patterns; each entry may itself be a comma separated list."""
    compiled: List[KeyPattern] = []
    for entry in patterns or []:
        compiled.extend(parse_patterns(entry))
    return compiled


def matches_any(key_path: str, patterns: Iterable[KeyPattern]) -> bool:
    return any(pattern.matches(key_path) for pattern in patterns)


@dataclass
class FilterStats:
    total_keys: int = 0
    included_keys: int = 0
    excluded_keys: int = 0


@dataclass
class FilterResult:
    included: FlatMap = field(default_factory=dict)
    excluded: FlatMap = field(default_factory=dict)
    stats: FilterStats = field(default_factory=FilterStats)


def filter_keys(tree: TextTree, includes: Sequence[KeyPattern], excludes: Sequence[KeyPattern]) -> FilterResult:
    """
    Partition the flattened keys of ``tree`` into included and excluded sets.

    With no include patterns every key starts out included. An exclude match
    always wins over an include match.

    Args:
        tree: The tree to filter.
        includes: Compiled include patterns.
        excludes: Compiled exclude patterns.

    Returns:
        FilterResult: Both partitions keep document order.
    """
    result = FilterResult()
    for key_path, value in flatten(tree).items():
        selected = not includes or matches_any(key_path, includes)
        if selected and excludes and matches_any(key_path, excludes):
            selected = False
        if selected:
            result.included[key_path] = value
        else:
            result.excluded[key_path] = value

    result.stats = FilterStats(
        total_keys=len(result.included) + len(result.excluded),
        included_keys=len(result.included),
        excluded_keys=len(result.excluded),
    )
    logger.info(
        "Key filter kept %d of %d keys (%d excluded)",
        result.stats.included_keys, result.stats.total_keys, result.stats.excluded_keys
    )
    return result
