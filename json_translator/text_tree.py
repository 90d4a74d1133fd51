"""Flattening and reconstruction of JSON-like text trees.

A tree is flattened into an ordered mapping of dotted key paths to leaf
values. Object members are addressed as ``parent.child`` and array elements
as ``parent[0]``, so ``{"a": {"b": ["x"]}}`` becomes ``{"a.b[0]": "x"}``.
"""
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Union

logger = logging.getLogger(__name__)

TextTree = Union[Dict[str, Any], List[Any], str, int, float, bool, None]
FlatMap = Dict[str, Any]
PathToken = Union[str, int]

_INDEX_PATTERN = re.compile(r'\[(\d+)\]')


def is_container(value: Any) -> bool:
    return isinstance(value, (dict, list))


def _member_path(prefix: Optional[str], key: Any) -> str:
    return str(key) if prefix is None else f"{prefix}.{key}"


def _index_path(prefix: Optional[str], index: int) -> str:
    return f"{prefix or ''}[{index}]"


def flatten(tree: TextTree, prefix: Optional[str] = None) -> FlatMap:
    """
    Flatten a tree into an ordered mapping of key paths to leaf values.

    Args:
        tree: The tree to flatten.
        prefix: Key path the tree is mounted under; None for the document root.

    Returns:
        Mapping of key path to leaf value, in document order. A bare scalar
        root has no addressable path and produces an empty mapping. An empty
        member name yields an empty path segment (``{"": "x"}`` flattens to
        ``{"": "x"}``).
    """
    flattened: FlatMap = {}
    _flatten_into(tree, prefix, flattened)
    return flattened


def _flatten_into(node: Any, prefix: Optional[str], flattened: FlatMap) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            _flatten_into(value, _member_path(prefix, key), flattened)
    elif isinstance(node, list):
        for index, value in enumerate(node):
            _flatten_into(value, _index_path(prefix, index), flattened)
    elif prefix is not None:
        flattened[prefix] = node


def split_path(key_path: str) -> List[PathToken]:
    """Split ``a.b[2].c`` into ``['a', 'b', 2, 'c']``.

    A leading ``[n]`` addresses an element of a root array.
    """
    tokens: List[PathToken] = []
    for position, segment in enumerate(key_path.split(".")):
        name, bracket, indices = segment.partition("[")
        if name or not bracket or position > 0:
            tokens.append(name)
        tokens.extend(int(index) for index in _INDEX_PATTERN.findall(bracket + indices))
    return tokens


_MISSING = object()


def _get_child(container: Union[dict, list], token: PathToken) -> Any:
    if isinstance(container, list):
        if isinstance(token, int) and token < len(container) and container[token] is not None:
            return container[token]
        return _MISSING
    return container.get(token, _MISSING)


def _put_child(container: Union[dict, list], token: PathToken, value: Any) -> None:
    if isinstance(container, list):
        while len(container) <= token:
            container.append(None)
    container[token] = value


def _set_path(root: list, tokens: List[PathToken], value: Any) -> bool:
    current: Union[dict, list] = root
    for token, next_token in zip(tokens, tokens[1:]):
        expected_type = list if isinstance(next_token, int) else dict
        child = _get_child(current, token)
        if child is _MISSING:
            child = expected_type()
            _put_child(current, token, child)
        elif not isinstance(child, expected_type):
            return False
        current = child

    last_token = tokens[-1]
    if isinstance(current, list) != isinstance(last_token, int):
        return False
    if is_container(_get_child(current, last_token)):
        return False
    _put_child(current, last_token, value)
    return True


def rebuild_tree(flattened: Mapping[str, Any]) -> TextTree:
    """
    Rebuild a nested tree from a flat key-path mapping.

    Intermediate objects and arrays are created on demand; arrays are padded
    with ``None`` up to the highest index seen. A key path that would turn an
    existing leaf into a namespace (or the reverse) is skipped and the first
    assignment is kept.
    """
    root: list = [None]
    for key_path, value in flattened.items():
        tokens = split_path(key_path)
        if not tokens:
            continue
        if not _set_path(root, [0] + tokens, value):
            logger.debug("Dropping key '%s': it collides with an existing leaf or namespace.", key_path)
    return root[0] if root[0] is not None else {}


def apply_translations(tree: TextTree, translations: Mapping[str, str], prefix: Optional[str] = None) -> TextTree:
    """Return a copy of ``tree`` with string leaves replaced by their translation, when one exists."""
    if isinstance(tree, dict):
        return {
            key: apply_translations(value, translations, _member_path(prefix, key))
            for key, value in tree.items()
        }
    if isinstance(tree, list):
        return [apply_translations(value, translations, _index_path(prefix, index)) for index, value in enumerate(tree)]
    if isinstance(tree, str) and prefix is not None and prefix in translations:
        return translations[prefix]
    return tree
