"""
Path flattening and key lookup over arbitrary JSON documents.

Paths use dot-notation for object keys and bracketed indices for arrays::

    {"a": {"b": [{"c": 1}, {"c": None}]}}
        → {"a.b[0].c": 1, "a.b[1].c": None}

Every scalar leaf (``None`` included) appears exactly once, in document
order.  Empty objects and arrays have no leaves and produce no entries.

``resolve_key`` maps a vague term ("line total") onto one of those paths
with the LLM, for use as the key in ``find_key_paths`` and ``find_matches``.

Traversal uses an explicit stack bounded by ``MAX_FLATTEN_DEPTH`` so that a
cyclic or pathologically deep input fails with ``DepthExceeded`` instead of
exhausting the interpreter stack.
"""

import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from report_query.config import MAX_FLATTEN_DEPTH
from report_query.errors import DepthExceeded, LLMUnavailable
from report_query.llm_client import LLMCollaborator, parse_resolved_key


def _join_key(parent_key: str, key: Any) -> str:
    return f"{parent_key}.{key}" if parent_key else str(key)


def _join_index(parent_key: str, index: int) -> str:
    return f"{parent_key}[{index}]"


# ---------------------- FLATTENING ----------------------

def flatten(
    node: Any,
    path_prefix: str = "",
    max_depth: Optional[int] = None,
) -> Dict[str, Any]:
    """Flatten *node* into a ``{path: leaf}`` mapping.

    - Objects are expanded with ``.key``.
    - Arrays are expanded with ``[index]``.
    - Anything else is a leaf, written under the accumulated path.
    """
    limit = MAX_FLATTEN_DEPTH if max_depth is None else max_depth
    items: Dict[str, Any] = {}
    stack: List[Tuple[str, Any, int]] = [(path_prefix, node, 0)]

    while stack:
        path, value, depth = stack.pop()
        if isinstance(value, dict):
            if depth >= limit:
                raise DepthExceeded(limit, path)
            children = [(_join_key(path, k), v, depth + 1) for k, v in value.items()]
        elif isinstance(value, list):
            if depth >= limit:
                raise DepthExceeded(limit, path)
            children = [(_join_index(path, i), v, depth + 1) for i, v in enumerate(value)]
        else:
            items[path] = value
            continue
        # reversed so the first child is popped first
        stack.extend(reversed(children))

    return items


# ---------------------- KEY LOOKUP ----------------------

def _iter_entries(
    node: Any,
    max_depth: Optional[int] = None,
) -> Iterator[Tuple[str, str, Any, Dict[str, Any]]]:
    """Yield ``(path, key, value, owner)`` for every object entry, pre-order."""
    limit = MAX_FLATTEN_DEPTH if max_depth is None else max_depth
    # (path, key, value, owner, depth); key/owner are None for array elements
    stack: List[Tuple[str, Any, Any, Any, int]] = [("", None, node, None, 0)]

    while stack:
        path, key, value, owner, depth = stack.pop()
        if owner is not None:
            yield path, key, value, owner
        if isinstance(value, dict):
            if depth >= limit:
                raise DepthExceeded(limit, path)
            children = [(_join_key(path, k), k, v, value, depth + 1) for k, v in value.items()]
        elif isinstance(value, list):
            if depth >= limit:
                raise DepthExceeded(limit, path)
            children = [(_join_index(path, i), None, v, None, depth + 1) for i, v in enumerate(value)]
        else:
            continue
        stack.extend(reversed(children))


_INDEX_SUFFIX_RE = re.compile(r"(\[\d+\])+$")


def _target_key(key: str) -> str:
    # "a.b.transactionType" → "transactionType", "a.lines[2]" → "lines"
    return _INDEX_SUFFIX_RE.sub("", key.rsplit(".", 1)[-1])


def find_key_paths(node: Any, key: str) -> List[str]:
    """Return every path whose final object key equals *key*.

    *key* may be given as a dotted path; only its last segment is used.
    """
    target = _target_key(key)
    return [path for path, k, _v, _owner in _iter_entries(node) if k == target]


def find_matches(node: Any, key: str, value: str) -> List[Dict[str, Any]]:
    """Find every object holding *key* whose value, as a string, equals *value*.

    Each match carries the path, the raw value and the owning object
    (``fullNode``).
    """
    target = _target_key(key)
    matches: List[Dict[str, Any]] = []
    for path, k, v, owner in _iter_entries(node):
        if k == target and _stringify(v) == value:
            matches.append({"path": path, "value": v, "fullNode": owner})
    return matches


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


async def resolve_key(node: Any, term: str, llm: Optional[LLMCollaborator]) -> str:
    """Ask the LLM which flattened path of *node* a vague *term* refers to.

    The reply must name one of the document's own paths; anything else
    raises ``KeyResolutionFailure``.
    """
    if llm is None:
        raise LLMUnavailable("Key resolution needs an LLM collaborator")
    keys = list(flatten(node))
    raw_text = await llm.resolve_key(term, keys)
    return parse_resolved_key(raw_text, keys)
