"""JSON serialization for configuration documents.

Two renderings are used: a canonical one (sorted keys, compact) for hashing
and event payloads, and a document one (projection order, indented) for the
preview text and the stored session.
"""

from __future__ import annotations

import json
import math
from typing import Any, Iterator, Tuple


class CanonicalJsonTypeError(TypeError):
    """Raised when a value has no JSON representation."""


_SCALARS = (str, int, bool)


def _walk(obj: Any, path: str) -> Iterator[Tuple[str, Any]]:
    stack = [(path, obj)]
    while stack:
        here, value = stack.pop()
        yield here, value
        if isinstance(value, dict):
            for key, child in value.items():
                if not isinstance(key, str):
                    raise CanonicalJsonTypeError(f"Unsupported key type at {here}: {type(key).__name__}")
                stack.append((f"{here}.{key}", child))
        elif isinstance(value, (list, tuple)):
            for idx, child in enumerate(value):
                stack.append((f"{here}[{idx}]", child))


def check_serializable(obj: Any) -> None:
    """Raise when ``obj`` contains values JSON cannot carry faithfully."""
    for path, value in _walk(obj, "$"):
        if value is None or isinstance(value, (dict, list, tuple) + _SCALARS):
            continue
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError(f"Non-finite float at {path}: {value!r}")
            continue
        raise CanonicalJsonTypeError(f"Unsupported type at {path}: {type(value).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Compact JSON with recursively sorted keys; list order is kept."""
    check_serializable(obj)
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def document_dumps(obj: Any) -> str:
    """Indented JSON that keeps the projection's key order."""
    check_serializable(obj)
    return json.dumps(obj, ensure_ascii=False, indent=2, allow_nan=False)
