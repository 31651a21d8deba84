# castgate/hashing.py
"""
Deterministic content hashing for cache keys.

stable_stringify(value) serializes JSON-like values with object keys sorted at
every depth, so two structurally-equal dicts hash the same regardless of
insertion order. Lists keep their element order.
"""

import hashlib
import json
from typing import Any


def _sorted_copy(value: Any, seen: set) -> Any:
    if isinstance(value, dict):
        if id(value) in seen:
            # already visited: returned unsorted, cycles are not reported here
            return value
        seen.add(id(value))
        return {k: _sorted_copy(value[k], seen) for k in sorted(value.keys(), key=str)}
    if isinstance(value, (list, tuple)):
        return [_sorted_copy(v, seen) for v in value]
    return value


def stable_stringify(value: Any) -> str:
    return json.dumps(
        _sorted_copy(value, set()),
        separators=(",", ":"),
        ensure_ascii=False,
    )


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_object(value: Any) -> str:
    return sha256(stable_stringify(value))
