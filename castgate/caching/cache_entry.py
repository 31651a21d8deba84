# castgate/caching/cache_entry.py
"""
Cache entry codec.

Entries are written as {"result": <value>, "usage": {...}}. Entries written
before usage tracking existed hold the bare value; they decode as LegacyEntry
with zero usage. Decoding is an explicit two-variant probe so that a future
format gets its own variant instead of another ad-hoc key check.
"""

import json
from dataclasses import dataclass
from typing import Any, Union

from castgate.errors import CacheEntryError
from castgate.usage import Usage, ZERO_USAGE


@dataclass(frozen=True)
class CurrentEntry:
    result: Any
    usage: Usage


@dataclass(frozen=True)
class LegacyEntry:
    result: Any

    @property
    def usage(self) -> Usage:
        return ZERO_USAGE


CacheEntry = Union[CurrentEntry, LegacyEntry]


def serialize_entry(result: Any, usage: Usage) -> str:
    return json.dumps({"result": result, "usage": usage.to_dict()}, ensure_ascii=False)


def decode_entry(raw: str) -> CacheEntry:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise CacheEntryError(f"Failed to parse cached value: {e}") from e

    if isinstance(parsed, dict) and "result" in parsed and "usage" in parsed:
        try:
            usage = Usage.from_dict(parsed["usage"])
        except (TypeError, ValueError, OverflowError) as e:
            raise CacheEntryError(f"Failed to parse cached usage: {e}") from e
        return CurrentEntry(result=parsed["result"], usage=usage)
    return LegacyEntry(result=parsed)
