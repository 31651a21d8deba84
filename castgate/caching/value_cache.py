# castgate/caching/value_cache.py
"""
Content-addressed cache for cast/value requests.

cache key = "value:" + hash(data) + ":" + context key, where the context key
hashes the request-level parameters (type, output name, prompt, schema).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from castgate.caching.cache_entry import decode_entry, serialize_entry
from castgate.hashing import hash_object
from castgate.usage import Usage


@dataclass(frozen=True)
class CacheContext:
    request_type: str
    output_name: str
    prompt: str
    effective_schema: Dict[str, Any]
    primary_key: Optional[str] = None


@dataclass(frozen=True)
class CacheHit:
    value: Any
    usage: Usage
    hit: bool = True


@dataclass(frozen=True)
class CacheMiss:
    hit: bool = False


CacheLookup = Union[CacheHit, CacheMiss]


def build_context_key(context: CacheContext) -> str:
    return hash_object({
        "requestType": context.request_type,
        "outputName": context.output_name,
        "prompt": context.prompt,
        "primaryKey": context.primary_key or "",
        "effectiveSchema": context.effective_schema,
    })


def build_value_cache_key(data: Any, context_key: str) -> str:
    return ":".join(["value", hash_object(data), context_key])


class ValueCache:
    def __init__(self, store, context: CacheContext, data: Any):
        self.store = store
        self.context_key = build_context_key(context)
        self.cache_key = build_value_cache_key(data, self.context_key)

    async def get(self, invalidate_cache: bool = False) -> CacheLookup:
        """Raises CacheEntryError when the stored entry cannot be parsed."""
        if invalidate_cache:
            return CacheMiss()
        raw = await self.store.get(self.cache_key)
        if raw is None:
            return CacheMiss()
        entry = decode_entry(raw)
        return CacheHit(value=entry.result, usage=entry.usage)

    async def set(self, value: Any, usage: Usage):
        await self.store.set(self.cache_key, serialize_entry(value, usage))
