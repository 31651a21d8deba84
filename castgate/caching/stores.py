# castgate/caching/stores.py
"""
Async key/value stores backing the value and row caches.

- MemoryCacheStore: process-local dict, lazy TTL expiry. Default for dev/tests.
- RedisCacheStore: redis.asyncio, used when REDIS_URL is set.
"""

import os
import time
from typing import Dict, List, Optional, Tuple

from redis.asyncio import Redis, ConnectionPool

REDIS_URL = os.getenv("REDIS_URL")
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "0")) or None


class MemoryCacheStore:
    def __init__(self, default_ttl: Optional[int] = None):
        self.default_ttl = default_ttl
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _read(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= time.time():
            del self._data[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl: Optional[int]):
        ttl = ttl if ttl is not None else self.default_ttl
        expires_at = time.time() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        return self._read(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        self._write(key, value, ttl)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        return [self._read(k) for k in keys]

    async def mset(self, entries: Dict[str, str], ttl: Optional[int] = None):
        for k, v in entries.items():
            self._write(k, v, ttl)

    def clear(self):
        self._data.clear()


class RedisCacheStore:
    def __init__(self, url: str, default_ttl: Optional[int] = None):
        self.url = url
        self.default_ttl = default_ttl
        self.redis: Optional[Redis] = None
        self._pool: Optional[ConnectionPool] = None

    async def connect(self):
        if self.redis is None:
            self._pool = ConnectionPool.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
            )
            self.redis = Redis(connection_pool=self._pool)

    async def disconnect(self):
        if self.redis:
            await self.redis.aclose()
            self.redis = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    async def get(self, key: str) -> Optional[str]:
        if not self.redis:
            await self.connect()
        return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None):
        if not self.redis:
            await self.connect()
        await self.redis.set(key, value, ex=ttl if ttl is not None else self.default_ttl)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        if not self.redis:
            await self.connect()
        return await self.redis.mget(keys)

    async def mset(self, entries: Dict[str, str], ttl: Optional[int] = None):
        if not entries:
            return
        if not self.redis:
            await self.connect()
        ttl = ttl if ttl is not None else self.default_ttl
        if not ttl:
            await self.redis.mset(entries)
            return
        # MSET has no expiry option
        async with self.redis.pipeline(transaction=False) as pipe:
            for k, v in entries.items():
                pipe.set(k, v, ex=ttl)
            await pipe.execute()


_store = None


def get_cache_store():
    """Process-wide store: redis when REDIS_URL is set, memory otherwise."""
    global _store
    if _store is None:
        if REDIS_URL:
            _store = RedisCacheStore(REDIS_URL, default_ttl=CACHE_TTL_SECONDS)
        else:
            _store = MemoryCacheStore(default_ttl=CACHE_TTL_SECONDS)
    return _store
