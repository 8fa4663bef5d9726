"""
Cache backends for the merged-entity read path.

The orchestrator uses the cache aside: reads check it first and repopulate
it on a miss, writes invalidate rather than update. Values are the
JSON-serialized merged entity, so every backend stores plain strings.

    CacheBackend (Protocol)
    ├── InMemoryCache  (single process, bounded LRU with TTL)
    └── RedisCache     (shared, redis.asyncio)
"""

from __future__ import annotations

import fnmatch
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    async def get(self, key: str) -> str | None:
        """Return the cached value, or ``None`` if absent or expired."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Store ``value``; ``None`` TTL means the backend default."""
        ...

    async def invalidate(self, key: str) -> None:
        """Drop exactly ``key``; glob characters in it are literal."""
        ...

    async def invalidate_pattern(self, pattern: str) -> None:
        """Drop every key matching the glob ``pattern`` (``Patient:*``)."""
        ...


class InMemoryCache:
    """Bounded in-memory cache with TTL expiry, checked lazily on read."""

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: int | None = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store: OrderedDict[str, tuple[str, float | None]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    async def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._store[key]
            return None

        self._store.move_to_end(key)
        return value

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = self._clock() + ttl if ttl else None

        if key not in self._store and len(self._store) >= self._max_size:
            evicted, _ = self._store.popitem(last=False)
            logger.debug("Evicted LRU cache key %s", evicted)

        self._store[key] = (value, expires_at)
        self._store.move_to_end(key)

    async def invalidate(self, key: str) -> None:
        self._store.pop(key, None)

    async def invalidate_pattern(self, pattern: str) -> None:
        for matched in fnmatch.filter(list(self._store), pattern):
            del self._store[matched]

    def size(self) -> int:
        return len(self._store)


class RedisCache:
    """Redis-backed cache shared by every process of a deployment."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        default_ttl_seconds: int | None = 300,
        client: redis.Redis | None = None,
    ):
        self._client = client or redis.from_url(url, decode_responses=True)
        self._default_ttl = default_ttl_seconds

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        if ttl:
            await self._client.setex(key, ttl, value)
        else:
            await self._client.set(key, value)

    async def invalidate(self, key: str) -> None:
        await self._client.delete(key)

    async def invalidate_pattern(self, pattern: str) -> None:
        keys = [matched async for matched in self._client.scan_iter(match=pattern)]
        if keys:
            await self._client.delete(*keys)

    async def close(self) -> None:
        await self._client.aclose()
