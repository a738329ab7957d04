from __future__ import annotations

import json
import re
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis

from haroval.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300


def user_key(user_id: str) -> str:
    return f"user_{user_id}"


async def invalidate_user(cache: Any, user_id: str) -> None:
    """Drop every cached entry derived from ``user_id``."""
    if cache is None:
        return
    await cache.delete(user_key(user_id))
    await cache.clear_pattern(rf"^user_{re.escape(str(user_id))}(_|$)")


class MemoryCache:
    """Process-local TTL cache with the same async surface as RedisCache.

    Expired entries are dropped lazily on read and when stats are taken.
    """

    def __init__(
        self,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def clear_pattern(self, pattern: str) -> int:
        regex = re.compile(pattern)
        with self._lock:
            doomed = [key for key in self._entries if regex.search(key)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    async def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            for key in [k for k, (_, exp) in self._entries.items() if now >= exp]:
                del self._entries[key]
            return {"size": len(self._entries), "keys": sorted(self._entries)}

    async def close(self) -> None:
        await self.clear()


class RedisCache:
    """Redis-backed TTL cache; values are stored as JSON under a key prefix."""

    def __init__(
        self,
        redis_url: str,
        *,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        prefix: str = "haroval:cache:",
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.default_ttl_seconds = default_ttl_seconds
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        cached = await self.client.get(self._key(key))
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            logger.warning("cache_entry_corrupt", key=key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        await self.client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl)))

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def _keys(self) -> list[str]:
        return [key async for key in self.client.scan_iter(match=f"{self.prefix}*")]

    async def clear(self) -> None:
        keys = await self._keys()
        if keys:
            await self.client.delete(*keys)

    async def clear_pattern(self, pattern: str) -> int:
        regex = re.compile(pattern)
        doomed = [key for key in await self._keys() if regex.search(key[len(self.prefix):])]
        if doomed:
            await self.client.delete(*doomed)
        return len(doomed)

    async def stats(self) -> dict:
        keys = sorted(key[len(self.prefix):] for key in await self._keys())
        return {"size": len(keys), "keys": keys}

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["MemoryCache", "RedisCache", "invalidate_user", "user_key"]
