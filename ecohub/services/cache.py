"""Key-value cache with Redis primary and in-memory LRU fallback.

Holds the ingestion service's shared state: the last run's
``ImportResult`` and the entities imported so far.  If Redis cannot be
reached every operation degrades to a process-local LRU so ingestion
never blocks on a missing cache server.

Values are JSON documents serialised with :mod:`orjson`.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import OrderedDict
from typing import Any, Protocol, runtime_checkable

import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError
import structlog

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Backend protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class CacheBackend(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend:
    """``redis.asyncio`` backend sharing one connection pool."""

    __slots__ = ("_pool", "_redis")

    def __init__(self, url: str, *, max_connections: int = 10) -> None:
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    async def get(self, key: str) -> bytes | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(key))

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()


# ---------------------------------------------------------------------------
# In-memory LRU backend
# ---------------------------------------------------------------------------


class _Entry:
    __slots__ = ("expires_at", "value")

    def __init__(self, value: bytes, ttl_seconds: int | None) -> None:
        self.value = value
        self.expires_at: float | None = time.monotonic() + ttl_seconds if ttl_seconds is not None else None

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() > self.expires_at


class InMemoryCacheBackend:
    """Process-local LRU with per-entry TTL.

    Expired entries are dropped lazily when read; the least recently
    used entry is evicted when ``max_size`` is reached.
    """

    __slots__ = ("_data", "_lock", "_max_size")

    def __init__(self, *, max_size: int = 10_000) -> None:
        self._max_size = max_size
        self._data: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is not None and entry.expired:
            del self._data[key]
            return None
        return entry

    def _store(self, key: str, value: bytes, ttl_seconds: int | None) -> None:
        self._data.pop(key, None)
        while len(self._data) >= self._max_size:
            self._data.popitem(last=False)
        self._data[key] = _Entry(value, ttl_seconds)

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            self._data.move_to_end(key)
            return entry.value

    async def set(self, key: str, value: bytes, ttl_seconds: int | None = None) -> None:
        async with self._lock:
            self._store(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    @property
    def size(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# CacheManager
# ---------------------------------------------------------------------------


class CacheManager:
    """JSON cache facade that fails over from Redis to memory.

    Parameters
    ----------
    redis_url:
        Redis connection string, or *None* to use memory only.
    namespace:
        Prefix prepended to every key (e.g. ``"ecohub:"``).
    inmemory_max_size:
        Capacity of the in-memory fallback.
    """

    __slots__ = ("_checked", "_fallback", "_namespace", "_redis", "_redis_ok")

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        namespace: str = "ecohub:",
        inmemory_max_size: int = 10_000,
    ) -> None:
        self._namespace = namespace
        self._fallback = InMemoryCacheBackend(max_size=inmemory_max_size)
        self._redis: RedisCacheBackend | None = None
        self._redis_ok = False
        self._checked = False

        if redis_url:
            try:
                self._redis = RedisCacheBackend(redis_url)
            except ValueError:
                logger.warning("cache.redis_url_invalid", redis_url=redis_url)

    @property
    def backend_name(self) -> str:
        return "redis" if self._redis_ok else "memory"

    async def _check(self) -> None:
        if self._checked:
            return
        self._checked = True
        if self._redis is None:
            return
        self._redis_ok = await self._redis.ping()
        if self._redis_ok:
            logger.info("cache.redis_connected")
        else:
            logger.warning("cache.redis_unavailable_using_inmemory")

    async def _call(self, method: str, key: str, *args: Any, **kwargs: Any) -> Any:
        """Run *method* on Redis, switching to memory for good on failure."""
        await self._check()
        full_key = f"{self._namespace}{key}"
        if self._redis_ok and self._redis is not None:
            try:
                return await getattr(self._redis, method)(full_key, *args, **kwargs)
            except (RedisError, OSError):
                logger.warning("cache.redis_op_failed", method=method, key=full_key)
                self._redis_ok = False
        return await getattr(self._fallback, method)(full_key, *args, **kwargs)

    async def get(self, key: str, default: Any = None) -> Any:
        raw: bytes | None = await self._call("get", key)
        if raw is None:
            return default
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("cache.corrupt_value", key=key)
            return default

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        await self._call("set", key, orjson.dumps(value), ttl_seconds=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", key))

    async def close(self) -> None:
        if self._redis is not None:
            with contextlib.suppress(RedisError, OSError):
                await self._redis.close()
