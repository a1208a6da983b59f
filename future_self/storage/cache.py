"""Key-value cache client with Redis and in-memory backends.

Backends are thin and raise on failure. ``CacheClient`` sits on top and turns
every backend failure into a logged, degraded result: a miss for reads,
``False`` for writes, and a permissive ``True`` for lock acquisition.
"""

import json
import time
from collections.abc import Callable
from fnmatch import fnmatchcase
from typing import Any

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError

from .protocols import KeyValueBackend

RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

EXTEND_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisBackend:
    """Redis backend using redis.asyncio and server-side Lua scripts."""

    def __init__(self, redis_url: str, socket_timeout: float = 5.0):
        """Initialize Redis backend.

        Args:
            redis_url: Redis connection URL.
            socket_timeout: Connect and read timeout in seconds.
        """
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.redis: redis.Redis | None = None
        self._release_script: Any = None
        self._extend_script: Any = None

    async def startup(self) -> None:
        """Create the client and register lock scripts.

        A failed ping is logged but the client is kept: redis-py reconnects on
        the next command, so the cache recovers without a restart.
        """
        self.redis = redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.socket_timeout,
            socket_timeout=self.socket_timeout,
        )
        self._release_script = self.redis.register_script(RELEASE_LOCK_SCRIPT)
        self._extend_script = self.redis.register_script(EXTEND_LOCK_SCRIPT)
        try:
            await self.redis.ping()
            logger.info("Redis cache connected")
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connection failed: {e}. Cache running degraded.")

    async def shutdown(self) -> None:
        """Close Redis connection."""
        if self.redis:
            await self.redis.aclose()

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise ConnectionError("Redis backend not started")
        return self.redis

    async def get(self, key: str) -> str | None:
        return await self._client().get(key)

    async def set(
        self, key: str, value: str, ttl_ms: int | None = None, only_if_absent: bool = False
    ) -> bool:
        result = await self._client().set(key, value, px=ttl_ms, nx=only_if_absent)
        return bool(result)

    async def delete(self, key: str) -> int:
        return int(await self._client().delete(key))

    async def compare_and_delete(self, key: str, token: str) -> bool:
        self._client()
        result = await self._release_script(keys=[key], args=[token])
        return int(result) == 1

    async def compare_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        self._client()
        result = await self._extend_script(keys=[key], args=[token, ttl_ms])
        return int(result) == 1

    async def keys(self, pattern: str) -> list[str]:
        return list(await self._client().keys(pattern))

    async def scan(self, pattern: str, count: int = 100) -> list[str]:
        return [key async for key in self._client().scan_iter(match=pattern, count=count)]

    async def ping(self) -> bool:
        return bool(await self._client().ping())


class InMemoryBackend:
    """In-process backend for development and tests.

    Operations contain no awaits, so each one is atomic on the event loop,
    which gives set-if-absent and the compare operations the same guarantees
    as the Redis scripts within a single process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize in-memory store.

        Args:
            clock: Seconds source used for expiry; injectable for tests.
        """
        self._data: dict[str, tuple[str, float | None]] = {}
        self._clock = clock
        logger.info("In-memory cache backend initialized")

    async def startup(self) -> None:
        pass

    async def shutdown(self) -> None:
        self._data.clear()

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_ms: int | None) -> float | None:
        return None if ttl_ms is None else self._clock() + ttl_ms / 1000

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(
        self, key: str, value: str, ttl_ms: int | None = None, only_if_absent: bool = False
    ) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl_ms))
        return True

    async def delete(self, key: str) -> int:
        existed = self._live(key) is not None
        self._data.pop(key, None)
        return int(existed)

    async def compare_and_delete(self, key: str, token: str) -> bool:
        if self._live(key) != token:
            return False
        del self._data[key]
        return True

    async def compare_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        if self._live(key) != token:
            return False
        self._data[key] = (token, self._expiry(ttl_ms))
        return True

    async def keys(self, pattern: str) -> list[str]:
        return [
            key
            for key in list(self._data)
            if fnmatchcase(key, pattern) and self._live(key) is not None
        ]

    async def scan(self, pattern: str, count: int = 100) -> list[str]:
        return await self.keys(pattern)

    async def ping(self) -> bool:
        return True


class CacheClient:
    """JSON cache, lock and marker operations with graceful degradation.

    No method raises on backend failure. Lock acquisition is permissive when
    the backend is unreachable: the protected job runs without mutual
    exclusion rather than the whole feature stalling on a cache outage.
    """

    def __init__(self, backend: KeyValueBackend) -> None:
        self.backend = backend

    async def startup(self) -> None:
        await self.backend.startup()

    async def shutdown(self) -> None:
        await self.backend.shutdown()

    async def get(self, key: str) -> Any | None:
        """Get a cached value; None on miss or backend error."""
        try:
            raw = await self.backend.get(key)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache get failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding undecodable cache value for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Set a cached value with optional TTL; False on failure."""
        try:
            ttl_ms = None if ttl_seconds is None else ttl_seconds * 1000
            return await self.backend.set(key, json.dumps(value, default=str), ttl_ms=ttl_ms)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    async def set_if_absent(
        self, key: str, value: Any, ttl_seconds: int, on_error: bool = False
    ) -> bool:
        """Create key only if missing; True only for the creator.

        Args:
            key: Cache key.
            value: JSON-serializable value.
            ttl_seconds: Mandatory lifetime so markers can never be orphaned.
            on_error: Result to report when the backend fails.
        """
        if ttl_seconds <= 0:
            raise ValueError("set_if_absent requires a positive TTL")
        try:
            return await self.backend.set(
                key, json.dumps(value, default=str), ttl_ms=ttl_seconds * 1000, only_if_absent=True
            )
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache set-if-absent failed for {key}: {e}")
            return on_error

    async def delete(self, key: str) -> bool:
        """Delete a key; False on failure."""
        try:
            await self.backend.delete(key)
            return True
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache delete failed for {key}: {e}")
            return False

    async def acquire_lock(self, key: str, ttl_ms: int, token: str) -> bool:
        """Acquire a distributed lock held under token for ttl_ms."""
        if ttl_ms <= 0:
            raise ValueError("acquire_lock requires a positive TTL")
        try:
            acquired = await self.backend.set(key, token, ttl_ms=ttl_ms, only_if_absent=True)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to acquire lock {key}: {e}. Proceeding without lock.")
            return True

        if acquired:
            logger.debug(f"Lock acquired: {key} (TTL: {ttl_ms}ms)")
        else:
            logger.debug(f"Lock already held: {key}")
        return acquired

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock only if it is still held under token."""
        try:
            released = await self.backend.compare_and_delete(key, token)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to release lock {key}: {e}")
            return False

        if released:
            logger.debug(f"Lock released: {key}")
        return released

    async def extend_lock(self, key: str, token: str, ttl_ms: int) -> bool:
        """Reset a lock TTL only if it is still held under token."""
        try:
            return await self.backend.compare_and_expire(key, token, ttl_ms)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to extend lock {key}: {e}")
            return False

    async def keys(self, pattern: str) -> list[str]:
        """Enumerate keys in one call. Only for small, bounded keyspaces."""
        try:
            return await self.backend.keys(pattern)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache keys failed for {pattern}: {e}")
            return []

    async def scan(self, pattern: str, count: int = 100) -> list[str]:
        """Enumerate keys with cursor iteration, safe for large keyspaces."""
        try:
            return await self.backend.scan(pattern, count=count)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache scan failed for {pattern}: {e}")
            return []

    async def health_check(self) -> bool:
        try:
            return await self.backend.ping()
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache health check failed: {e}")
            return False


def create_cache(redis_url: str | None = None) -> CacheClient:
    """Create cache client based on configuration.

    Args:
        redis_url: Redis URL. Uses settings if not provided.

    Returns:
        CacheClient over Redis when a URL is configured, in-memory otherwise.
    """
    from ..config import settings

    url = redis_url or settings.redis_url
    if url:
        logger.info("Creating Redis cache")
        return CacheClient(RedisBackend(url))

    logger.info("No Redis URL configured, using in-memory cache")
    return CacheClient(InMemoryBackend())
