"""Unit tests for the cache client and its backends."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from future_self.storage.cache import (
    CacheClient,
    InMemoryBackend,
    RedisBackend,
    create_cache,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def failing_backend() -> AsyncMock:
    backend = AsyncMock()
    error = RedisConnectionError("connection refused")
    for method in (
        "get",
        "set",
        "delete",
        "compare_and_delete",
        "compare_and_expire",
        "keys",
        "scan",
        "ping",
    ):
        getattr(backend, method).side_effect = error
    return backend


class TestInMemoryBackend:
    """Test in-memory backend semantics."""

    @pytest.mark.asyncio
    async def test_should_expire_values_after_ttl(self):
        """Expired entries read as absent."""
        clock = FakeClock()
        backend = InMemoryBackend(clock=clock)

        await backend.set("key", "value", ttl_ms=500)
        assert await backend.get("key") == "value"

        clock.now += 0.5
        assert await backend.get("key") is None

    @pytest.mark.asyncio
    async def test_only_if_absent_respects_expiry(self):
        """A set-if-absent succeeds again once the previous entry expired."""
        clock = FakeClock()
        backend = InMemoryBackend(clock=clock)

        assert await backend.set("key", "a", ttl_ms=1000, only_if_absent=True) is True
        assert await backend.set("key", "b", ttl_ms=1000, only_if_absent=True) is False

        clock.now += 2
        assert await backend.set("key", "b", ttl_ms=1000, only_if_absent=True) is True
        assert await backend.get("key") == "b"

    @pytest.mark.asyncio
    async def test_keys_matches_glob_and_skips_expired(self):
        """Pattern enumeration returns only live matching keys."""
        clock = FakeClock()
        backend = InMemoryBackend(clock=clock)

        await backend.set("retry:a", "1")
        await backend.set("retry:b", "2", ttl_ms=100)
        await backend.set("other:c", "3")
        clock.now += 1

        assert sorted(await backend.keys("retry:*")) == ["retry:a"]
        assert await backend.scan("retry:*") == ["retry:a"]


class TestCacheClient:
    """Test JSON cache operations on a healthy backend."""

    @pytest.mark.asyncio
    async def test_should_round_trip_json(self, cache):
        """Values are stored as JSON and decoded on read."""
        await cache.set("k", {"id": "1", "n": [1, 2]}, ttl_seconds=60)
        assert await cache.get("k") == {"id": "1", "n": [1, 2]}

    @pytest.mark.asyncio
    async def test_zero_ttl_is_not_treated_as_no_expiry(self, cache):
        """A TTL of zero expires immediately; only None means no expiry."""
        backend = AsyncMock()
        await CacheClient(backend).set("k", {}, ttl_seconds=0)
        backend.set.assert_awaited_once_with("k", "{}", ttl_ms=0)

        await cache.set("k", {"id": "1"}, ttl_seconds=0)
        assert await cache.get("k") is None

        await cache.set("forever", {"id": "2"})
        assert await cache.get("forever") == {"id": "2"}

    @pytest.mark.asyncio
    async def test_get_discards_undecodable_value(self):
        """A corrupt value reads as a miss."""
        backend = InMemoryBackend()
        await backend.set("k", "{not json")
        assert await CacheClient(backend).get("k") is None

    @pytest.mark.asyncio
    async def test_set_if_absent_only_first_creator_wins(self, cache):
        """Concurrent set-if-absent calls produce exactly one creator."""
        results = await asyncio.gather(
            *(cache.set_if_absent("marker", {"started_at": i}, 30) for i in range(10))
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_set_if_absent_requires_positive_ttl(self, cache):
        """A missing TTL is a programming error."""
        with pytest.raises(ValueError):
            await cache.set_if_absent("marker", {}, 0)

    @pytest.mark.asyncio
    async def test_lock_mutual_exclusion(self, cache):
        """Only one holder at a time; the holder can release and re-acquire."""
        assert await cache.acquire_lock("lock", 10_000, "token-a") is True
        assert await cache.acquire_lock("lock", 10_000, "token-b") is False

        assert await cache.release_lock("lock", "token-a") is True
        assert await cache.acquire_lock("lock", 10_000, "token-b") is True

    @pytest.mark.asyncio
    async def test_release_with_wrong_token_is_noop(self, cache):
        """A stale holder cannot delete someone else's lock."""
        await cache.acquire_lock("lock", 10_000, "token-a")

        assert await cache.release_lock("lock", "token-b") is False
        assert await cache.acquire_lock("lock", 10_000, "token-c") is False

    @pytest.mark.asyncio
    async def test_release_after_expiry_leaves_new_holder(self):
        """A holder whose lock expired cannot release the next holder's lock."""
        clock = FakeClock()
        cache = CacheClient(InMemoryBackend(clock=clock))

        await cache.acquire_lock("lock", 1000, "token-a")
        clock.now += 2
        assert await cache.acquire_lock("lock", 1000, "token-b") is True

        assert await cache.release_lock("lock", "token-a") is False
        assert await cache.backend.get("lock") == "token-b"

    @pytest.mark.asyncio
    async def test_extend_lock_only_for_holder(self):
        """Extension resets the TTL for the holder only."""
        clock = FakeClock()
        cache = CacheClient(InMemoryBackend(clock=clock))
        await cache.acquire_lock("lock", 1000, "token-a")

        assert await cache.extend_lock("lock", "token-b", 5000) is False
        assert await cache.extend_lock("lock", "token-a", 5000) is True

        clock.now += 3
        assert await cache.backend.get("lock") == "token-a"


class TestGracefulDegradation:
    """Backend failures never reach callers."""

    @pytest.mark.asyncio
    async def test_reads_and_writes_degrade(self):
        """Reads miss, writes report failure, enumeration is empty."""
        cache = CacheClient(failing_backend())

        assert await cache.get("k") is None
        assert await cache.set("k", {"a": 1}, ttl_seconds=5) is False
        assert await cache.delete("k") is False
        assert await cache.keys("*") == []
        assert await cache.scan("*") == []
        assert await cache.health_check() is False

    @pytest.mark.asyncio
    async def test_set_if_absent_reports_configured_fallback(self):
        """Callers choose what an unreachable backend means for a marker."""
        cache = CacheClient(failing_backend())

        assert await cache.set_if_absent("m", {}, 30) is False
        assert await cache.set_if_absent("m", {}, 30, on_error=True) is True

    @pytest.mark.asyncio
    async def test_lock_acquisition_is_permissive(self):
        """An unreachable backend lets the job run without a lock."""
        cache = CacheClient(failing_backend())

        assert await cache.acquire_lock("lock", 1000, "token") is True
        assert await cache.release_lock("lock", "token") is False
        assert await cache.extend_lock("lock", "token", 1000) is False


class TestRedisBackend:
    """Test Redis backend with a mocked client."""

    @pytest.mark.asyncio
    async def test_startup_registers_scripts_and_survives_failed_ping(self):
        """A failed ping keeps the client so it can reconnect later."""
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        with patch("future_self.storage.cache.redis.from_url", return_value=client):
            backend = RedisBackend("redis://localhost:6379")
            await backend.startup()

        assert backend.redis is client
        assert client.register_script.call_count == 2

    @pytest.mark.asyncio
    async def test_set_uses_px_and_nx(self):
        """Set-if-absent maps to SET NX PX."""
        backend = RedisBackend("redis://localhost:6379")
        backend.redis = MagicMock()
        backend.redis.set = AsyncMock(return_value=None)

        assert await backend.set("k", "v", ttl_ms=1500, only_if_absent=True) is False
        backend.redis.set.assert_awaited_once_with("k", "v", px=1500, nx=True)

    @pytest.mark.asyncio
    async def test_compare_and_delete_runs_script(self):
        """Release goes through the registered compare-and-delete script."""
        backend = RedisBackend("redis://localhost:6379")
        backend.redis = MagicMock()
        backend._release_script = AsyncMock(return_value=1)

        assert await backend.compare_and_delete("lock", "token") is True
        backend._release_script.assert_awaited_once_with(keys=["lock"], args=["token"])

    @pytest.mark.asyncio
    async def test_operations_fail_before_startup(self):
        """Using the backend before startup raises, and the client degrades."""
        cache = CacheClient(RedisBackend("redis://localhost:6379"))
        assert await cache.get("k") is None
        assert await cache.acquire_lock("lock", 1000, "token") is True


class TestCreateCache:
    def test_uses_redis_when_url_configured(self):
        cache = create_cache("redis://localhost:6379")
        assert isinstance(cache.backend, RedisBackend)

    def test_falls_back_to_memory(self):
        with patch("future_self.config.settings.redis_url", None):
            cache = create_cache()
        assert isinstance(cache.backend, InMemoryBackend)
