"""Cache-backed queue of failed letter generations awaiting retry."""

import math
import time
from collections.abc import Callable
from typing import Any

from loguru import logger

from .config import Settings, get_settings
from .storage.cache import CacheClient
from .types import RetryEntry


class RetryQueue:
    """One entry per subject under ``{retry_namespace}:{subject_id}``.

    Each failure bumps ``attempt_count`` and schedules the next attempt on the
    backoff ladder. When the count reaches the cap the entry is dropped and
    the subject waits for the next weekly run. Entries expire after a day
    regardless.
    """

    def __init__(
        self,
        cache: CacheClient,
        config: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.config = config or get_settings()
        self.clock = clock

    def key(self, subject_id: str) -> str:
        return f"{self.config.retry_namespace}:{subject_id}"

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def backoff_ms(self, attempt_count: int) -> int:
        """Delay before the next attempt after attempt_count failures."""
        ladder = self.config.retry_backoff_seconds
        index = min(max(attempt_count - 1, 0), len(ladder) - 1)
        return ladder[index] * 1000

    async def get(self, subject_id: str) -> RetryEntry | None:
        return await self.cache.get(self.key(subject_id))  # type: ignore[no-any-return]

    async def record_failure(self, subject_id: str, error: str) -> RetryEntry | None:
        """Record a failed attempt; None when the subject exhausted its retries."""
        previous = await self.get(subject_id)
        attempt_count = (previous["attempt_count"] if previous else 0) + 1

        if attempt_count >= self.config.retry_max_attempts:
            await self.cache.delete(self.key(subject_id))
            logger.error(
                f"Max retries exhausted for subject {subject_id} "
                f"after {attempt_count} attempts: {error}"
            )
            return None

        now = self._now_ms()
        entry: RetryEntry = {
            "subject_id": subject_id,
            "attempt_count": attempt_count,
            "last_attempt": now,
            "next_retry": now + self.backoff_ms(attempt_count),
            "last_error": error,
        }
        await self.cache.set(self.key(subject_id), entry, self.config.retry_entry_ttl_seconds)
        logger.info(
            f"Queued retry {attempt_count}/{self.config.retry_max_attempts} for subject "
            f"{subject_id} in {self.backoff_ms(attempt_count) // 60000} minutes"
        )
        return entry

    async def remove(self, subject_id: str) -> None:
        await self.cache.delete(self.key(subject_id))

    async def entries(self) -> list[RetryEntry]:
        """All live entries, read with cursor iteration."""
        keys = await self.cache.scan(f"{self.config.retry_namespace}:*")
        entries = []
        for key in keys:
            entry = await self.cache.get(key)
            if entry is not None:
                entries.append(entry)
        return entries

    async def due(self, now_ms: int | None = None) -> list[RetryEntry]:
        """Entries whose next attempt is due and that still have attempts left."""
        now = self._now_ms() if now_ms is None else now_ms
        return [
            entry
            for entry in await self.entries()
            if entry["next_retry"] <= now
            and entry["attempt_count"] < self.config.retry_max_attempts
        ]

    async def status(self) -> dict[str, Any]:
        """Queue contents with the time left until each retry."""
        now = self._now_ms()
        entries = await self.entries()
        return {
            "queue_size": len(entries),
            "entries": [
                {
                    "subject_id": entry["subject_id"],
                    "attempt_count": entry["attempt_count"],
                    "next_retry_in": (
                        f"{math.ceil((entry['next_retry'] - now) / 60000)} minutes"
                        if entry["next_retry"] > now
                        else "ready"
                    ),
                    "last_error": entry["last_error"],
                }
                for entry in entries
            ],
        }
