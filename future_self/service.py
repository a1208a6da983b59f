"""Letter orchestration: cached simulations, idempotent generation, persistence."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from loguru import logger

from .background import BackgroundTasks
from .config import Settings, get_settings
from .exceptions import (
    GenerationError,
    InsufficientDataError,
    StorageError,
    SubjectNotFoundError,
)
from .experiments import VariantSelector
from .generator import LetterGenerator
from .retry import poll_until_present
from .simulation import SimulationEngine, horizon_for
from .storage.cache import CacheClient
from .storage.protocols import FutureSelfRepository
from .types import (
    Engagement,
    HealthStatus,
    LetterDraft,
    LetterRecord,
    LetterResult,
    LetterStats,
    LetterTrigger,
    Preferences,
    Simulation,
    TimelinePoint,
)

MAX_HISTORY_LIMIT = 50
MAX_HISTORY_OFFSET = 10_000

USER_DATA_ERRORS = (SubjectNotFoundError, InsufficientDataError)

T = TypeVar("T")


class FutureSelfService:
    """Orchestrates simulations and letters on top of the cache and repository.

    Two cached projections are kept per subject: the simulation (cheap to
    recompute) and one letter per variant (expensive). Letter generation is
    guarded by a short-lived idempotency marker so concurrent requests for
    the same subject and variant share one generation. Cache failures never
    reach callers; generation and persistence failures do.
    """

    def __init__(
        self,
        cache: CacheClient,
        repository: FutureSelfRepository,
        simulator: SimulationEngine,
        generator: LetterGenerator,
        selector: VariantSelector,
        tasks: BackgroundTasks | None = None,
        config: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize with injected dependencies."""
        self.cache = cache
        self.repository = repository
        self.simulator = simulator
        self.generator = generator
        self.selector = selector
        self.tasks = tasks or BackgroundTasks()
        self.config = config or get_settings()
        self.clock = clock

    def simulation_key(self, subject_id: str) -> str:
        return f"{self.config.cache_namespace}:sim:{subject_id}"

    def letter_key(self, subject_id: str, variant: str) -> str:
        return f"{self.config.cache_namespace}:letter:{subject_id}:{variant}"

    def idempotency_key(self, subject_id: str, variant: str) -> str:
        return f"{self.config.idempotency_namespace}:{subject_id}:{variant}"

    def triggered_key(self, subject_id: str, trigger: LetterTrigger) -> str:
        return f"{self.config.idempotency_namespace}:triggered:{subject_id}:{trigger.value}"

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def get_simulation(self, subject_id: str) -> Simulation:
        """Get the dual-path projection, served from cache when fresh."""
        key = self.simulation_key(subject_id)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for simulation: {subject_id}")
            return cached  # type: ignore[no-any-return]

        simulation = await self.simulator.simulate(subject_id)
        self.tasks.submit(
            self.cache.set(key, simulation, self.config.simulation_cache_ttl_seconds),
            f"cache simulation {subject_id}",
        )
        return simulation

    def select_variant(self, subject_id: str) -> str:
        """Assign the subject's letter variant, falling back to the default."""
        try:
            variant = self.selector.select_variant(self.config.letter_experiment, subject_id)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Variant selection failed for {subject_id}: {e}")
            variant = None

        if variant is None or variant not in self.config.letter_variants:
            return self.config.default_letter_variant
        logger.debug(f"Experiment assigned variant '{variant}' for subject {subject_id}")
        return variant

    async def get_letter(
        self,
        subject_id: str,
        trigger: LetterTrigger = LetterTrigger.USER_REQUEST,
        variant: str | None = None,
    ) -> LetterResult:
        """Get a letter, generating at most once across concurrent callers.

        Only the caller that creates the idempotency marker generates; the
        others poll the letter cache. A waiter that times out generates on
        its own, so a stuck generation cannot block callers indefinitely.
        """
        variant = variant or self.select_variant(subject_id)
        key = self.letter_key(subject_id, variant)

        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for letter: {subject_id} ({variant})")
            return cached  # type: ignore[no-any-return]

        marker = self.idempotency_key(subject_id, variant)
        acquired = await self.cache.set_if_absent(
            marker,
            {"started_at": self._now_ms()},
            self.config.idempotency_ttl_seconds,
            on_error=True,
        )

        if not acquired:
            logger.info(f"Letter generation in progress for {subject_id} ({variant}), waiting")
            letter = await poll_until_present(
                lambda: self.cache.get(key),
                initial=self.config.idempotency_wait_initial_seconds,
                multiplier=self.config.idempotency_wait_multiplier,
                max_interval=self.config.idempotency_wait_max_interval_seconds,
                timeout=self.config.idempotency_wait_timeout_seconds,
            )
            if letter is not None:
                return letter  # type: ignore[no-any-return]
            logger.warning(
                f"Timed out waiting for letter {subject_id} ({variant}), generating anyway"
            )
            return await self.generate_letter(subject_id, trigger, variant)

        try:
            return await self.generate_letter(subject_id, trigger, variant)
        finally:
            self.tasks.submit(self.cache.delete(marker), f"release marker {marker}")

    async def generate_letter(
        self,
        subject_id: str,
        trigger: LetterTrigger = LetterTrigger.USER_REQUEST,
        variant: str | None = None,
    ) -> LetterResult:
        """Generate, persist and cache a letter without reading the cache."""
        variant = variant or self.select_variant(subject_id)
        trigger = LetterTrigger(trigger)

        draft = await self._generate(
            subject_id, lambda: self.generator.generate_letter(subject_id, variant)
        )
        letter = await self._persist(subject_id, variant, trigger, draft)

        self.tasks.submit(
            self.cache.set(
                self.letter_key(subject_id, variant), letter, self.config.letter_cache_ttl_seconds
            ),
            f"cache letter {subject_id} ({variant})",
        )
        logger.info(f"Generated {variant} letter {letter['id']} for {subject_id} ({trigger.value})")
        return letter

    async def generate_triggered_letter(
        self, subject_id: str, trigger: LetterTrigger, context: dict[str, Any]
    ) -> LetterResult | None:
        """Generate an event-driven letter once per trigger window.

        Returns None when a letter for the same subject and trigger was
        started within the window. The marker is left to expire.
        """
        marker = self.triggered_key(subject_id, trigger)
        acquired = await self.cache.set_if_absent(
            marker,
            {"started_at": self._now_ms()},
            self.config.triggered_idempotency_ttl_seconds,
            on_error=True,
        )
        if not acquired:
            logger.debug(f"Triggered letter already in progress for {subject_id} ({trigger.value})")
            return None

        draft = await self._generate(
            subject_id,
            lambda: self.generator.generate_triggered_letter(subject_id, trigger, context),
        )
        letter = await self._persist(subject_id, draft.get("variant", trigger.value), trigger, draft)
        logger.info(f"Generated {trigger.value} letter {letter['id']} for {subject_id}")
        return letter

    async def _generate(
        self, subject_id: str, produce: Callable[[], Awaitable[LetterDraft]]
    ) -> LetterDraft:
        try:
            return await produce()
        except (*USER_DATA_ERRORS, GenerationError):
            raise
        except Exception as e:
            logger.error(f"Unexpected generation error for {subject_id}: {e}")
            raise GenerationError(
                f"Letter generation failed: {e}", {"subject_id": subject_id}
            ) from e

    async def _persist(
        self, subject_id: str, variant: str, trigger: LetterTrigger, draft: LetterDraft
    ) -> LetterResult:
        simulation = draft.get("simulation")
        metadata: dict[str, Any] = {
            "usage": draft.get("usage") or {},
            "user_age": draft.get("user_age"),
            "future_age": draft.get("future_age"),
        }
        if simulation:
            metadata["current_savings_rate"] = simulation["current_path"]["savings_rate"]
            metadata["optimized_savings_rate"] = simulation["optimized_path"]["savings_rate"]
            metadata["difference_20yr"] = simulation["difference_20yr"]

        try:
            letter_id = await self.repository.save_letter(
                subject_id, variant, trigger.value, draft["content"], **metadata
            )
        except Exception as e:
            logger.error(f"Failed to save letter for {subject_id}: {e}")
            raise StorageError(f"Failed to save letter: {e}") from e

        return {
            "id": letter_id,
            "subject_id": subject_id,
            "variant": variant,
            "trigger": trigger.value,
            "content": draft["content"],
            "generated_at": datetime.now(UTC).isoformat(),
            "simulation": simulation,
            "user_age": draft.get("user_age", 0),
            "future_age": draft.get("future_age", self.config.future_age),
            "usage": draft.get("usage") or {},
        }

    async def invalidate_cache(self, subject_id: str) -> None:
        """Drop the cached simulation and every cached letter variant."""
        keys = [self.simulation_key(subject_id)] + [
            self.letter_key(subject_id, variant) for variant in self.config.letter_variants
        ]
        results = await asyncio.gather(
            *(self.cache.delete(key) for key in keys), return_exceptions=True
        )
        failed = [key for key, result in zip(keys, results, strict=True) if result is not True]
        if failed:
            logger.warning(f"Cache invalidation incomplete for {subject_id}: {failed}")
        else:
            logger.debug(f"Invalidated cache for subject {subject_id}")

    async def get_timeline(self, subject_id: str, years: int) -> TimelinePoint:
        """Both paths at the horizon covering years, from the cached simulation."""
        simulation = await self.get_simulation(subject_id)
        horizon = horizon_for(years)
        current = simulation["current_path"]["projected_net_worth"][horizon]
        optimized = simulation["optimized_path"]["projected_net_worth"][horizon]
        return {
            "subject_id": subject_id,
            "years": years,
            "horizon": horizon,
            "current_path": current,
            "optimized_path": optimized,
            "difference": round(optimized - current, 2),
        }

    async def _storage(self, action: str, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except Exception as e:
            logger.error(f"Failed to {action}: {e}")
            raise StorageError(f"Failed to {action}: {e}") from e

    async def get_letter_history(
        self, subject_id: str, limit: int = 10, offset: int = 0
    ) -> list[LetterRecord]:
        limit = max(1, min(limit, MAX_HISTORY_LIMIT))
        offset = max(0, min(offset, MAX_HISTORY_OFFSET))
        return await self._storage(
            f"load letter history for {subject_id}",
            self.repository.get_history(subject_id, limit, offset),
        )

    async def get_letter_by_id(self, subject_id: str, letter_id: str) -> LetterRecord | None:
        return await self._storage(
            f"load letter {letter_id}", self.repository.get_letter(subject_id, letter_id)
        )

    async def mark_letter_read(
        self, subject_id: str, letter_id: str, read_duration_ms: int | None = None
    ) -> bool:
        marked = await self._storage(
            f"mark letter {letter_id} read",
            self.repository.mark_read(subject_id, letter_id, read_duration_ms),
        )
        if marked:
            logger.debug(f"Letter marked as read: {letter_id} ({read_duration_ms} ms)")
        return marked

    async def update_engagement(
        self, subject_id: str, letter_id: str, read_duration_ms: int | None = None
    ) -> Engagement | None:
        """Record a read with its duration; None when the letter is not the subject's."""
        if not await self.mark_letter_read(subject_id, letter_id, read_duration_ms):
            return None
        letter = await self.get_letter_by_id(subject_id, letter_id)
        if letter is None:
            return None
        return {
            "letter_id": letter_id,
            "read_at": letter.get("read_at"),
            "read_duration_ms": letter.get("read_duration_ms"),
        }

    async def get_statistics(self, subject_id: str) -> LetterStats:
        """Engagement statistics; ``this_month`` counts from the first of the UTC month."""
        now = datetime.fromtimestamp(self.clock(), UTC)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return await self._storage(
            f"load letter statistics for {subject_id}",
            self.repository.letter_stats(subject_id, month_start),
        )

    async def get_preferences(self, subject_id: str) -> Preferences:
        """Letter preferences; subjects without a stored profile get the defaults."""
        preferences = await self._storage(
            f"load preferences for {subject_id}", self.repository.get_preferences(subject_id)
        )
        return preferences or {"weekly_letters_enabled": True, "updated_at": None}

    async def update_preferences(
        self, subject_id: str, weekly_letters_enabled: bool | None = None
    ) -> Preferences:
        preferences = await self._storage(
            f"update preferences for {subject_id}",
            self.repository.update_preferences(subject_id, weekly_letters_enabled),
        )
        if preferences is None:
            raise SubjectNotFoundError(subject_id)
        logger.info(
            f"Updated preferences for {subject_id}: "
            f"weekly_letters_enabled={preferences['weekly_letters_enabled']}"
        )
        return preferences

    async def health_check(self) -> HealthStatus:
        """Check health of storage and cache."""
        storage_ok, cache_ok = await asyncio.gather(
            self._check_storage_health(), self.cache.health_check()
        )
        return {"storage": storage_ok, "cache": cache_ok}

    async def _check_storage_health(self) -> bool:
        try:
            return await self.repository.health_check()
        except Exception as e:  # noqa: BLE001
            logger.error(f"Storage health check failed: {e}")
            return False
