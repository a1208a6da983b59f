"""Weekly letter batch and retry jobs guarded by distributed locks."""

import asyncio
import contextlib
import math
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from loguru import logger

from .config import Settings, get_settings
from .retry_queue import RetryQueue
from .service import FutureSelfService
from .storage.cache import CacheClient
from .storage.protocols import SubjectRepository
from .telemetry import Tracer
from .types import JobOutcome, LetterTrigger

WEEKLY_JOB = "weekly-letter-generation"
RETRY_JOB = "retry-failed-letters"


class JobState(str, Enum):
    """Lifecycle of a single job run."""

    IDLE = "idle"
    LOCK_ACQUIRE = "lock_acquire"
    SKIPPED = "skipped"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobRun:
    name: str
    state: JobState = JobState.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    lock_ttl_ms: int = 0
    error: str | None = None

    def finish(self, state: JobState, error: str | None = None) -> None:
        self.state = state
        self.error = error
        self.finished_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


def compute_lock_ttl_ms(
    subject_count: int,
    concurrency: int,
    seconds_per_subject: float,
    buffer_multiplier: float,
    min_ttl_ms: int,
    max_ttl_ms: int,
) -> int:
    """Lock TTL sized to the expected batch duration, clamped to [min, max].

    Batches run sequentially, so the estimate grows with the number of
    batches rather than the number of subjects.
    """
    batches = math.ceil(subject_count / concurrency)
    estimated_ms = batches * seconds_per_subject * 1000 * buffer_multiplier
    return int(min(max(estimated_ms, min_ttl_ms), max_ttl_ms))


class LetterJobs:
    """Weekly generation and hourly retry jobs.

    Both jobs run at most once at a time across instances: each takes a
    distributed lock under a fresh token and skips the run when another
    instance holds it. Per-subject failures are isolated and fed into the
    retry queue; nothing raised while processing escapes a job.
    """

    def __init__(
        self,
        service: FutureSelfService,
        subjects: SubjectRepository,
        cache: CacheClient,
        retry_queue: RetryQueue,
        tracer: Tracer,
        config: Settings | None = None,
        token_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.service = service
        self.subjects = subjects
        self.cache = cache
        self.retry_queue = retry_queue
        self.tracer = tracer
        self.config = config or get_settings()
        self.token_factory = token_factory
        self.last_runs: dict[str, JobRun] = {}

    def lock_key(self, job: str) -> str:
        return f"{self.config.cache_namespace}:cron:{job}"

    def lock_ttl_ms(self, subject_count: int) -> int:
        return compute_lock_ttl_ms(
            subject_count,
            self.config.batch_concurrency,
            self.config.estimated_seconds_per_subject,
            self.config.lock_ttl_buffer_multiplier,
            self.config.min_lock_ttl_ms,
            self.config.max_lock_ttl_ms,
        )

    async def generate_weekly_letters(self) -> JobRun:
        """Generate this week's letter for every eligible subject."""
        run = JobRun(WEEKLY_JOB)
        self.last_runs[WEEKLY_JOB] = run

        try:
            subject_ids = await self.subjects.eligible_subjects()
        except Exception as e:
            logger.error(f"Could not load eligible subjects: {e}")
            run.finish(JobState.FAILED, str(e))
            return run

        run.total = len(subject_ids)
        run.lock_ttl_ms = self.lock_ttl_ms(run.total)
        logger.info(
            f"Calculated lock TTL: {run.lock_ttl_ms // 60000} minutes for {run.total} subjects"
        )

        key = self.lock_key(WEEKLY_JOB)
        token = self.token_factory()
        run.state = JobState.LOCK_ACQUIRE
        if not await self.cache.acquire_lock(key, run.lock_ttl_ms, token):
            logger.info("Weekly letter job skipped: another instance is already processing")
            run.finish(JobState.SKIPPED)
            return run

        run.state = JobState.RUNNING
        logger.info(f"Starting weekly letter generation for {run.total} subjects")
        trace = self.tracer.start_trace(
            "weekly_letter_batch", job=WEEKLY_JOB, concurrency=self.config.batch_concurrency
        )
        extender = asyncio.create_task(self._keep_lock(key, token, run.lock_ttl_ms))

        try:
            concurrency = self.config.batch_concurrency
            for start in range(0, len(subject_ids), concurrency):
                batch = subject_ids[start : start + concurrency]
                results = await asyncio.gather(*(self._process_subject(s) for s in batch))
                succeeded = sum(results)
                run.succeeded += succeeded
                run.failed += len(results) - succeeded
                logger.debug(f"Batch at offset {start}: {succeeded}/{len(batch)} succeeded")

            run.finish(JobState.COMPLETED)
            self.tracer.end_trace(
                trace, True, total=run.total, succeeded=run.succeeded, failed=run.failed
            )
            logger.info(
                f"Completed weekly letter generation: {run.succeeded} success, {run.failed} errors"
            )
        except Exception as e:
            run.finish(JobState.FAILED, str(e))
            self.tracer.end_trace(trace, False, error=str(e))
            logger.error(f"Weekly letter generation job failed: {e}")
        finally:
            extender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await extender
            await self.cache.release_lock(key, token)
            await self.tracer.flush()

        return run

    async def _process_subject(self, subject_id: str) -> bool:
        try:
            await self.service.get_letter(subject_id, trigger=LetterTrigger.WEEKLY_SCHEDULED)
        except Exception as e:
            logger.warning(f"Failed to generate letter for subject {subject_id}: {e}")
            await self.retry_queue.record_failure(subject_id, str(e))
            return False

        await self.retry_queue.remove(subject_id)
        return True

    async def _keep_lock(self, key: str, token: str, ttl_ms: int) -> None:
        interval = ttl_ms / 1000 / self.config.lock_extend_divisor
        while True:
            await asyncio.sleep(interval)
            if await self.cache.extend_lock(key, token, ttl_ms):
                logger.debug(f"Lock extended: {key}")
            else:
                logger.warning(f"Lock {key} could not be extended")

    async def retry_failed_letters(self) -> JobRun:
        """Retry due entries of the retry queue one subject at a time."""
        run = JobRun(RETRY_JOB, lock_ttl_ms=self.config.retry_lock_ttl_seconds * 1000)
        self.last_runs[RETRY_JOB] = run

        key = self.lock_key(RETRY_JOB)
        token = self.token_factory()
        run.state = JobState.LOCK_ACQUIRE
        if not await self.cache.acquire_lock(key, run.lock_ttl_ms, token):
            logger.debug("Retry job skipped: another instance is already processing")
            run.finish(JobState.SKIPPED)
            return run

        run.state = JobState.RUNNING
        try:
            entries = await self.retry_queue.due()
            run.total = len(entries)
            if not entries:
                logger.debug("No letters ready for retry")

            for entry in entries:
                subject_id = entry["subject_id"]
                attempt = entry["attempt_count"] + 1
                try:
                    await self.service.generate_letter(subject_id, LetterTrigger.WEEKLY_SCHEDULED)
                except Exception as e:
                    run.failed += 1
                    logger.warning(
                        f"Retry {attempt}/{self.config.retry_max_attempts} failed "
                        f"for subject {subject_id}: {e}"
                    )
                    await self.retry_queue.record_failure(subject_id, str(e))
                    continue

                await self.retry_queue.remove(subject_id)
                run.succeeded += 1
                logger.info(f"Retry successful for subject {subject_id} (attempt {attempt})")

            run.finish(JobState.COMPLETED)
            if entries:
                logger.info(f"Retry job completed: {run.succeeded} success, {run.failed} failed")
        except Exception as e:
            run.finish(JobState.FAILED, str(e))
            logger.error(f"Retry job failed: {e}")
        finally:
            await self.cache.release_lock(key, token)

        return run

    async def trigger_manual_run(self) -> JobOutcome:
        """Run the weekly job now."""
        return await self._trigger(self.generate_weekly_letters, "Manual run")

    async def trigger_retry_run(self) -> JobOutcome:
        """Run the retry job now."""
        return await self._trigger(self.retry_failed_letters, "Retry run")

    async def _trigger(self, job: Callable[[], Any], label: str) -> JobOutcome:
        try:
            run: JobRun = await job()
        except Exception as e:  # noqa: BLE001
            return {"success": False, "message": str(e)}

        match run.state:
            case JobState.SKIPPED:
                return {
                    "success": True,
                    "message": f"{label} skipped: another instance is already processing",
                }
            case JobState.FAILED:
                return {"success": False, "message": run.error or "Unknown error"}
            case _:
                return {
                    "success": True,
                    "message": f"{label} completed: {run.succeeded} success, {run.failed} failed",
                }

    def job_status(self) -> dict[str, Any]:
        """Schedules, batch configuration and the last run of each job."""
        weekly = self.last_runs.get(WEEKLY_JOB)
        retry = self.last_runs.get(RETRY_JOB)
        return {
            "timezone": self.config.scheduler_timezone,
            "jobs": {
                WEEKLY_JOB: {
                    "schedule": self.config.weekly_letter_cron,
                    "description": "Generates Future Self letters for subscribed subjects",
                    "batch_config": {
                        "concurrency": self.config.batch_concurrency,
                        "estimated_seconds_per_subject": self.config.estimated_seconds_per_subject,
                        "lock_ttl_buffer_multiplier": self.config.lock_ttl_buffer_multiplier,
                        "min_lock_ttl_ms": self.config.min_lock_ttl_ms,
                        "max_lock_ttl_ms": self.config.max_lock_ttl_ms,
                    },
                    "last_run": weekly.to_dict() if weekly else None,
                },
                RETRY_JOB: {
                    "schedule": self.config.retry_cron,
                    "description": "Retries failed letter generations with backoff",
                    "max_attempts": self.config.retry_max_attempts,
                    "backoff_seconds": self.config.retry_backoff_seconds,
                    "last_run": retry.to_dict() if retry else None,
                },
            },
        }

    async def retry_queue_status(self) -> dict[str, Any]:
        return await self.retry_queue.status()
