"""Unit tests for the weekly and retry jobs."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from future_self.config import Settings
from future_self.exceptions import GenerationError
from future_self.jobs import RETRY_JOB, WEEKLY_JOB, JobState, LetterJobs, compute_lock_ttl_ms
from future_self.retry_queue import RetryQueue

MIN_MS = 5 * 60 * 1000
MAX_MS = 3 * 60 * 60 * 1000


def lock_ttl(count: int) -> int:
    return compute_lock_ttl_ms(count, 5, 30.0, 1.5, MIN_MS, MAX_MS)


@pytest.fixture
def job_service() -> AsyncMock:
    service = AsyncMock()
    service.get_letter.return_value = {"id": "letter-1"}
    service.generate_letter.return_value = {"id": "letter-2"}
    return service


@pytest.fixture
def tracer() -> MagicMock:
    tracer = MagicMock()
    tracer.flush = AsyncMock()
    return tracer


@pytest.fixture
def jobs(job_service, repository, cache, tracer, config) -> LetterJobs:
    return LetterJobs(job_service, repository, cache, RetryQueue(cache, config), tracer, config)


class TestLockTtl:
    def test_small_batches_use_minimum(self):
        assert lock_ttl(0) == MIN_MS
        assert lock_ttl(5) == MIN_MS

    def test_grows_with_batches(self):
        # 20 batches * 30s * 1.5
        assert lock_ttl(100) == 20 * 30 * 1000 * 1.5

    def test_monotone_and_clamped(self):
        values = [lock_ttl(n) for n in range(0, 2000, 7)]
        assert values == sorted(values)
        assert min(values) >= MIN_MS
        assert max(values) == MAX_MS


class TestWeeklyJob:
    @pytest.mark.asyncio
    async def test_processes_every_subject_and_releases_lock(
        self, jobs, job_service, repository, cache, tracer
    ):
        repository.eligible_subjects.return_value = [f"user-{i}" for i in range(12)]

        run = await jobs.generate_weekly_letters()

        assert run.state is JobState.COMPLETED
        assert (run.total, run.succeeded, run.failed) == (12, 12, 0)
        assert job_service.get_letter.await_count == 12
        assert await cache.backend.get(jobs.lock_key(WEEKLY_JOB)) is None
        tracer.end_trace.assert_called_once()
        tracer.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_when_lock_held(self, jobs, job_service, repository, cache):
        repository.eligible_subjects.return_value = ["user-1"]
        await cache.acquire_lock(jobs.lock_key(WEEKLY_JOB), 60_000, "other-instance")

        run = await jobs.generate_weekly_letters()

        assert run.state is JobState.SKIPPED
        job_service.get_letter.assert_not_awaited()
        assert await cache.backend.get(jobs.lock_key(WEEKLY_JOB)) == "other-instance"

    @pytest.mark.asyncio
    async def test_failures_are_isolated_and_queued(self, jobs, job_service, repository):
        repository.eligible_subjects.return_value = ["user-1", "user-2", "user-3"]

        async def get_letter(subject_id, trigger):
            if subject_id == "user-2":
                raise GenerationError("llm down")
            return {"id": f"letter-{subject_id}"}

        job_service.get_letter.side_effect = get_letter

        run = await jobs.generate_weekly_letters()

        assert run.state is JobState.COMPLETED
        assert (run.succeeded, run.failed) == (2, 1)
        entry = await jobs.retry_queue.get("user-2")
        assert entry["attempt_count"] == 1
        assert entry["last_error"] == "llm down"

    @pytest.mark.asyncio
    async def test_success_clears_retry_entry(self, jobs, repository):
        repository.eligible_subjects.return_value = ["user-1"]
        await jobs.retry_queue.record_failure("user-1", "earlier failure")

        await jobs.generate_weekly_letters()

        assert await jobs.retry_queue.get("user-1") is None

    @pytest.mark.asyncio
    async def test_batches_respect_concurrency(self, job_service, repository, cache, tracer):
        config = Settings(batch_concurrency=2)
        jobs = LetterJobs(job_service, repository, cache, RetryQueue(cache, config), tracer, config)
        repository.eligible_subjects.return_value = [f"user-{i}" for i in range(5)]
        in_flight = 0
        peak = 0

        async def get_letter(subject_id, trigger):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return {"id": subject_id}

        job_service.get_letter.side_effect = get_letter

        await jobs.generate_weekly_letters()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_failed_and_cleans_up(
        self, jobs, repository, cache, tracer
    ):
        repository.eligible_subjects.return_value = ["user-1"]
        jobs.retry_queue = AsyncMock()
        jobs.retry_queue.remove.side_effect = RuntimeError("queue broken")

        run = await jobs.generate_weekly_letters()

        assert run.state is JobState.FAILED
        assert run.error == "queue broken"
        assert await cache.backend.get(jobs.lock_key(WEEKLY_JOB)) is None
        tracer.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lock_is_extended_while_running(self, job_service, repository, tracer):
        config = Settings(min_lock_ttl_seconds=1, max_lock_ttl_seconds=1, lock_extend_divisor=10)
        cache = AsyncMock()
        cache.acquire_lock.return_value = True
        cache.extend_lock.return_value = True
        jobs = LetterJobs(job_service, repository, cache, AsyncMock(), tracer, config)
        repository.eligible_subjects.return_value = ["user-1"]

        async def slow_letter(subject_id, trigger):
            await asyncio.sleep(0.35)
            return {"id": "letter-1"}

        job_service.get_letter.side_effect = slow_letter

        await jobs.generate_weekly_letters()

        token = cache.acquire_lock.await_args.args[2]
        assert cache.extend_lock.await_count >= 2
        cache.extend_lock.assert_awaited_with(jobs.lock_key(WEEKLY_JOB), token, 1000)
        cache.release_lock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_subject_lookup_failure(self, jobs, repository, job_service):
        repository.eligible_subjects.side_effect = OSError("db down")

        run = await jobs.generate_weekly_letters()

        assert run.state is JobState.FAILED
        job_service.get_letter.assert_not_awaited()


class TestRetryJob:
    @pytest.mark.asyncio
    async def test_retries_due_entries_directly(self, jobs, job_service, cache):
        await jobs.retry_queue.record_failure("user-1", "boom")
        entry = await jobs.retry_queue.get("user-1")
        entry["next_retry"] = 0
        await cache.set(jobs.retry_queue.key("user-1"), entry)

        run = await jobs.retry_failed_letters()

        assert run.state is JobState.COMPLETED
        assert run.succeeded == 1
        job_service.generate_letter.assert_awaited_once()
        job_service.get_letter.assert_not_awaited()
        assert await jobs.retry_queue.get("user-1") is None
        assert await cache.backend.get(jobs.lock_key(RETRY_JOB)) is None

    @pytest.mark.asyncio
    async def test_failed_retry_bumps_attempt(self, jobs, job_service, cache):
        job_service.generate_letter.side_effect = GenerationError("still down")
        await jobs.retry_queue.record_failure("user-1", "boom")
        entry = await jobs.retry_queue.get("user-1")
        entry["next_retry"] = 0
        await cache.set(jobs.retry_queue.key("user-1"), entry)

        await jobs.retry_failed_letters()

        entry = await jobs.retry_queue.get("user-1")
        assert entry["attempt_count"] == 2
        assert entry["last_error"] == "still down"

    @pytest.mark.asyncio
    async def test_entries_not_due_are_left(self, jobs, job_service):
        await jobs.retry_queue.record_failure("user-1", "boom")

        run = await jobs.retry_failed_letters()

        assert run.total == 0
        job_service.generate_letter.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_when_lock_held(self, jobs, cache):
        await cache.acquire_lock(jobs.lock_key(RETRY_JOB), 60_000, "other-instance")

        run = await jobs.retry_failed_letters()

        assert run.state is JobState.SKIPPED


class TestTriggersAndStatus:
    @pytest.mark.asyncio
    async def test_manual_run_reports_outcome(self, jobs, repository):
        repository.eligible_subjects.return_value = ["user-1"]

        outcome = await jobs.trigger_manual_run()

        assert outcome == {"success": True, "message": "Manual run completed: 1 success, 0 failed"}

    @pytest.mark.asyncio
    async def test_manual_run_reports_failure_without_raising(self, jobs, repository):
        repository.eligible_subjects.side_effect = OSError("db down")

        outcome = await jobs.trigger_manual_run()

        assert outcome == {"success": False, "message": "db down"}

    @pytest.mark.asyncio
    async def test_retry_run_never_raises(self, jobs):
        jobs.retry_failed_letters = AsyncMock(side_effect=RuntimeError("boom"))

        assert await jobs.trigger_retry_run() == {"success": False, "message": "boom"}

    @pytest.mark.asyncio
    async def test_status_includes_last_run_and_queue(self, jobs, repository):
        await jobs.generate_weekly_letters()
        await jobs.retry_queue.record_failure("user-9", "boom")

        status = jobs.job_status()
        queue = await jobs.retry_queue_status()

        assert status["timezone"] == "Africa/Lagos"
        assert status["jobs"][WEEKLY_JOB]["schedule"] == "0 9 * * 1"
        assert status["jobs"][WEEKLY_JOB]["last_run"]["state"] == "completed"
        assert status["jobs"][RETRY_JOB]["last_run"] is None
        assert queue["queue_size"] == 1
