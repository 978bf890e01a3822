"""Tests for the worker pool: outcome classification and background draining."""
import asyncio

import pytest

from core.errors import InvalidPayload, PermanentDeliveryError, TransientDeliveryError
from job_queue.consumer import CategoryWorkerPool, WorkerPool
from models.schemas import JobCategory, JobState


class Recorder:
    """Handler double that raises queued errors, then succeeds."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = []

    async def __call__(self, job):
        self.calls.append(job.id)
        if self.errors:
            raise self.errors.pop(0)


async def _one_text_job(enqueuer):
    result = await enqueuer.enqueue_text("+15550001", "Hello")
    return result.job_ref


class TestRunJob:
    @pytest.mark.asyncio
    async def test_success_acks(self, queue, enqueuer):
        job_id = await _one_text_job(enqueuer)
        pool = CategoryWorkerPool(JobCategory.TEXT, queue, Recorder())
        assert await pool.process_available() == 1
        assert (await queue.get(job_id)).state == JobState.COMPLETED
        assert pool.processed == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        TransientDeliveryError("HTTP 503", status_code=503),
        asyncio.TimeoutError(),
        RuntimeError("unexpected"),
    ])
    async def test_retryable_outcomes(self, queue, enqueuer, error):
        job_id = await _one_text_job(enqueuer)
        pool = CategoryWorkerPool(JobCategory.TEXT, queue, Recorder(error))
        await pool.process_available()
        job = await queue.get(job_id)
        assert job.state == JobState.RETRY_PENDING
        assert type(error).__name__ in job.last_error

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        PermanentDeliveryError("HTTP 400", status_code=400),
        InvalidPayload("missing lesson", category="lesson"),
    ])
    async def test_permanent_outcomes(self, queue, enqueuer, error):
        job_id = await _one_text_job(enqueuer)
        pool = CategoryWorkerPool(JobCategory.TEXT, queue, Recorder(error))
        await pool.process_available()
        job = await queue.get(job_id)
        assert job.state == JobState.EXHAUSTED
        assert job.attempt_count == 1
        assert pool.failed == 1

    @pytest.mark.asyncio
    async def test_retry_then_success(self, queue, enqueuer, clock):
        job_id = await _one_text_job(enqueuer)
        handler = Recorder(TransientDeliveryError("HTTP 429", status_code=429))
        pool = CategoryWorkerPool(JobCategory.TEXT, queue, handler)

        await pool.process_available()
        assert await pool.process_available() == 0     # backing off
        clock.advance(60)
        await pool.process_available()

        job = await queue.get(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempt_count == 2
        assert handler.calls == [job_id, job_id]

    @pytest.mark.asyncio
    async def test_process_available_respects_rate_limit(self, queue, enqueuer):
        for n in range(15):
            await enqueuer.enqueue_text("+15550001", f"message number {n}")
        pool = CategoryWorkerPool(JobCategory.TEXT, queue, Recorder())
        assert await pool.process_available() == 12


class TestBackgroundPool:
    @pytest.mark.asyncio
    async def test_drains_queue_with_bounded_concurrency(self, queue, enqueuer):
        active = 0
        peak = 0

        async def slow_handler(job):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        for n in range(8):
            await enqueuer.enqueue_text("+15550001", f"message number {n}")

        pool = CategoryWorkerPool(JobCategory.TEXT, queue, slow_handler,
                                  concurrency=3, poll_interval=0.01)
        await pool.start_background()
        for _ in range(200):
            if (await queue.stats())["text"]["completed"] == 8:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert (await queue.stats())["text"]["completed"] == 8
        assert 1 < peak <= 3

    @pytest.mark.asyncio
    async def test_worker_pool_builds_one_pool_per_category(self, queue, handlers):
        pool = WorkerPool(queue, handlers, categories=["lesson", "text"], concurrency=2)
        assert set(pool.pools) == {JobCategory.LESSON, JobCategory.TEXT}
        await pool.start()
        stats = pool.stats()
        assert stats["lesson"]["running"] is True
        await pool.stop()
        assert pool.stats()["text"]["running"] is False


class TestReclaimedJobs:
    @pytest.mark.asyncio
    async def test_result_past_deadline_is_discarded_and_job_rerun(self, queue, enqueuer, clock):
        job_id = await _one_text_job(enqueuer)
        calls = []

        async def slow_then_fast(job):
            calls.append(job.attempt_count)
            if len(calls) == 1:
                clock.advance(hours=1)

        pool = CategoryWorkerPool(JobCategory.TEXT, queue, slow_then_fast)
        assert await pool.process_available() == 2
        assert calls == [1, 2]
        job = await queue.get(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempt_count == 2
        assert pool.processed == 1
