"""
Worker Pool — Pulls jobs from the category queues and drives delivery.

Runs as async tasks inside the application process. For horizontal scaling,
deploy more processes against the same Redis queue; take() is atomic, so each
job is handed to exactly one worker.

Topology:
  ┌────────────┐      ┌──────────────────┐ take  ┌─────────────────────┐
  │ Enqueuer   │─add─▶│ category queue   │──────▶│ CategoryWorkerPool  │
  └────────────┘      │ (rate-limited)   │       │ (N concurrent jobs) │
                      └──────────────────┘       └──────────┬──────────┘
                              ▲                             │
                              │ fail(retryable)             │ handler(job)
                              │ → retry_pending             ▼
                              │                    ┌─────────────────┐
                              └────────────────────│ DeliveryClient  │
                                                   └─────────────────┘
  success → ack → completed
  permanent / invalid payload / retries spent → exhausted
  worker gone past the visibility deadline → reclaimed by the next take
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from core.errors import (
    InvalidPayload, JobStateError, PermanentDeliveryError, TransientDeliveryError,
)
from job_queue.message_queue import JobQueue
from models.schemas import Job, JobCategory, JobState

logger = structlog.get_logger()

Handler = Callable[[Job], Awaitable[None]]


class CategoryWorkerPool:
    """
    Consumes one category's queue with bounded concurrency.

    Usage:
        pool = CategoryWorkerPool(JobCategory.LESSON, queue, handlers.deliver_lesson)
        await pool.start_background()
        await pool.stop()
    """

    def __init__(
        self,
        category: JobCategory,
        queue: JobQueue,
        handler: Handler,
        concurrency: int = 5,
        poll_interval: float = 0.5,
    ):
        self.category = category
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._semaphore = asyncio.Semaphore(concurrency)
        self._task: Optional[asyncio.Task] = None
        self._in_flight: set[asyncio.Task] = set()
        self._running = False
        self.processed = 0
        self.failed = 0

    async def start_background(self) -> asyncio.Task:
        """Start the take loop in a background task. Returns the task handle."""
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("worker_pool_started",
                    category=self.category.value,
                    concurrency=self.concurrency)
        return self._task

    async def stop(self):
        """Stop taking new jobs and let in-flight deliveries finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("worker_pool_stopped", category=self.category.value)

    async def _run(self):
        while self._running:
            await self._semaphore.acquire()
            try:
                jobs = await self.queue.take(self.category, 1)
            except asyncio.CancelledError:
                self._semaphore.release()
                raise
            except Exception as e:
                self._semaphore.release()
                logger.error("worker_take_error", category=self.category.value, error=str(e))
                await asyncio.sleep(self.poll_interval)
                continue

            if not jobs:
                # idle or rate-limited
                self._semaphore.release()
                await asyncio.sleep(self.poll_interval)
                continue

            task = asyncio.create_task(self._process(jobs[0]))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _process(self, job: Job):
        try:
            await self.run_job(job)
        finally:
            self._semaphore.release()

    async def run_job(self, job: Job) -> JobState:
        """Run the handler for one in-flight job and settle it on the queue."""
        logger.info("processing_job",
                    job_id=job.id,
                    category=job.category.value,
                    fingerprint=job.fingerprint,
                    attempt=job.attempt_count)
        try:
            settled = await self._execute(job)
        except JobStateError as e:
            # Reclaimed after its visibility deadline; the queue owns it again
            logger.warning("job_settle_rejected", job_id=job.id, error=str(e))
            current = await self.queue.get(job.id)
            return current.state if current else job.state
        return settled.state

    async def _execute(self, job: Job) -> Job:
        try:
            await self.handler(job)
        except (PermanentDeliveryError, InvalidPayload) as e:
            settled = await self._fail(job, e, retryable=False)
        except (TransientDeliveryError, asyncio.TimeoutError) as e:
            settled = await self._fail(job, e, retryable=True)
        except Exception as e:
            logger.error("job_processing_error",
                         job_id=job.id,
                         error=str(e),
                         exc_info=True)
            settled = await self._fail(job, e, retryable=True)
        else:
            settled = await self.queue.ack(job.id)
            self.processed += 1
        return settled

    async def _fail(self, job: Job, error: Exception, retryable: bool) -> Job:
        self.failed += 1
        logger.warning("job_dispatch_failed",
                       job_id=job.id,
                       category=job.category.value,
                       attempt=job.attempt_count,
                       retryable=retryable,
                       error=str(error))
        return await self.queue.fail(job.id, f"{type(error).__name__}: {error}", retryable=retryable)

    async def process_available(self, limit: int = None) -> int:
        """Take and run due jobs one at a time until none are admitted. Returns the count run."""
        count = 0
        while limit is None or count < limit:
            jobs = await self.queue.take(self.category, 1)
            if not jobs:
                break
            await self.run_job(jobs[0])
            count += 1
        return count

    def stats(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "running": self._running,
            "in_flight": len(self._in_flight),
            "processed": self.processed,
            "failed": self.failed,
        }


class WorkerPool:
    """One CategoryWorkerPool per enabled category, started and stopped together."""

    def __init__(
        self,
        queue: JobQueue,
        handlers,  # type: job_queue.handlers.DeliveryHandlers
        categories: Iterable[JobCategory | str] = None,
        concurrency: int = 5,
        poll_interval: float = 0.5,
    ):
        cats = [JobCategory(c) for c in (categories or list(JobCategory))]
        self.pools: dict[JobCategory, CategoryWorkerPool] = {
            cat: CategoryWorkerPool(
                cat, queue, handlers.for_category(cat),
                concurrency=concurrency, poll_interval=poll_interval,
            )
            for cat in cats
        }

    async def start(self):
        for pool in self.pools.values():
            await pool.start_background()

    async def stop(self):
        await asyncio.gather(*(pool.stop() for pool in self.pools.values()))

    def stats(self) -> dict[str, Any]:
        return {cat.value: pool.stats() for cat, pool in self.pools.items()}
