"""Job queue, deduplicating enqueuer and worker pool for outbound deliveries."""
from job_queue.consumer import CategoryWorkerPool, WorkerPool
from job_queue.enqueuer import DeduplicatingEnqueuer
from job_queue.fingerprint import fingerprint_for
from job_queue.handlers import DeliveryHandlers
from job_queue.message_queue import (
    InMemoryJobQueue,
    JobQueue,
    RedisJobQueue,
    create_job_queue,
    get_job_queue,
    reset_job_queue,
)
from job_queue.rate_limiter import FixedWindowRateLimiter

__all__ = [
    "JobQueue", "InMemoryJobQueue", "RedisJobQueue",
    "create_job_queue", "get_job_queue", "reset_job_queue",
    "FixedWindowRateLimiter",
    "DeduplicatingEnqueuer", "fingerprint_for",
    "DeliveryHandlers",
    "CategoryWorkerPool", "WorkerPool",
]
