"""
Job Queue — one logical queue per delivery category, with in-memory and Redis backends.

Job lifecycle:
  queued ──take──▶ in_flight ──ack──▶ completed
                      │
                      └──fail──▶ retry_pending ──(scheduled_at reached)──take──▶ in_flight
                      └──fail──▶ exhausted          (non-retryable, or retries spent)
                      └──visibility deadline passed──▶ retry_pending (due now) or exhausted

Every transition is one atomic step: an asyncio.Lock in memory, a Lua
script in Redis. A (category, fingerprint) pair is admitted at most once
for as long as a record of it exists, so a retained terminal job still
blocks a resend until the retention sweep prunes it.

A taken job carries a visibility deadline. If it is neither acked nor
failed by then (worker cancelled, process died) the next take for its
category counts the attempt as failed and makes the job due again, or
exhausts it when its retries are spent. An ack or fail that arrives after
the deadline is rejected.

Redis key layout (prefix `lessonrelay` by default):
  {prefix}:jobs                 HASH   job_id → category
  {prefix}:{cat}:fp             HASH   fingerprint → job_id
  {prefix}:{cat}:job:{id}       STRING immutable job JSON (payload, created_at, ...)
  {prefix}:{cat}:meta:{id}      HASH   mutable state (state, attempt_count, scheduled_at, ...)
  {prefix}:{cat}:due            ZSET   queued + retry_pending, scored by scheduled_at
  {prefix}:{cat}:inflight       ZSET   scored by visibility deadline
  {prefix}:{cat}:completed      ZSET   scored by finished_at
  {prefix}:{cat}:exhausted      ZSET   scored by finished_at
  {prefix}:{cat}:rate:{window}  STRING admissions in a one-second window
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

import structlog

from core.errors import JobStateError, RateLimitExceeded
from job_queue.rate_limiter import FixedWindowRateLimiter
from models.schemas import Job, JobCategory, JobState, utcnow

logger = structlog.get_logger()

TERMINAL_STATES = (JobState.COMPLETED, JobState.EXHAUSTED)
STALLED_ERROR = "stalled: visibility deadline passed"


def retry_delay(attempt_count: int, base_delay: int = 60) -> int:
    """Backoff before the next attempt: base, 2×base, 4×base, ..."""
    return base_delay * (2 ** max(attempt_count - 1, 0))


def select_prunable(
    jobs: Iterable[Job],
    older_than: datetime,
    keep_recent: int,
    protected_schedule_ids: set[str] = None,
) -> list[Job]:
    """
    Terminal jobs eligible for deletion: finished before `older_than`, or not
    among the newest `keep_recent` of their outcome. Jobs of a protected
    schedule run are never selected.
    """
    protected = protected_schedule_ids or set()
    victims: list[Job] = []
    for outcome in TERMINAL_STATES:
        finished = sorted(
            (j for j in jobs if j.state == outcome),
            key=lambda j: j.finished_at or j.created_at,
            reverse=True,
        )
        for rank, job in enumerate(finished):
            if job.schedule_id and job.schedule_id in protected:
                continue
            if rank >= keep_recent or (job.finished_at or job.created_at) < older_than:
                victims.append(job)
    return victims


def settle_stalled(job: Job, now: datetime) -> Job:
    """In-flight job past its visibility deadline → retry_pending (due now) or exhausted."""
    job.last_error = STALLED_ERROR
    job.lease_expires_at = None
    if job.attempt_count <= job.max_retries:
        job.state = JobState.RETRY_PENDING
        job.scheduled_at = now
    else:
        job.state = JobState.EXHAUSTED
        job.finished_at = now
    return job


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobQueue(ABC):
    """Abstract job queue interface."""

    rate_limit_per_second: int = 12
    base_delay: int = 60
    history_limit: int = 5

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def add(self, job: Job) -> bool:
        """Insert the job unless its (category, fingerprint) is already known."""
        ...

    @abstractmethod
    async def take(self, category: JobCategory, n: int = 1) -> list[Job]:
        """
        Move up to `n` due jobs to in_flight, incrementing their attempt count.
        Returns fewer (or none) when the category's rate window is spent.
        """
        ...

    @abstractmethod
    async def ack(self, job_id: str) -> Job:
        """in_flight → completed."""
        ...

    @abstractmethod
    async def fail(self, job_id: str, error: str, retryable: bool = True) -> Job:
        """in_flight → retry_pending (with backoff) or exhausted."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def find(self, category: JobCategory, fingerprint: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(
        self, category: JobCategory, state: JobState = None, limit: int = 100,
    ) -> list[Job]:
        """Live jobs oldest-due first; terminal jobs newest-finished first."""
        ...

    @abstractmethod
    async def stats(self) -> dict[str, dict[str, int]]:
        """Per-category job counts by state."""
        ...

    @abstractmethod
    async def prune(
        self,
        category: JobCategory,
        older_than: datetime,
        keep_recent: int = None,
        protected_schedule_ids: set[str] = None,
    ) -> int:
        """Delete prunable terminal jobs; returns the number removed."""
        ...

    async def recent(self, category: JobCategory, state: JobState) -> list[Job]:
        """Operator view: the newest `history_limit` jobs in a terminal state."""
        return await self.list_jobs(category, state, limit=self.history_limit)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryJobQueue(JobQueue):
    """
    Development/test queue. Single-process only.
    The clock is injectable so tests can step through backoff and rate windows.
    """

    def __init__(
        self,
        rate_limit_per_second: int = 12,
        base_delay: int = 60,
        history_limit: int = 5,
        visibility_timeout: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.rate_limit_per_second = rate_limit_per_second
        self.base_delay = base_delay
        self.history_limit = history_limit
        self.visibility_timeout = timedelta(seconds=visibility_timeout)
        self._clock = clock
        self._limiter = FixedWindowRateLimiter(rate_limit_per_second, clock=clock)
        self._jobs: dict[str, Job] = {}
        self._index: dict[tuple[JobCategory, str], str] = {}   # (category, fingerprint) → job_id
        self._lock = asyncio.Lock()

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        pass

    async def add(self, job: Job) -> bool:
        key = (job.category, job.fingerprint)
        async with self._lock:
            if key in self._index:
                return False
            self._jobs[job.id] = job.model_copy(deep=True)
            self._index[key] = job.id
        logger.info("job_enqueued",
                    job_id=job.id,
                    category=job.category.value,
                    fingerprint=job.fingerprint)
        return True

    async def take(self, category: JobCategory, n: int = 1) -> list[Job]:
        async with self._lock:
            now = self._clock()
            self._reclaim_stalled(category, now)
            due = sorted(
                (j for j in self._jobs.values()
                 if j.category == category
                 and j.state in (JobState.QUEUED, JobState.RETRY_PENDING)
                 and j.scheduled_at <= now),
                key=lambda j: (j.scheduled_at, j.created_at),
            )
            if not due:
                return []
            try:
                granted = self._limiter.reserve(category.value, min(n, len(due)), now)
            except RateLimitExceeded as e:
                logger.debug("take_rate_limited",
                             category=category.value,
                             retry_after=e.retry_after)
                return []

            taken = []
            for job in due[:granted]:
                job.state = JobState.IN_FLIGHT
                job.attempt_count += 1
                job.lease_expires_at = now + self.visibility_timeout
                taken.append(job.model_copy(deep=True))
        return taken

    def _reclaim_stalled(self, category: JobCategory, now: datetime) -> None:
        for job in self._jobs.values():
            if (job.category == category and job.state == JobState.IN_FLIGHT
                    and job.lease_expires_at and job.lease_expires_at <= now):
                settle_stalled(job, now)
                logger.warning("job_stalled",
                               job_id=job.id,
                               category=category.value,
                               attempts=job.attempt_count,
                               state=job.state.value)

    def _require_in_flight(self, job_id: str, now: datetime) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobStateError(f"Unknown job {job_id}")
        if job.state != JobState.IN_FLIGHT:
            raise JobStateError(f"Job {job_id} is {job.state.value}, not in_flight")
        if job.lease_expires_at and job.lease_expires_at <= now:
            raise JobStateError(f"Job {job_id} passed its visibility deadline")
        return job

    async def ack(self, job_id: str) -> Job:
        async with self._lock:
            now = self._clock()
            job = self._require_in_flight(job_id, now)
            job.state = JobState.COMPLETED
            job.lease_expires_at = None
            job.finished_at = now
            result = job.model_copy(deep=True)
        logger.info("job_completed",
                    job_id=job_id,
                    category=result.category.value,
                    attempts=result.attempt_count)
        return result

    async def fail(self, job_id: str, error: str, retryable: bool = True) -> Job:
        async with self._lock:
            now = self._clock()
            job = self._require_in_flight(job_id, now)
            job.last_error = error
            job.lease_expires_at = None
            if retryable and job.attempt_count <= job.max_retries:
                job.state = JobState.RETRY_PENDING
                job.scheduled_at = now + timedelta(
                    seconds=retry_delay(job.attempt_count, self.base_delay)
                )
            else:
                job.state = JobState.EXHAUSTED
                job.finished_at = now
            result = job.model_copy(deep=True)

        if result.state == JobState.RETRY_PENDING:
            logger.info("job_scheduled_for_retry",
                        job_id=job_id,
                        attempt=result.attempt_count,
                        scheduled_at=result.scheduled_at.isoformat())
        else:
            logger.warning("job_exhausted",
                           job_id=job_id,
                           category=result.category.value,
                           attempts=result.attempt_count,
                           error=error)
        return result

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def find(self, category: JobCategory, fingerprint: str) -> Optional[Job]:
        job_id = self._index.get((category, fingerprint))
        return await self.get(job_id) if job_id else None

    async def list_jobs(
        self, category: JobCategory, state: JobState = None, limit: int = 100,
    ) -> list[Job]:
        jobs = [j for j in self._jobs.values()
                if j.category == category and (state is None or j.state == state)]
        if state is not None and state.is_terminal:
            jobs.sort(key=lambda j: j.finished_at or j.created_at, reverse=True)
        else:
            jobs.sort(key=lambda j: (j.scheduled_at, j.created_at))
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def stats(self) -> dict[str, dict[str, int]]:
        result = {c.value: {s.value: 0 for s in JobState} for c in JobCategory}
        for job in self._jobs.values():
            result[job.category.value][job.state.value] += 1
        return result

    async def prune(
        self,
        category: JobCategory,
        older_than: datetime,
        keep_recent: int = None,
        protected_schedule_ids: set[str] = None,
    ) -> int:
        keep = self.history_limit if keep_recent is None else keep_recent
        async with self._lock:
            terminal = [j for j in self._jobs.values()
                        if j.category == category and j.state.is_terminal]
            victims = select_prunable(terminal, older_than, keep, protected_schedule_ids)
            for job in victims:
                del self._jobs[job.id]
                self._index.pop((job.category, job.fingerprint), None)
        if victims:
            logger.info("jobs_pruned", category=category.value, count=len(victims))
        return len(victims)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

# KEYS: fp hash, job key, meta key, due zset, jobs hash
# ARGV: fingerprint, job_id, job_json, scheduled_ts, category, created_ts, max_retries, schedule_id
_ADD_SCRIPT = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
  return 0
end
redis.call('SET', KEYS[2], ARGV[3])
redis.call('HSET', KEYS[3],
  'state', 'queued', 'attempt_count', 0, 'max_retries', ARGV[7],
  'scheduled_at', ARGV[4], 'created_at', ARGV[6], 'finished_at', '',
  'last_error', '', 'fingerprint', ARGV[1], 'schedule_id', ARGV[8],
  'lease_expires_at', '')
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[2])
redis.call('HSET', KEYS[5], ARGV[2], ARGV[5])
return 1
"""

# KEYS: due zset, inflight zset, rate key, exhausted zset
# ARGV: now_ts, n, limit, meta key prefix, visibility_timeout, stalled error
_TAKE_SCRIPT = """
local stalled = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(stalled) do
  redis.call('ZREM', KEYS[2], id)
  local meta = ARGV[4] .. id
  local attempts = tonumber(redis.call('HGET', meta, 'attempt_count') or '0')
  local max_retries = tonumber(redis.call('HGET', meta, 'max_retries') or '3')
  redis.call('HSET', meta, 'last_error', ARGV[6], 'lease_expires_at', '')
  if attempts <= max_retries then
    redis.call('HSET', meta, 'state', 'retry_pending', 'scheduled_at', ARGV[1])
    redis.call('ZADD', KEYS[1], ARGV[1], id)
  else
    redis.call('HSET', meta, 'state', 'exhausted', 'finished_at', ARGV[1])
    redis.call('ZADD', KEYS[4], ARGV[1], id)
  end
end
local used = tonumber(redis.call('GET', KEYS[3]) or '0')
local allowed = tonumber(ARGV[3]) - used
if allowed <= 0 then
  return {}
end
local n = math.min(tonumber(ARGV[2]), allowed)
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, n)
if #ids == 0 then
  return {}
end
redis.call('INCRBY', KEYS[3], #ids)
redis.call('EXPIRE', KEYS[3], 5)
local deadline = tonumber(ARGV[1]) + tonumber(ARGV[5])
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('ZADD', KEYS[2], deadline, id)
  local meta = ARGV[4] .. id
  redis.call('HSET', meta, 'state', 'in_flight', 'lease_expires_at', tostring(deadline))
  redis.call('HINCRBY', meta, 'attempt_count', 1)
end
return ids
"""

# KEYS: inflight zset, completed zset, meta key
# ARGV: job_id, now_ts
_ACK_SCRIPT = """
local deadline = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not deadline or tonumber(deadline) <= tonumber(ARGV[2]) then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HSET', KEYS[3], 'state', 'completed', 'finished_at', ARGV[2], 'lease_expires_at', '')
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return 1
"""

# KEYS: inflight zset, due zset, exhausted zset, meta key
# ARGV: job_id, now_ts, error, retryable (1|0), base_delay
_FAIL_SCRIPT = """
local deadline = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not deadline or tonumber(deadline) <= tonumber(ARGV[2]) then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
local attempts = tonumber(redis.call('HGET', KEYS[4], 'attempt_count') or '0')
local max_retries = tonumber(redis.call('HGET', KEYS[4], 'max_retries') or '3')
redis.call('HSET', KEYS[4], 'last_error', ARGV[3], 'lease_expires_at', '')
if ARGV[4] == '1' and attempts <= max_retries then
  local at = tonumber(ARGV[2]) + tonumber(ARGV[5]) * (2 ^ (attempts - 1))
  redis.call('HSET', KEYS[4], 'state', 'retry_pending', 'scheduled_at', tostring(at))
  redis.call('ZADD', KEYS[2], at, ARGV[1])
  return 1
end
redis.call('HSET', KEYS[4], 'state', 'exhausted', 'finished_at', ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
return 2
"""


def _ts(dt: datetime) -> float:
    return dt.timestamp()


def _dt(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisJobQueue(JobQueue):
    """
    Production queue backed by Redis hashes, sets and sorted sets.
    Check-and-insert, take-and-mark and ack/fail each run as a single Lua script.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "lessonrelay",
        rate_limit_per_second: int = 12,
        base_delay: int = 60,
        history_limit: int = 5,
        visibility_timeout: int = 600,
        clock: Callable[[], datetime] = utcnow,
        redis_client=None,
    ):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self.rate_limit_per_second = rate_limit_per_second
        self.base_delay = base_delay
        self.history_limit = history_limit
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._limiter = FixedWindowRateLimiter(rate_limit_per_second, clock=clock)
        self._redis = redis_client
        self._scripts: dict[str, Any] = {}

    # ── keys ──

    def _key(self, category: JobCategory, *parts: str) -> str:
        return ":".join((self._prefix, category.value) + parts)

    @property
    def _jobs_key(self) -> str:
        return f"{self._prefix}:jobs"

    # ── lifecycle ──

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self._redis.ping()
        self._scripts = {
            "add": self._redis.register_script(_ADD_SCRIPT),
            "take": self._redis.register_script(_TAKE_SCRIPT),
            "ack": self._redis.register_script(_ACK_SCRIPT),
            "fail": self._redis.register_script(_FAIL_SCRIPT),
        }
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()

    # ── transitions ──

    async def add(self, job: Job) -> bool:
        cat = job.category
        added = await self._scripts["add"](
            keys=[
                self._key(cat, "fp"),
                self._key(cat, "job", job.id),
                self._key(cat, "meta", job.id),
                self._key(cat, "due"),
                self._jobs_key,
            ],
            args=[
                job.fingerprint,
                job.id,
                job.to_json(),
                _ts(job.scheduled_at),
                cat.value,
                _ts(job.created_at),
                job.max_retries,
                job.schedule_id or "",
            ],
        )
        if not added:
            return False
        logger.info("job_enqueued",
                    job_id=job.id,
                    category=cat.value,
                    fingerprint=job.fingerprint)
        return True

    async def take(self, category: JobCategory, n: int = 1) -> list[Job]:
        now = self._clock()
        window = self._limiter.window_id(now)
        ids = await self._scripts["take"](
            keys=[
                self._key(category, "due"),
                self._key(category, "inflight"),
                self._key(category, "rate", str(window)),
                self._key(category, "exhausted"),
            ],
            args=[_ts(now), n, self.rate_limit_per_second, self._key(category, "meta", ""),
                  self.visibility_timeout, STALLED_ERROR],
        )
        jobs = []
        for job_id in ids or []:
            job = await self._load(category, job_id)
            if job:
                jobs.append(job)
        return jobs

    async def _category_of(self, job_id: str) -> JobCategory:
        raw = await self._redis.hget(self._jobs_key, job_id)
        if raw is None:
            raise JobStateError(f"Unknown job {job_id}")
        return JobCategory(raw)

    async def ack(self, job_id: str) -> Job:
        cat = await self._category_of(job_id)
        now = self._clock()
        ok = await self._scripts["ack"](
            keys=[self._key(cat, "inflight"), self._key(cat, "completed"),
                  self._key(cat, "meta", job_id)],
            args=[job_id, _ts(now)],
        )
        if not ok:
            raise JobStateError(f"Job {job_id} is not in_flight or passed its visibility deadline")
        job = await self._load(cat, job_id)
        logger.info("job_completed",
                    job_id=job_id,
                    category=cat.value,
                    attempts=job.attempt_count)
        return job

    async def fail(self, job_id: str, error: str, retryable: bool = True) -> Job:
        cat = await self._category_of(job_id)
        now = self._clock()
        outcome = await self._scripts["fail"](
            keys=[self._key(cat, "inflight"), self._key(cat, "due"),
                  self._key(cat, "exhausted"), self._key(cat, "meta", job_id)],
            args=[job_id, _ts(now), error, "1" if retryable else "0", self.base_delay],
        )
        if not outcome:
            raise JobStateError(f"Job {job_id} is not in_flight or passed its visibility deadline")
        job = await self._load(cat, job_id)
        if job.state == JobState.RETRY_PENDING:
            logger.info("job_scheduled_for_retry",
                        job_id=job_id,
                        attempt=job.attempt_count,
                        scheduled_at=job.scheduled_at.isoformat())
        else:
            logger.warning("job_exhausted",
                           job_id=job_id,
                           category=cat.value,
                           attempts=job.attempt_count,
                           error=error)
        return job

    # ── reads ──

    async def _load(self, category: JobCategory, job_id: str) -> Optional[Job]:
        pipe = self._redis.pipeline()
        pipe.get(self._key(category, "job", job_id))
        pipe.hgetall(self._key(category, "meta", job_id))
        raw, meta = await pipe.execute()
        if raw is None:
            return None
        job = Job.from_json(raw)
        if meta:
            job.state = JobState(meta.get("state", job.state.value))
            job.attempt_count = int(meta.get("attempt_count", 0))
            job.max_retries = int(meta.get("max_retries", job.max_retries))
            job.scheduled_at = _dt(meta.get("scheduled_at")) or job.scheduled_at
            job.finished_at = _dt(meta.get("finished_at"))
            job.lease_expires_at = _dt(meta.get("lease_expires_at"))
            job.last_error = meta.get("last_error", "")
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.hget(self._jobs_key, job_id)
        if raw is None:
            return None
        return await self._load(JobCategory(raw), job_id)

    async def find(self, category: JobCategory, fingerprint: str) -> Optional[Job]:
        job_id = await self._redis.hget(self._key(category, "fp"), fingerprint)
        return await self._load(category, job_id) if job_id else None

    async def _ids_in_state(self, category: JobCategory, state: JobState) -> list[str]:
        if state == JobState.COMPLETED:
            return await self._redis.zrevrange(self._key(category, "completed"), 0, -1)
        if state == JobState.EXHAUSTED:
            return await self._redis.zrevrange(self._key(category, "exhausted"), 0, -1)
        if state == JobState.IN_FLIGHT:
            return await self._redis.zrange(self._key(category, "inflight"), 0, -1)
        return await self._redis.zrange(self._key(category, "due"), 0, -1)

    async def list_jobs(
        self, category: JobCategory, state: JobState = None, limit: int = 100,
    ) -> list[Job]:
        states = [state] if state else [
            JobState.QUEUED, JobState.IN_FLIGHT, JobState.COMPLETED, JobState.EXHAUSTED,
        ]
        jobs: list[Job] = []
        for s in states:
            for job_id in await self._ids_in_state(category, s):
                job = await self._load(category, job_id)
                if job and (state is None or job.state == state):
                    jobs.append(job)
                if len(jobs) >= limit:
                    return jobs
        return jobs

    async def stats(self) -> dict[str, dict[str, int]]:
        result = {}
        for cat in JobCategory:
            counts = {s.value: 0 for s in JobState}
            due = await self._redis.zrange(self._key(cat, "due"), 0, -1)
            if due:
                pipe = self._redis.pipeline()
                for job_id in due:
                    pipe.hget(self._key(cat, "meta", job_id), "state")
                for state in await pipe.execute():
                    if state:
                        counts[state] += 1
            counts[JobState.IN_FLIGHT.value] = await self._redis.zcard(self._key(cat, "inflight"))
            counts[JobState.COMPLETED.value] = await self._redis.zcard(self._key(cat, "completed"))
            counts[JobState.EXHAUSTED.value] = await self._redis.zcard(self._key(cat, "exhausted"))
            result[cat.value] = counts
        return result

    async def prune(
        self,
        category: JobCategory,
        older_than: datetime,
        keep_recent: int = None,
        protected_schedule_ids: set[str] = None,
    ) -> int:
        keep = self.history_limit if keep_recent is None else keep_recent
        terminal: list[Job] = []
        for state in TERMINAL_STATES:
            for job_id in await self._ids_in_state(category, state):
                job = await self._load(category, job_id)
                if job:
                    terminal.append(job)

        victims = select_prunable(terminal, older_than, keep, protected_schedule_ids)
        if not victims:
            return 0

        pipe = self._redis.pipeline()
        for job in victims:
            outcome = "completed" if job.state == JobState.COMPLETED else "exhausted"
            pipe.zrem(self._key(category, outcome), job.id)
            pipe.hdel(self._key(category, "fp"), job.fingerprint)
            pipe.delete(self._key(category, "job", job.id), self._key(category, "meta", job.id))
            pipe.hdel(self._jobs_key, job.id)
        await pipe.execute()

        logger.info("jobs_pruned", category=category.value, count=len(victims))
        return len(victims)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[JobQueue] = None


def create_job_queue(queue_config: dict[str, Any] = None) -> JobQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    common = dict(
        rate_limit_per_second=int(config.get("rate_limit_per_second", 12)),
        base_delay=int(config.get("retry_backoff_base", 60)),
        history_limit=int(config.get("history_limit", 5)),
        visibility_timeout=int(config.get("visibility_timeout", 600)),
    )

    if backend == "redis":
        _instance = RedisJobQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "lessonrelay"),
            **common,
        )
    else:
        _instance = InMemoryJobQueue(**common)

    logger.info("job_queue_created", backend=backend)
    return _instance


def get_job_queue() -> JobQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_job_queue()
    return _instance


def reset_job_queue() -> None:
    """Drop the singleton (for testing)."""
    global _instance
    _instance = None
