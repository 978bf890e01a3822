"""
Retention Sweeper — periodic cleanup of pipeline bookkeeping.

One pass:
  - prunes terminal jobs per category (age cutoff + newest N per outcome),
    keeping jobs that belong to a pending or running schedule
  - deletes expired or aged-out reply contexts, except for running courses
  - deletes revoked tokens past their expiry

The message log itself is never swept.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import RetentionConfig
from database.store_base import BaseStore
from job_queue.message_queue import JobQueue
from models.schemas import JobCategory, ScheduleState, utcnow

logger = structlog.get_logger()


@dataclass
class SweepReport:
    started_at: datetime
    jobs_pruned: dict[str, int] = field(default_factory=dict)
    contexts_deleted: int = 0
    tokens_deleted: int = 0

    @property
    def total_jobs_pruned(self) -> int:
        return sum(self.jobs_pruned.values())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["total_jobs_pruned"] = self.total_jobs_pruned
        return data


class RetentionSweeper:

    JOB_ID = "retention_sweep"

    def __init__(
        self,
        queue: JobQueue,
        store: BaseStore,
        config: RetentionConfig = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.store = store
        self.config = config or RetentionConfig()
        self._clock = clock
        self.last_report: Optional[SweepReport] = None

    async def sweep(self, now: datetime = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport(started_at=now)

        active = await self.store.list_schedules([ScheduleState.PENDING, ScheduleState.RUNNING])
        protected_runs = {s.id for s in active}
        running_courses = {s.course.id for s in active if s.state == ScheduleState.RUNNING}

        job_cutoff = now - timedelta(hours=self.config.job_retention_hours)
        for category in JobCategory:
            report.jobs_pruned[category.value] = await self.queue.prune(
                category, job_cutoff, protected_schedule_ids=protected_runs,
            )

        report.contexts_deleted = await self.store.delete_contexts(
            now,
            created_before=now - timedelta(hours=self.config.context_retention_hours),
            keep_course_ids=running_courses,
        )
        report.tokens_deleted = await self.store.delete_expired_tokens(now)

        self.last_report = report
        logger.info("retention_sweep_complete",
                    jobs_pruned=report.total_jobs_pruned,
                    contexts_deleted=report.contexts_deleted,
                    tokens_deleted=report.tokens_deleted)
        return report

    async def _run_scheduled(self) -> None:
        try:
            await self.sweep()
        except Exception as e:
            logger.error("retention_sweep_failed", error=str(e), exc_info=True)

    def attach(self, scheduler: AsyncIOScheduler) -> None:
        """Register the periodic sweep on a running APScheduler instance."""
        scheduler.add_job(
            self._run_scheduled,
            IntervalTrigger(hours=self.config.sweep_interval_hours),
            id=self.JOB_ID,
            replace_existing=True,
        )
        logger.info("retention_sweep_scheduled", every_hours=self.config.sweep_interval_hours)
