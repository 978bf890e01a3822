"""
Course Scheduler — turns a course schedule into lesson and reminder fan-outs.

Each registered schedule gets two cron triggers in its own timezone:

    lesson    HH:MM                   → tick()
    reminder  HH:MM minus lead hours  → remind()   (a day earlier when that crosses midnight)

    daily     every day
    weekly    the start date's weekday
    monthly   the start date's day of month

The lesson position lives in a durable LessonCursor, not in the process.
A tick claims the cursor (compare-and-swap on its version, plus a lease),
enqueues one lesson job per recipient, then advances the cursor. Two
instances firing the same trigger race on the claim; the loser skips.
The cursor also records the delivery slot (local date and time) that
advanced it, so an instance that reads the cursor after the winner has
already advanced does not claim the same slot again.
Enqueues are fingerprinted, so a tick repeated after a crash between
fan-out and advance produces duplicates that the queue rejects.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.errors import CursorConflict, InvalidPayload
from database.store_base import BaseStore
from job_queue.enqueuer import DeduplicatingEnqueuer
from models.schemas import CourseSchedule, Frequency, ScheduleState, utcnow

logger = structlog.get_logger()

_WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def parse_delivery_time(value: str) -> tuple[int, int]:
    """'HH:MM' (24h) → (hour, minute). Raises ValueError on anything else."""
    try:
        hour, minute = (int(part) for part in value.split(":"))
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid delivery time {value!r}, expected HH:MM") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid delivery time {value!r}, expected HH:MM")
    return hour, minute


def cron_fields(frequency: Frequency, start_date: date, hour: int, minute: int) -> dict[str, Any]:
    """CronTrigger keyword arguments for one delivery slot."""
    fields: dict[str, Any] = {"hour": hour, "minute": minute}
    if frequency == Frequency.WEEKLY:
        fields["day_of_week"] = _WEEKDAYS[start_date.weekday()]
    elif frequency == Frequency.MONTHLY:
        fields["day"] = start_date.day
    return fields


def reminder_cron_fields(
    frequency: Frequency, start_date: date, hour: int, minute: int, lead_hours: int,
) -> dict[str, Any]:
    """
    CronTrigger keyword arguments for the reminder slot, lead_hours before
    the lesson. When the lead crosses midnight the weekday or day of month
    moves back with it.
    """
    day_shift, reminder_hour = divmod(hour - lead_hours, 24)
    fields = cron_fields(frequency, start_date + timedelta(days=day_shift), reminder_hour, minute)
    if frequency == Frequency.MONTHLY and day_shift and start_date.day == 1:
        fields["day"] = "last"
    return fields


def lead_time_text(hours: int, language: str = "tr") -> str:
    """Human text for the reminder template's lead-time parameter."""
    if language == "tr":
        return f"{hours} saat"
    return f"{hours} hour" if hours == 1 else f"{hours} hours"


def local_date(now: datetime, tz: str) -> date:
    return now.astimezone(ZoneInfo(tz)).date()


def delivery_slot(schedule: CourseSchedule, now: datetime) -> str:
    """The delivery slot a tick at `now` serves: local date plus delivery time."""
    return f"{local_date(now, schedule.timezone).isoformat()}T{schedule.delivery_time}"


@dataclass
class TickResult:
    schedule_id: str
    outcome: str                    # advanced | skipped | completed | noop
    lesson_index: Optional[int] = None
    enqueued: int = 0
    duplicates: int = 0
    invalid: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CourseScheduler:
    """
    Registers schedules, runs their cron triggers, and owns the cursor protocol.

    Usage:
        scheduler = CourseScheduler(store, enqueuer)
        await scheduler.start()
        await scheduler.register(schedule)
        ...
        await scheduler.shutdown()
    """

    def __init__(
        self,
        store: BaseStore,
        enqueuer: DeduplicatingEnqueuer,
        timezone: str = "Europe/Istanbul",
        lease_seconds: int = 300,
        language: str = "tr",
        reminder_lead_hours: int = 2,
        owner: str = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.enqueuer = enqueuer
        self.timezone = timezone
        self.lease = timedelta(seconds=lease_seconds)
        self.language = language
        self.reminder_lead_hours = reminder_lead_hours
        self.owner = owner or f"scheduler-{uuid.uuid4().hex[:8]}"
        self._clock = clock
        self._aps: Optional[AsyncIOScheduler] = None

    @property
    def aps(self) -> Optional[AsyncIOScheduler]:
        """The underlying APScheduler instance, once started."""
        return self._aps

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start APScheduler and reload triggers for every pending or running schedule."""
        if self._aps is None:
            self._aps = AsyncIOScheduler(timezone=self.timezone)
        if not self._aps.running:
            self._aps.start()

        schedules = await self.store.list_schedules([ScheduleState.PENDING, ScheduleState.RUNNING])
        for schedule in schedules:
            self._add_triggers(schedule)
        logger.info("course_scheduler_started", owner=self.owner, schedules=len(schedules))

    async def shutdown(self) -> None:
        if self._aps and self._aps.running:
            self._aps.shutdown(wait=False)
        self._aps = None
        logger.info("course_scheduler_stopped", owner=self.owner)

    def _add_triggers(self, schedule: CourseSchedule) -> None:
        if self._aps is None:
            return
        hour, minute = parse_delivery_time(schedule.delivery_time)

        self._aps.add_job(
            self._fire_lesson,
            CronTrigger(timezone=schedule.timezone,
                        **cron_fields(schedule.frequency, schedule.start_date, hour, minute)),
            args=[schedule.id],
            id=f"lesson:{schedule.id}",
            replace_existing=True,
        )
        self._aps.add_job(
            self._fire_reminder,
            CronTrigger(timezone=schedule.timezone,
                        **reminder_cron_fields(schedule.frequency, schedule.start_date,
                                           hour, minute, schedule.reminder_lead_hours)),
            args=[schedule.id],
            id=f"reminder:{schedule.id}",
            replace_existing=True,
        )

    def _remove_triggers(self, schedule_id: str) -> None:
        if self._aps is None:
            return
        for job_id in (f"lesson:{schedule_id}", f"reminder:{schedule_id}"):
            if self._aps.get_job(job_id):
                self._aps.remove_job(job_id)

    def next_run_time(self, schedule_id: str) -> Optional[datetime]:
        """When the next lesson tick for a schedule fires, if it is loaded."""
        if self._aps is None:
            return None
        job = self._aps.get_job(f"lesson:{schedule_id}")
        return job.next_run_time if job else None

    async def _fire_lesson(self, schedule_id: str) -> None:
        try:
            await self.tick(schedule_id)
        except Exception as e:
            logger.error("scheduled_tick_failed", schedule_id=schedule_id, error=str(e), exc_info=True)

    async def _fire_reminder(self, schedule_id: str) -> None:
        try:
            await self.remind(schedule_id)
        except Exception as e:
            logger.error("scheduled_reminder_failed", schedule_id=schedule_id, error=str(e), exc_info=True)

    # ── Registration ──────────────────────────────────────────

    async def register(self, schedule: CourseSchedule, announce: bool = True) -> CourseSchedule:
        """
        Persist a schedule as pending with a fresh cursor, load its triggers,
        and optionally announce the course to every recipient.
        """
        parse_delivery_time(schedule.delivery_time)
        update = {"state": ScheduleState.PENDING}
        if "reminder_lead_hours" not in schedule.model_fields_set:
            update["reminder_lead_hours"] = self.reminder_lead_hours
        schedule = schedule.model_copy(update=update)
        await self.store.save_schedule(schedule)
        await self.store.create_cursor(schedule.id)
        self._add_triggers(schedule)

        announced = 0
        if announce:
            for recipient in schedule.recipients:
                try:
                    result = await self.enqueuer.enqueue_notification(
                        recipient, schedule.course, schedule_id=schedule.id,
                    )
                except InvalidPayload as e:
                    logger.warning("announcement_invalid",
                                   schedule_id=schedule.id,
                                   recipient=recipient,
                                   error=str(e))
                    continue
                announced += int(result.accepted)

        logger.info("schedule_registered",
                    schedule_id=schedule.id,
                    course_id=schedule.course.id,
                    lessons=schedule.total_lessons,
                    recipients=len(schedule.recipients),
                    frequency=schedule.frequency.value,
                    delivery_time=schedule.delivery_time,
                    announced=announced)
        return schedule

    async def suspend(self, schedule_id: str) -> CourseSchedule:
        schedule = await self._require(schedule_id)
        if schedule.state == ScheduleState.COMPLETED:
            return schedule
        await self.store.update_schedule_state(schedule_id, ScheduleState.SUSPENDED)
        self._remove_triggers(schedule_id)
        logger.info("schedule_suspended", schedule_id=schedule_id)
        return schedule.model_copy(update={"state": ScheduleState.SUSPENDED})

    async def resume(self, schedule_id: str) -> CourseSchedule:
        schedule = await self._require(schedule_id)
        if schedule.state != ScheduleState.SUSPENDED:
            return schedule
        await self.store.update_schedule_state(schedule_id, ScheduleState.RUNNING)
        resumed = schedule.model_copy(update={"state": ScheduleState.RUNNING})
        self._add_triggers(resumed)
        logger.info("schedule_resumed", schedule_id=schedule_id)
        return resumed

    async def _require(self, schedule_id: str) -> CourseSchedule:
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is None:
            raise KeyError(schedule_id)
        return schedule

    # ── Lesson tick ───────────────────────────────────────────

    async def tick(self, schedule_id: str, now: datetime = None, slot: str = None) -> TickResult:
        """
        Fan out the current lesson to every recipient and advance the cursor.

        A slot advances the cursor at most once; a second tick for a slot
        that already advanced is skipped, whichever instance runs it.
        """
        now = now or self._clock()
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is None:
            logger.warning("tick_unknown_schedule", schedule_id=schedule_id)
            return TickResult(schedule_id, "noop")

        if schedule.state == ScheduleState.PENDING:
            if local_date(now, schedule.timezone) < schedule.start_date:
                logger.debug("tick_before_start", schedule_id=schedule_id,
                             start_date=schedule.start_date.isoformat())
                return TickResult(schedule_id, "noop")
            await self.store.update_schedule_state(schedule_id, ScheduleState.RUNNING)
            logger.info("schedule_started", schedule_id=schedule_id)
        elif schedule.state != ScheduleState.RUNNING:
            return TickResult(schedule_id, "noop")

        cursor = await self.store.get_cursor(schedule_id) or await self.store.create_cursor(schedule_id)
        index = cursor.current_lesson_index
        slot = slot or delivery_slot(schedule, now)
        if cursor.last_slot == slot:
            logger.info("tick_slot_already_served", schedule_id=schedule_id,
                        slot=slot, owner=self.owner)
            return TickResult(schedule_id, "skipped", lesson_index=index)
        if index >= schedule.total_lessons:
            await self._complete(schedule_id)
            return TickResult(schedule_id, "completed", lesson_index=index)

        claimed = await self.store.claim_cursor(
            schedule_id, cursor.version, self.owner, now + self.lease, now, slot=slot,
        )
        if claimed is None:
            logger.info("tick_claim_lost", schedule_id=schedule_id,
                        lesson_index=index, owner=self.owner)
            return TickResult(schedule_id, "skipped", lesson_index=index)

        result = TickResult(schedule_id, "advanced", lesson_index=index)
        lesson = schedule.lessons[index]
        try:
            for recipient in schedule.recipients:
                try:
                    enqueued = await self.enqueuer.enqueue_lesson(
                        recipient, schedule.course, lesson,
                        lesson_index=index, schedule_id=schedule_id,
                    )
                except InvalidPayload as e:
                    result.invalid += 1
                    logger.warning("lesson_enqueue_invalid",
                                   schedule_id=schedule_id,
                                   recipient=recipient,
                                   missing=e.missing)
                    continue
                if enqueued.accepted:
                    result.enqueued += 1
                else:
                    result.duplicates += 1
        except Exception as e:
            await self.store.release_cursor(schedule_id, self.owner)
            logger.error("tick_fanout_failed",
                         schedule_id=schedule_id,
                         lesson_index=index,
                         error=str(e))
            raise

        if await self.store.advance_cursor(schedule_id, self.owner, index + 1, slot=slot) is None:
            raise CursorConflict(
                f"Lease on schedule {schedule_id} was lost before advancing past lesson {index}"
            )

        logger.info("lesson_fanout_complete",
                    schedule_id=schedule_id,
                    lesson_index=index,
                    total_lessons=schedule.total_lessons,
                    enqueued=result.enqueued,
                    duplicates=result.duplicates,
                    invalid=result.invalid)
        return result

    async def _complete(self, schedule_id: str) -> None:
        await self.store.update_schedule_state(schedule_id, ScheduleState.COMPLETED)
        self._remove_triggers(schedule_id)
        logger.info("schedule_completed", schedule_id=schedule_id)

    # ── Reminders ─────────────────────────────────────────────

    async def remind(self, schedule_id: str, now: datetime = None) -> int:
        """
        Fan out reminders for the upcoming lesson once per lesson index.
        Returns the number of reminder jobs accepted.
        """
        now = now or self._clock()
        schedule = await self.store.get_schedule(schedule_id)
        if schedule is None:
            return 0
        started = (
            schedule.state == ScheduleState.RUNNING
            or (schedule.state == ScheduleState.PENDING
                and local_date(now, schedule.timezone) >= schedule.start_date)
        )
        if not started:
            return 0

        cursor = await self.store.get_cursor(schedule_id)
        if cursor is None:
            return 0
        index = cursor.current_lesson_index
        if index >= schedule.total_lessons or cursor.last_reminded_index == index:
            return 0

        lesson = schedule.lessons[index]
        text = lead_time_text(schedule.reminder_lead_hours, self.language)
        accepted = 0
        for recipient in schedule.recipients:
            try:
                result = await self.enqueuer.enqueue_reminder(
                    recipient, schedule.course, lesson,
                    lesson_index=index, lead_time_text=text, schedule_id=schedule_id,
                )
            except InvalidPayload as e:
                logger.warning("reminder_enqueue_invalid",
                               schedule_id=schedule_id,
                               recipient=recipient,
                               missing=e.missing)
                continue
            accepted += int(result.accepted)

        if not await self.store.mark_reminded(schedule_id, cursor.last_reminded_index, index):
            logger.info("reminder_mark_lost", schedule_id=schedule_id, lesson_index=index)

        logger.info("reminder_fanout_complete",
                    schedule_id=schedule_id,
                    lesson_index=index,
                    accepted=accepted)
        return accepted
