"""
Tests for the course scheduler.

Covers:
  - registration (pending state, cursor at 0, course announcement)
  - tick: start-date gating, N enqueues before the cursor advances, completion
  - concurrent ticks: exactly one instance fans out
  - failure mid fan-out releases the lease without advancing
  - reminders once per lesson index
  - suspend / resume
  - cron trigger construction
"""
import asyncio
from datetime import date, timedelta

import pytest

from core.errors import CursorConflict
from models.schemas import Frequency, JobCategory, ScheduleState
from scheduler.lesson_scheduler import (
    CourseScheduler, cron_fields, delivery_slot, lead_time_text, parse_delivery_time,
    reminder_cron_fields,
)


@pytest.fixture
def scheduler(store, enqueuer, clock) -> CourseScheduler:
    return CourseScheduler(store, enqueuer, owner="node-a", clock=clock)


class TestHelpers:
    def test_parse_delivery_time(self):
        assert parse_delivery_time("09:30") == (9, 30)
        for bad in ("24:00", "9", "ab:cd", "12:60"):
            with pytest.raises(ValueError):
                parse_delivery_time(bad)

    def test_cron_fields_by_frequency(self):
        start = date(2025, 3, 5)   # Wednesday
        assert cron_fields(Frequency.DAILY, start, 9, 0) == {"hour": 9, "minute": 0}
        assert cron_fields(Frequency.WEEKLY, start, 9, 0)["day_of_week"] == "wed"
        assert cron_fields(Frequency.MONTHLY, start, 9, 0)["day"] == 5

    def test_reminder_fields_same_day(self):
        start = date(2025, 3, 5)   # Wednesday
        assert reminder_cron_fields(Frequency.WEEKLY, start, 9, 30, 2) == {
            "hour": 7, "minute": 30, "day_of_week": "wed",
        }

    def test_reminder_fields_cross_midnight(self):
        start = date(2025, 3, 5)   # Wednesday
        assert reminder_cron_fields(Frequency.DAILY, start, 1, 0, 2) == {"hour": 23, "minute": 0}
        weekly = reminder_cron_fields(Frequency.WEEKLY, start, 1, 0, 2)
        assert (weekly["hour"], weekly["day_of_week"]) == (23, "tue")
        monthly = reminder_cron_fields(Frequency.MONTHLY, start, 1, 0, 2)
        assert (monthly["hour"], monthly["day"]) == (23, 4)

    def test_reminder_fields_first_of_month_moves_to_last_day(self):
        monthly = reminder_cron_fields(Frequency.MONTHLY, date(2025, 3, 1), 0, 30, 1)
        assert (monthly["hour"], monthly["day"]) == (23, "last")

    def test_delivery_slot_uses_local_date(self, schedule, clock):
        clock.now = clock.now.replace(day=2, hour=22, minute=30)
        assert delivery_slot(schedule, clock()) == "2025-03-03T09:00"

    def test_lead_time_text(self):
        assert lead_time_text(2, "tr") == "2 saat"
        assert lead_time_text(2, "en") == "2 hours"
        assert lead_time_text(1, "en") == "1 hour"


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_persists_pending_with_cursor(self, scheduler, store, schedule):
        schedule.state = ScheduleState.RUNNING
        await scheduler.register(schedule, announce=False)
        saved = await store.get_schedule("S1")
        assert saved.state == ScheduleState.PENDING
        cursor = await store.get_cursor("S1")
        assert cursor.current_lesson_index == 0
        assert cursor.last_reminded_index == -1

    @pytest.mark.asyncio
    async def test_register_announces_course(self, scheduler, queue, schedule):
        await scheduler.register(schedule)
        jobs = await queue.list_jobs(JobCategory.NOTIFICATION)
        assert sorted(j.payload.recipient for j in jobs) == sorted(schedule.recipients)
        assert all(j.schedule_id == "S1" for j in jobs)

    @pytest.mark.asyncio
    async def test_configured_lead_time_applies_when_unset(self, store, enqueuer, queue,
                                                           schedule, clock):
        scheduler = CourseScheduler(store, enqueuer, reminder_lead_hours=3, clock=clock)
        saved = await scheduler.register(schedule, announce=False)
        assert saved.reminder_lead_hours == 3
        await scheduler.remind("S1")
        jobs = await queue.list_jobs(JobCategory.REMINDER)
        assert {j.payload.lead_time_text for j in jobs} == {"3 saat"}

        explicit = schedule.model_copy(update={"id": "S2", "reminder_lead_hours": 1})
        explicit = explicit.model_validate(explicit.model_dump())
        assert (await scheduler.register(explicit, announce=False)).reminder_lead_hours == 1

    @pytest.mark.asyncio
    async def test_register_rejects_bad_time(self, scheduler, schedule):
        schedule.delivery_time = "25:00"
        with pytest.raises(ValueError):
            await scheduler.register(schedule)


class TestTick:
    @pytest.mark.asyncio
    async def test_before_start_date_is_noop(self, scheduler, store, schedule, clock):
        schedule.start_date = date(2025, 3, 10)
        await scheduler.register(schedule, announce=False)
        result = await scheduler.tick("S1")
        assert result.outcome == "noop"
        assert (await store.get_schedule("S1")).state == ScheduleState.PENDING

    @pytest.mark.asyncio
    async def test_start_date_uses_schedule_timezone(self, scheduler, store, schedule, clock):
        # 2025-03-02 22:30 UTC is already 2025-03-03 in Istanbul
        clock.now = clock.now.replace(day=2, hour=22, minute=30)
        await scheduler.register(schedule, announce=False)
        result = await scheduler.tick("S1")
        assert result.outcome == "advanced"

    @pytest.mark.asyncio
    async def test_fans_out_then_advances(self, scheduler, store, queue, schedule):
        await scheduler.register(schedule, announce=False)
        result = await scheduler.tick("S1")

        assert result.outcome == "advanced"
        assert result.lesson_index == 0
        assert result.enqueued == 3
        assert (await store.get_schedule("S1")).state == ScheduleState.RUNNING
        cursor = await store.get_cursor("S1")
        assert cursor.current_lesson_index == 1
        assert cursor.lease_owner is None

        jobs = await queue.list_jobs(JobCategory.LESSON)
        assert len(jobs) == 3
        assert {j.fingerprint for j in jobs} == {f"C1:L1:{r}" for r in schedule.recipients}

    @pytest.mark.asyncio
    async def test_enqueues_precede_advance(self, store, enqueuer, schedule, clock):
        seen = []
        original = store.advance_cursor

        async def advance(schedule_id, owner, new_index, slot=None):
            seen.append(len(await enqueuer.queue.list_jobs(JobCategory.LESSON)))
            return await original(schedule_id, owner, new_index, slot=slot)

        store.advance_cursor = advance
        scheduler = CourseScheduler(store, enqueuer, clock=clock)
        await scheduler.register(schedule, announce=False)
        await scheduler.tick("S1")
        assert seen == [3]

    @pytest.mark.asyncio
    async def test_walks_through_course_then_completes(self, scheduler, store, schedule, clock):
        await scheduler.register(schedule, announce=False)
        outcomes = []
        for _ in range(4):
            outcomes.append((await scheduler.tick("S1")).outcome)
            clock.advance(days=1)
        assert outcomes == ["advanced", "advanced", "advanced", "completed"]
        assert (await store.get_schedule("S1")).state == ScheduleState.COMPLETED
        assert (await scheduler.tick("S1")).outcome == "noop"

    @pytest.mark.asyncio
    async def test_repeat_tick_after_crash_is_deduplicated(self, scheduler, store, schedule, clock):
        await scheduler.register(schedule, announce=False)
        await scheduler.tick("S1")
        # Simulate a crash before the advance landed: rewind by hand
        version = (await store.get_cursor("S1")).version
        await store.claim_cursor("S1", version, "repair", clock() + timedelta(seconds=1), clock())
        await store.advance_cursor("S1", "repair", 0)
        result = await scheduler.tick("S1")
        assert result.enqueued == 0
        assert result.duplicates == 3

    @pytest.mark.asyncio
    async def test_concurrent_ticks_only_one_fans_out(self, store, enqueuer, schedule, clock):
        original = store.claim_cursor

        async def claim(*args, **kwargs):
            await asyncio.sleep(0)   # both ticks read the cursor before either claims
            return await original(*args, **kwargs)

        store.claim_cursor = claim
        a = CourseScheduler(store, enqueuer, owner="node-a", clock=clock)
        b = CourseScheduler(store, enqueuer, owner="node-b", clock=clock)
        await a.register(schedule, announce=False)

        results = await asyncio.gather(a.tick("S1"), b.tick("S1"))
        outcomes = sorted(r.outcome for r in results)
        assert outcomes == ["advanced", "skipped"]
        assert sum(r.enqueued for r in results) == 3
        assert (await store.get_cursor("S1")).current_lesson_index == 1

    @pytest.mark.asyncio
    async def test_same_slot_advances_once_across_instances(self, store, enqueuer, queue,
                                                            schedule, clock):
        a = CourseScheduler(store, enqueuer, owner="node-a", clock=clock)
        b = CourseScheduler(store, enqueuer, owner="node-b", clock=clock)
        await a.register(schedule, announce=False)

        first = await a.tick("S1")
        clock.advance(0.2)
        second = await b.tick("S1")

        assert (first.outcome, second.outcome) == ("advanced", "skipped")
        assert second.enqueued == 0
        cursor = await store.get_cursor("S1")
        assert cursor.current_lesson_index == 1
        assert cursor.last_slot == "2025-03-03T09:00"
        assert len(await queue.list_jobs(JobCategory.LESSON)) == 3

        clock.advance(days=1)
        assert (await b.tick("S1")).lesson_index == 1

    @pytest.mark.asyncio
    async def test_explicit_slot_is_honoured(self, scheduler, store, schedule):
        await scheduler.register(schedule, announce=False)
        assert (await scheduler.tick("S1", slot="run-1")).outcome == "advanced"
        assert (await scheduler.tick("S1", slot="run-1")).outcome == "skipped"
        assert (await scheduler.tick("S1", slot="run-2")).lesson_index == 1

    @pytest.mark.asyncio
    async def test_live_lease_blocks_claim(self, scheduler, store, schedule, clock):
        await scheduler.register(schedule, announce=False)
        cursor = await store.get_cursor("S1")
        await store.claim_cursor("S1", cursor.version, "node-z", clock() + timedelta(minutes=5), clock())
        assert (await scheduler.tick("S1")).outcome == "skipped"

    @pytest.mark.asyncio
    async def test_fatal_error_releases_lease(self, store, enqueuer, schedule, clock):
        async def broken(*args, **kwargs):
            raise ConnectionError("queue unreachable")

        enqueuer.enqueue_lesson = broken
        scheduler = CourseScheduler(store, enqueuer, owner="node-a", clock=clock)
        await scheduler.register(schedule, announce=False)
        with pytest.raises(ConnectionError):
            await scheduler.tick("S1")
        cursor = await store.get_cursor("S1")
        assert cursor.current_lesson_index == 0
        assert cursor.lease_owner is None

    @pytest.mark.asyncio
    async def test_invalid_recipient_counted_not_fatal(self, scheduler, store, schedule):
        schedule.recipients = ["+15550001", ""]
        await scheduler.register(schedule, announce=False)
        result = await scheduler.tick("S1")
        assert result.enqueued == 1
        assert result.invalid == 1
        assert (await store.get_cursor("S1")).current_lesson_index == 1

    @pytest.mark.asyncio
    async def test_lost_lease_raises_conflict(self, store, enqueuer, schedule, clock):
        async def steal(*args, **kwargs):
            return None

        scheduler = CourseScheduler(store, enqueuer, owner="node-a", clock=clock)
        await scheduler.register(schedule, announce=False)
        store.advance_cursor = steal
        with pytest.raises(CursorConflict):
            await scheduler.tick("S1")

    @pytest.mark.asyncio
    async def test_unknown_schedule(self, scheduler):
        assert (await scheduler.tick("missing")).outcome == "noop"


class TestRemind:
    @pytest.mark.asyncio
    async def test_reminds_once_per_lesson(self, scheduler, store, queue, schedule):
        await scheduler.register(schedule, announce=False)
        assert await scheduler.remind("S1") == 3
        assert await scheduler.remind("S1") == 0
        assert (await store.get_cursor("S1")).last_reminded_index == 0

        jobs = await queue.list_jobs(JobCategory.REMINDER)
        assert {j.payload.lead_time_text for j in jobs} == {"2 saat"}

        await scheduler.tick("S1")
        assert await scheduler.remind("S1") == 3

    @pytest.mark.asyncio
    async def test_no_reminder_before_start(self, scheduler, schedule):
        schedule.start_date = date(2025, 4, 1)
        await scheduler.register(schedule, announce=False)
        assert await scheduler.remind("S1") == 0

    @pytest.mark.asyncio
    async def test_no_reminder_when_suspended(self, scheduler, schedule):
        await scheduler.register(schedule, announce=False)
        await scheduler.suspend("S1")
        assert await scheduler.remind("S1") == 0


class TestSuspendResume:
    @pytest.mark.asyncio
    async def test_suspended_schedule_does_not_tick(self, scheduler, store, schedule, clock):
        await scheduler.register(schedule, announce=False)
        await scheduler.tick("S1")
        suspended = await scheduler.suspend("S1")
        assert suspended.state == ScheduleState.SUSPENDED
        assert (await scheduler.tick("S1")).outcome == "noop"

        resumed = await scheduler.resume("S1")
        assert resumed.state == ScheduleState.RUNNING
        clock.advance(days=1)
        result = await scheduler.tick("S1")
        assert result.outcome == "advanced"
        assert result.lesson_index == 1

    @pytest.mark.asyncio
    async def test_unknown_schedule_raises(self, scheduler):
        with pytest.raises(KeyError):
            await scheduler.suspend("missing")


class TestTriggers:
    @pytest.mark.asyncio
    async def test_start_loads_triggers(self, scheduler, schedule):
        await scheduler.register(schedule, announce=False)
        await scheduler.start()
        try:
            assert scheduler.aps.get_job("lesson:S1") is not None
            assert scheduler.aps.get_job("reminder:S1") is not None
            nxt = scheduler.next_run_time("S1")
            assert nxt.hour == 9 and nxt.minute == 0

            await scheduler.suspend("S1")
            assert scheduler.aps.get_job("lesson:S1") is None
        finally:
            await scheduler.shutdown()
