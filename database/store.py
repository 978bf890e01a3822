"""
SqlStore — Portable SQL persistence for PostgreSQL and SQLite.

Compare-and-swap writes (status forward moves, cursor claim/advance, reminder
marks) are single conditional UPDATE statements; the affected row count
tells whether the write won.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from core.errors import ReconciliationMiss
from database.models import (
    CourseScheduleRow, LessonCursorRow, MessageContextRow, MessageRow, RevokedTokenRow, as_utc,
)
from database.session import get_session
from database.store_base import BaseStore
from models.schemas import (
    CourseRef, CourseSchedule, Frequency, JobCategory, LessonCursor, LessonRef,
    MessageContext, MessageContextRefs, MessageDirection, MessageRecord, MessageStatus,
    RevokedToken, ScheduleState, status_predecessors, utcnow,
)

logger = structlog.get_logger()


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Each call runs in its own transaction via get_session().
    """

    # ── Message log ────────────────────────────────────────

    async def add_message(self, record: MessageRecord) -> bool:
        try:
            async with get_session() as db:
                if await db.get(MessageRow, record.provider_message_id):
                    return False
                db.add(MessageRow(
                    provider_message_id=record.provider_message_id,
                    direction=record.direction.value,
                    recipient=record.recipient,
                    body=record.body,
                    message_type=record.message_type,
                    category=record.category.value if record.category else None,
                    status=record.status.value,
                    course_id=record.context.course_id,
                    lesson_id=record.context.lesson_id,
                    quiz_id=record.context.quiz_id,
                    reply_ref=record.reply_ref,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                ))
        except IntegrityError:
            # concurrent insert of the same provider id
            return False
        return True

    async def get_message(self, provider_message_id: str) -> Optional[MessageRecord]:
        async with get_session() as db:
            row = await db.get(MessageRow, provider_message_id)
            return self._row_to_message(row) if row else None

    async def update_status_forward(
        self, provider_message_id: str, status: MessageStatus, at: datetime = None,
    ) -> bool:
        allowed = [s.value for s in status_predecessors(status)]
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(and_(
                    MessageRow.provider_message_id == provider_message_id,
                    MessageRow.status.in_(allowed),
                ))
                .values(status=status.value, updated_at=at or utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            exists = await db.get(MessageRow, provider_message_id)
        if exists is None:
            raise ReconciliationMiss(
                f"No message {provider_message_id}", provider_message_id=provider_message_id,
            )
        return False

    async def mark_replied(self, provider_message_id: str, reply_ref: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(MessageRow.provider_message_id == provider_message_id)
                .values(reply_ref=reply_ref)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def recent_messages(self, recipient: str, limit: int = 10) -> list[MessageRecord]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.recipient == recipient)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    # ── Message contexts ───────────────────────────────────

    async def save_context(self, context: MessageContext) -> None:
        async with get_session() as db:
            await db.merge(MessageContextRow(
                provider_message_id=context.provider_message_id,
                recipient=context.recipient,
                course_id=context.course_id,
                lesson_id=context.lesson_id,
                quiz_id=context.quiz_id,
                question=context.question,
                quiz_options=list(context.quiz_options),
                correct_option=context.correct_option,
                created_at=context.created_at,
                expires_at=context.expires_at,
            ))

    async def get_context(self, provider_message_id: str) -> Optional[MessageContext]:
        async with get_session() as db:
            row = await db.get(MessageContextRow, provider_message_id)
            return self._row_to_context(row) if row else None

    async def latest_context(self, recipient: str, now: datetime) -> Optional[MessageContext]:
        async with get_session() as db:
            stmt = (
                select(MessageContextRow)
                .where(and_(
                    MessageContextRow.recipient == recipient,
                    MessageContextRow.expires_at > now,
                ))
                .order_by(
                    MessageContextRow.created_at.desc(),
                    case((MessageContextRow.quiz_id.is_(None), 1), else_=0),
                )
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_context(row) if row else None

    async def delete_contexts(
        self, now: datetime, created_before: datetime, keep_course_ids: set[str] = None,
    ) -> int:
        stmt = delete(MessageContextRow).where(or_(
            MessageContextRow.expires_at <= now,
            MessageContextRow.created_at < created_before,
        ))
        if keep_course_ids:
            stmt = stmt.where(MessageContextRow.course_id.not_in(keep_course_ids))
        async with get_session() as db:
            result = await db.execute(stmt.execution_options(synchronize_session=False))
            return result.rowcount or 0

    # ── Schedules ──────────────────────────────────────────

    async def save_schedule(self, schedule: CourseSchedule) -> CourseSchedule:
        async with get_session() as db:
            await db.merge(CourseScheduleRow(
                id=schedule.id,
                course=schedule.course.model_dump(mode="json"),
                lessons=[l.model_dump(mode="json") for l in schedule.lessons],
                recipients=list(schedule.recipients),
                delivery_time=schedule.delivery_time,
                frequency=schedule.frequency.value,
                start_date=schedule.start_date,
                timezone=schedule.timezone,
                reminder_lead_hours=schedule.reminder_lead_hours,
                state=schedule.state.value,
                created_at=schedule.created_at,
            ))
        return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[CourseSchedule]:
        async with get_session() as db:
            row = await db.get(CourseScheduleRow, schedule_id)
            return self._row_to_schedule(row) if row else None

    async def list_schedules(self, states: Iterable[ScheduleState] = None) -> list[CourseSchedule]:
        stmt = select(CourseScheduleRow).order_by(CourseScheduleRow.created_at)
        if states is not None:
            stmt = stmt.where(CourseScheduleRow.state.in_([s.value for s in states]))
        async with get_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_schedule(r) for r in rows]

    async def update_schedule_state(self, schedule_id: str, state: ScheduleState) -> None:
        async with get_session() as db:
            await db.execute(
                update(CourseScheduleRow)
                .where(CourseScheduleRow.id == schedule_id)
                .values(state=state.value)
            )

    # ── Lesson cursors ─────────────────────────────────────

    async def create_cursor(self, schedule_id: str) -> LessonCursor:
        async with get_session() as db:
            row = await db.get(LessonCursorRow, schedule_id)
            if row is None:
                row = LessonCursorRow(
                    schedule_id=schedule_id, current_lesson_index=0,
                    last_reminded_index=-1, version=0,
                )
                db.add(row)
            return self._row_to_cursor(row)

    async def get_cursor(self, schedule_id: str) -> Optional[LessonCursor]:
        async with get_session() as db:
            row = await db.get(LessonCursorRow, schedule_id)
            return self._row_to_cursor(row) if row else None

    async def _cas(self, schedule_id: str, conditions: list, values: dict) -> Optional[LessonCursor]:
        async with get_session() as db:
            result = await db.execute(
                update(LessonCursorRow)
                .where(and_(LessonCursorRow.schedule_id == schedule_id, *conditions))
                .values(version=LessonCursorRow.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = (await db.execute(
                select(LessonCursorRow).where(LessonCursorRow.schedule_id == schedule_id)
            )).scalar_one()
            return self._row_to_cursor(row)

    async def claim_cursor(
        self, schedule_id: str, expected_version: int, owner: str,
        lease_until: datetime, now: datetime, slot: Optional[str] = None,
    ) -> Optional[LessonCursor]:
        conditions = [
            LessonCursorRow.version == expected_version,
            or_(
                LessonCursorRow.lease_owner.is_(None),
                LessonCursorRow.lease_expires_at.is_(None),
                LessonCursorRow.lease_expires_at <= now,
            ),
        ]
        if slot is not None:
            conditions.append(or_(
                LessonCursorRow.last_slot.is_(None),
                LessonCursorRow.last_slot != slot,
            ))
        return await self._cas(
            schedule_id, conditions,
            {"lease_owner": owner, "lease_expires_at": lease_until},
        )

    async def advance_cursor(
        self, schedule_id: str, owner: str, new_index: int, slot: Optional[str] = None,
    ) -> Optional[LessonCursor]:
        return await self._cas(
            schedule_id,
            [LessonCursorRow.lease_owner == owner],
            {"current_lesson_index": new_index, "last_slot": slot,
             "lease_owner": None, "lease_expires_at": None},
        )

    async def release_cursor(self, schedule_id: str, owner: str) -> bool:
        released = await self._cas(
            schedule_id,
            [LessonCursorRow.lease_owner == owner],
            {"lease_owner": None, "lease_expires_at": None},
        )
        return released is not None

    async def mark_reminded(self, schedule_id: str, expected_reminded: int, index: int) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(LessonCursorRow)
                .where(and_(
                    LessonCursorRow.schedule_id == schedule_id,
                    LessonCursorRow.last_reminded_index == expected_reminded,
                ))
                .values(last_reminded_index=index)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ── Revoked tokens ─────────────────────────────────────

    async def revoke_token(self, token: RevokedToken) -> None:
        async with get_session() as db:
            await db.merge(RevokedTokenRow(token_id=token.token_id, expires_at=token.expires_at))

    async def is_token_revoked(self, token_id: str, now: datetime) -> bool:
        async with get_session() as db:
            row = await db.get(RevokedTokenRow, token_id)
            return bool(row and as_utc(row.expires_at) > now)

    async def delete_expired_tokens(self, now: datetime) -> int:
        async with get_session() as db:
            result = await db.execute(
                delete(RevokedTokenRow)
                .where(RevokedTokenRow.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # ── Row → model helpers ────────────────────────────────

    @staticmethod
    def _row_to_message(row: MessageRow) -> MessageRecord:
        return MessageRecord(
            provider_message_id=row.provider_message_id,
            direction=MessageDirection(row.direction),
            recipient=row.recipient,
            body=row.body or "",
            message_type=row.message_type or "text",
            category=JobCategory(row.category) if row.category else None,
            status=MessageStatus(row.status),
            context=MessageContextRefs(
                course_id=row.course_id, lesson_id=row.lesson_id, quiz_id=row.quiz_id,
            ),
            reply_ref=row.reply_ref,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_context(row: MessageContextRow) -> MessageContext:
        return MessageContext(
            provider_message_id=row.provider_message_id,
            recipient=row.recipient,
            course_id=row.course_id,
            lesson_id=row.lesson_id,
            quiz_id=row.quiz_id,
            question=row.question,
            quiz_options=list(row.quiz_options or []),
            correct_option=row.correct_option,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
        )

    @staticmethod
    def _row_to_schedule(row: CourseScheduleRow) -> CourseSchedule:
        return CourseSchedule(
            id=row.id,
            course=CourseRef.model_validate(row.course),
            lessons=[LessonRef.model_validate(l) for l in row.lessons or []],
            recipients=list(row.recipients or []),
            delivery_time=row.delivery_time,
            frequency=Frequency(row.frequency),
            start_date=row.start_date,
            timezone=row.timezone,
            reminder_lead_hours=row.reminder_lead_hours,
            state=ScheduleState(row.state),
            created_at=as_utc(row.created_at),
        )

    @staticmethod
    def _row_to_cursor(row: LessonCursorRow) -> LessonCursor:
        return LessonCursor(
            schedule_id=row.schedule_id,
            current_lesson_index=row.current_lesson_index,
            last_reminded_index=row.last_reminded_index,
            last_slot=row.last_slot,
            version=row.version,
            lease_owner=row.lease_owner,
            lease_expires_at=as_utc(row.lease_expires_at),
        )
