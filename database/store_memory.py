"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Compare-and-swap writes serialized by one asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Iterable, Optional

import structlog

from core.errors import ReconciliationMiss
from database.store_base import BaseStore
from models.schemas import (
    CourseSchedule, LessonCursor, MessageContext, MessageRecord, MessageStatus,
    RevokedToken, ScheduleState, is_forward_transition, utcnow,
)

logger = structlog.get_logger()


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    Returns model copies so callers never mutate stored state.
    """

    def __init__(self):
        self._messages: dict[str, MessageRecord] = {}        # provider id → record
        self._contexts: dict[str, MessageContext] = {}       # provider id → context
        self._schedules: dict[str, CourseSchedule] = {}      # id → schedule
        self._cursors: dict[str, LessonCursor] = {}          # schedule id → cursor
        self._tokens: dict[str, RevokedToken] = {}           # token id → token
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Message log ───────────────────────────────────────

    async def add_message(self, record: MessageRecord) -> bool:
        async with self._lock:
            if record.provider_message_id in self._messages:
                return False
            self._messages[record.provider_message_id] = record.model_copy(deep=True)
            return True

    async def get_message(self, provider_message_id: str) -> Optional[MessageRecord]:
        record = self._messages.get(provider_message_id)
        return record.model_copy(deep=True) if record else None

    async def update_status_forward(
        self, provider_message_id: str, status: MessageStatus, at: datetime = None,
    ) -> bool:
        async with self._lock:
            record = self._messages.get(provider_message_id)
            if record is None:
                raise ReconciliationMiss(
                    f"No message {provider_message_id}", provider_message_id=provider_message_id,
                )
            if not is_forward_transition(record.status, status):
                return False
            record.status = status
            record.updated_at = at or utcnow()
            return True

    async def mark_replied(self, provider_message_id: str, reply_ref: str) -> bool:
        async with self._lock:
            record = self._messages.get(provider_message_id)
            if record is None:
                return False
            record.reply_ref = reply_ref
            return True

    async def recent_messages(self, recipient: str, limit: int = 10) -> list[MessageRecord]:
        history = sorted(
            (m for m in self._messages.values() if m.recipient == recipient),
            key=lambda m: m.created_at,
        )
        return [m.model_copy(deep=True) for m in history[-limit:]]

    # ── Message contexts ──────────────────────────────────

    async def save_context(self, context: MessageContext) -> None:
        self._contexts[context.provider_message_id] = context.model_copy(deep=True)

    async def get_context(self, provider_message_id: str) -> Optional[MessageContext]:
        ctx = self._contexts.get(provider_message_id)
        return ctx.model_copy(deep=True) if ctx else None

    async def latest_context(self, recipient: str, now: datetime) -> Optional[MessageContext]:
        live = [c for c in self._contexts.values()
                if c.recipient == recipient and c.expires_at > now]
        if not live:
            return None
        # Same-instant sends: the quiz context outranks the lesson template
        return max(live, key=lambda c: (c.created_at, c.quiz_id is not None)).model_copy(deep=True)

    async def delete_contexts(
        self, now: datetime, created_before: datetime, keep_course_ids: set[str] = None,
    ) -> int:
        keep = keep_course_ids or set()
        async with self._lock:
            doomed = [
                pid for pid, c in self._contexts.items()
                if c.course_id not in keep and (c.expires_at <= now or c.created_at < created_before)
            ]
            for pid in doomed:
                del self._contexts[pid]
        return len(doomed)

    # ── Schedules ─────────────────────────────────────────

    async def save_schedule(self, schedule: CourseSchedule) -> CourseSchedule:
        self._schedules[schedule.id] = schedule.model_copy(deep=True)
        return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[CourseSchedule]:
        schedule = self._schedules.get(schedule_id)
        return schedule.model_copy(deep=True) if schedule else None

    async def list_schedules(self, states: Iterable[ScheduleState] = None) -> list[CourseSchedule]:
        wanted = set(states) if states is not None else None
        return [
            s.model_copy(deep=True) for s in self._schedules.values()
            if wanted is None or s.state in wanted
        ]

    async def update_schedule_state(self, schedule_id: str, state: ScheduleState) -> None:
        schedule = self._schedules.get(schedule_id)
        if schedule:
            schedule.state = state

    # ── Lesson cursors ────────────────────────────────────

    async def create_cursor(self, schedule_id: str) -> LessonCursor:
        async with self._lock:
            cursor = self._cursors.setdefault(schedule_id, LessonCursor(schedule_id=schedule_id))
            return cursor.model_copy()

    async def get_cursor(self, schedule_id: str) -> Optional[LessonCursor]:
        cursor = self._cursors.get(schedule_id)
        return cursor.model_copy() if cursor else None

    async def claim_cursor(
        self, schedule_id: str, expected_version: int, owner: str,
        lease_until: datetime, now: datetime, slot: Optional[str] = None,
    ) -> Optional[LessonCursor]:
        async with self._lock:
            cursor = self._cursors.get(schedule_id)
            if cursor is None or cursor.version != expected_version or cursor.lease_active(now):
                return None
            if slot is not None and cursor.last_slot == slot:
                return None
            cursor.lease_owner = owner
            cursor.lease_expires_at = lease_until
            cursor.version += 1
            return cursor.model_copy()

    async def advance_cursor(
        self, schedule_id: str, owner: str, new_index: int, slot: Optional[str] = None,
    ) -> Optional[LessonCursor]:
        async with self._lock:
            cursor = self._cursors.get(schedule_id)
            if cursor is None or cursor.lease_owner != owner:
                return None
            cursor.current_lesson_index = new_index
            cursor.last_slot = slot
            cursor.lease_owner = None
            cursor.lease_expires_at = None
            cursor.version += 1
            return cursor.model_copy()

    async def release_cursor(self, schedule_id: str, owner: str) -> bool:
        async with self._lock:
            cursor = self._cursors.get(schedule_id)
            if cursor is None or cursor.lease_owner != owner:
                return False
            cursor.lease_owner = None
            cursor.lease_expires_at = None
            cursor.version += 1
            return True

    async def mark_reminded(self, schedule_id: str, expected_reminded: int, index: int) -> bool:
        async with self._lock:
            cursor = self._cursors.get(schedule_id)
            if cursor is None or cursor.last_reminded_index != expected_reminded:
                return False
            cursor.last_reminded_index = index
            return True

    # ── Revoked tokens ────────────────────────────────────

    async def revoke_token(self, token: RevokedToken) -> None:
        self._tokens[token.token_id] = token.model_copy()

    async def is_token_revoked(self, token_id: str, now: datetime) -> bool:
        token = self._tokens.get(token_id)
        return bool(token and token.expires_at > now)

    async def delete_expired_tokens(self, now: datetime) -> int:
        expired = [tid for tid, t in self._tokens.items() if t.expires_at <= now]
        for tid in expired:
            del self._tokens[tid]
        return len(expired)
