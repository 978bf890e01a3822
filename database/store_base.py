"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

Holds the durable state of the pipeline outside the job queue: the message
log, reply contexts, course schedules with their lesson cursors, and revoked
tokens. Cursor writes are compare-and-swap; a write that loses returns
None/False instead of raising.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from models.schemas import (
    CourseSchedule, LessonCursor, MessageContext, MessageRecord, MessageStatus,
    RevokedToken, ScheduleState,
)


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Message log ───────────────────────────────────────────

    @abstractmethod
    async def add_message(self, record: MessageRecord) -> bool:
        """Insert a record; False when the provider message id is already logged."""
        ...

    @abstractmethod
    async def get_message(self, provider_message_id: str) -> Optional[MessageRecord]:
        ...

    @abstractmethod
    async def update_status_forward(
        self, provider_message_id: str, status: MessageStatus, at: datetime = None,
    ) -> bool:
        """
        Atomically move a record's status forward. Returns False when the
        transition would go backward (the record is left untouched).
        Raises ReconciliationMiss when the id is unknown.
        """
        ...

    @abstractmethod
    async def mark_replied(self, provider_message_id: str, reply_ref: str) -> bool:
        """Record the job that answers an incoming message. False when the id is unknown."""
        ...

    @abstractmethod
    async def recent_messages(self, recipient: str, limit: int = 10) -> list[MessageRecord]:
        """The last `limit` messages exchanged with a recipient, oldest first."""
        ...

    # ── Message contexts ──────────────────────────────────────

    @abstractmethod
    async def save_context(self, context: MessageContext) -> None:
        ...

    @abstractmethod
    async def get_context(self, provider_message_id: str) -> Optional[MessageContext]:
        ...

    @abstractmethod
    async def latest_context(self, recipient: str, now: datetime) -> Optional[MessageContext]:
        """Newest unexpired context sent to a recipient."""
        ...

    @abstractmethod
    async def delete_contexts(
        self, now: datetime, created_before: datetime, keep_course_ids: set[str] = None,
    ) -> int:
        """Delete contexts past expires_at or created before the cutoff, except kept courses."""
        ...

    # ── Schedules ─────────────────────────────────────────────

    @abstractmethod
    async def save_schedule(self, schedule: CourseSchedule) -> CourseSchedule:
        ...

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> Optional[CourseSchedule]:
        ...

    @abstractmethod
    async def list_schedules(self, states: Iterable[ScheduleState] = None) -> list[CourseSchedule]:
        ...

    @abstractmethod
    async def update_schedule_state(self, schedule_id: str, state: ScheduleState) -> None:
        ...

    # ── Lesson cursors ────────────────────────────────────────

    @abstractmethod
    async def create_cursor(self, schedule_id: str) -> LessonCursor:
        """Insert a cursor at index 0, or return the existing one."""
        ...

    @abstractmethod
    async def get_cursor(self, schedule_id: str) -> Optional[LessonCursor]:
        ...

    @abstractmethod
    async def claim_cursor(
        self, schedule_id: str, expected_version: int, owner: str,
        lease_until: datetime, now: datetime, slot: Optional[str] = None,
    ) -> Optional[LessonCursor]:
        """
        Take the fan-out lease if the version matches, no live lease exists
        and, when a slot is given, the cursor was not already advanced by it.
        """
        ...

    @abstractmethod
    async def advance_cursor(
        self, schedule_id: str, owner: str, new_index: int, slot: Optional[str] = None,
    ) -> Optional[LessonCursor]:
        """Set the lesson index, record the slot and drop the lease, only for the lease owner."""
        ...

    @abstractmethod
    async def release_cursor(self, schedule_id: str, owner: str) -> bool:
        """Drop the lease without moving the index."""
        ...

    @abstractmethod
    async def mark_reminded(self, schedule_id: str, expected_reminded: int, index: int) -> bool:
        ...

    # ── Revoked tokens ────────────────────────────────────────

    @abstractmethod
    async def revoke_token(self, token: RevokedToken) -> None:
        ...

    @abstractmethod
    async def is_token_revoked(self, token_id: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def delete_expired_tokens(self, now: datetime) -> int:
        ...

    async def close(self) -> None:
        pass
