"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically, on SQLite it serializes to TEXT.
  - Natural string primary keys (provider message id, schedule id).
  - SQLite hands back naive datetimes; every stored timestamp is UTC.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import Date, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Message log
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    provider_message_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[str] = mapped_column(String(64), nullable=False)
    body: Mapped[str] = mapped_column(Text, default="")
    message_type: Mapped[str] = mapped_column(String(32), default="text")
    category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="sent")

    course_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lesson_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    quiz_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reply_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_recipient_created", "recipient", "created_at"),
    )


class MessageContextRow(Base):
    __tablename__ = "message_contexts"

    provider_message_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    recipient: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lesson_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    quiz_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    question: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quiz_options: Mapped[Any] = mapped_column(JSON, default=list)
    correct_option: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


# ──────────────────────────────────────────────────────────────
#  Schedules
# ──────────────────────────────────────────────────────────────

class CourseScheduleRow(Base):
    __tablename__ = "course_schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    course: Mapped[Any] = mapped_column(JSON, nullable=False)        # CourseRef snapshot
    lessons: Mapped[Any] = mapped_column(JSON, default=list)         # [LessonRef, ...]
    recipients: Mapped[Any] = mapped_column(JSON, default=list)
    delivery_time: Mapped[str] = mapped_column(String(5), default="09:00")
    frequency: Mapped[str] = mapped_column(String(16), default="daily")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="Europe/Istanbul")
    reminder_lead_hours: Mapped[int] = mapped_column(Integer, default=2)
    state: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class LessonCursorRow(Base):
    __tablename__ = "lesson_cursors"

    schedule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_lesson_index: Mapped[int] = mapped_column(Integer, default=0)
    last_reminded_index: Mapped[int] = mapped_column(Integer, default=-1)
    last_slot: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    lease_owner: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ──────────────────────────────────────────────────────────────
#  Revoked tokens
# ──────────────────────────────────────────────────────────────

class RevokedTokenRow(Base):
    __tablename__ = "revoked_tokens"

    token_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
