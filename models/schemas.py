"""
Core data models for the LessonRelay pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobCategory(str, Enum):
    LESSON = "lesson"
    REMINDER = "reminder"
    NOTIFICATION = "notification"
    WELCOME = "welcome"
    TEXT = "text"


class JobState(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    RETRY_PENDING = "retry_pending"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.EXHAUSTED)

    @property
    def is_live(self) -> bool:
        return not self.is_terminal


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    RECEIVED = "received"


# Forward-only provider lifecycle: sent → delivered → read, sent|delivered → failed
_STATUS_SUCCESSORS: dict[MessageStatus, set[MessageStatus]] = {
    MessageStatus.SENT: {MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED},
    MessageStatus.DELIVERED: {MessageStatus.READ, MessageStatus.FAILED},
    MessageStatus.READ: set(),
    MessageStatus.FAILED: set(),
    MessageStatus.RECEIVED: set(),
}


def is_forward_transition(current: MessageStatus, new: MessageStatus) -> bool:
    """True when `new` lies strictly ahead of `current` in the provider lifecycle."""
    return new in _STATUS_SUCCESSORS.get(current, set())


def status_predecessors(new: MessageStatus) -> set[MessageStatus]:
    """Statuses from which `new` is a forward transition."""
    return {s for s, successors in _STATUS_SUCCESSORS.items() if new in successors}


class ScheduleState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SUSPENDED = "suspended"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# ──────────────────────────────────────────────────────────────
#  Course content references (snapshotted into payloads)
# ──────────────────────────────────────────────────────────────

class QuizRef(BaseModel):
    id: str
    question: str
    options: list[str]
    correct_option: str


class LessonRef(BaseModel):
    id: str
    title: str
    content: str = ""
    document: Optional[str] = None           # public URL
    media: Optional[str] = None              # image or .mp4 URL
    external_link: Optional[str] = None
    quiz: Optional[QuizRef] = None


class CourseRef(BaseModel):
    id: str
    name: str
    description: str = ""
    cover_image: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Job payloads — tagged on `category`
# ──────────────────────────────────────────────────────────────

class LessonPayload(BaseModel):
    category: Literal["lesson"] = "lesson"
    recipient: str = Field(min_length=1)
    course: CourseRef
    lesson: LessonRef
    lesson_index: int = 0
    schedule_id: Optional[str] = None


class ReminderPayload(BaseModel):
    category: Literal["reminder"] = "reminder"
    recipient: str = Field(min_length=1)
    course: CourseRef
    lesson: LessonRef
    lesson_index: int = 0
    lead_time_text: str = "2 hours"
    schedule_id: Optional[str] = None


class NotificationPayload(BaseModel):
    category: Literal["notification"] = "notification"
    recipient: str = Field(min_length=1)
    course: CourseRef
    schedule_id: Optional[str] = None


class WelcomePayload(BaseModel):
    category: Literal["welcome"] = "welcome"
    recipient: str = Field(min_length=1)
    display_name: str = Field(min_length=1)


class TextPayload(BaseModel):
    category: Literal["text"] = "text"
    recipient: str = Field(min_length=1)
    content: str = Field(min_length=1)
    reply_to: Optional[str] = None           # provider id of the message being answered


JobPayload = Annotated[
    Union[LessonPayload, ReminderPayload, NotificationPayload, WelcomePayload, TextPayload],
    Field(discriminator="category"),
]

PAYLOAD_TYPES: dict[JobCategory, type[BaseModel]] = {
    JobCategory.LESSON: LessonPayload,
    JobCategory.REMINDER: ReminderPayload,
    JobCategory.NOTIFICATION: NotificationPayload,
    JobCategory.WELCOME: WelcomePayload,
    JobCategory.TEXT: TextPayload,
}


# ──────────────────────────────────────────────────────────────
#  Job
# ──────────────────────────────────────────────────────────────

class Job(BaseModel):
    """A unit of delivery work on a category queue."""
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    fingerprint: str
    category: JobCategory
    payload: JobPayload
    state: JobState = JobState.QUEUED
    attempt_count: int = 0
    max_retries: int = 3
    scheduled_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None   # visibility deadline while in_flight
    last_error: str = ""
    schedule_id: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> Job:
        return cls.model_validate_json(raw)


class EnqueueResult(BaseModel):
    accepted: bool
    job_ref: Optional[str] = None
    fingerprint: str = ""


# ──────────────────────────────────────────────────────────────
#  Message log
# ──────────────────────────────────────────────────────────────

class MessageContextRefs(BaseModel):
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    quiz_id: Optional[str] = None


class MessageRecord(BaseModel):
    provider_message_id: str
    direction: MessageDirection
    recipient: str                            # learner address (sender for incoming)
    body: str = ""
    message_type: str = "text"                # text | template | image | video | document | quiz | button ...
    category: Optional[JobCategory] = None
    status: MessageStatus = MessageStatus.SENT
    context: MessageContextRefs = Field(default_factory=MessageContextRefs)
    reply_ref: Optional[str] = None           # incoming only: job that answers it, once queued
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MessageContext(BaseModel):
    """Links an outbound message to the course/lesson/quiz a reply should resolve against."""
    provider_message_id: str
    recipient: str
    course_id: str
    lesson_id: Optional[str] = None
    quiz_id: Optional[str] = None
    question: Optional[str] = None
    quiz_options: list[str] = []
    correct_option: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime


# ──────────────────────────────────────────────────────────────
#  Scheduling
# ──────────────────────────────────────────────────────────────

class CourseSchedule(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    course: CourseRef
    lessons: list[LessonRef]
    recipients: list[str]
    delivery_time: str = "09:00"              # HH:MM, 24h
    frequency: Frequency = Frequency.DAILY
    start_date: date = Field(default_factory=lambda: utcnow().date())
    timezone: str = "Europe/Istanbul"
    reminder_lead_hours: int = Field(default=2, ge=0, le=23)
    state: ScheduleState = ScheduleState.PENDING
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def total_lessons(self) -> int:
        return len(self.lessons)


class LessonCursor(BaseModel):
    schedule_id: str
    current_lesson_index: int = 0
    last_reminded_index: int = -1
    last_slot: Optional[str] = None           # delivery slot that produced current_lesson_index
    version: int = 0
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    def lease_active(self, now: datetime) -> bool:
        return bool(self.lease_owner and self.lease_expires_at and self.lease_expires_at > now)


class RevokedToken(BaseModel):
    token_id: str
    expires_at: datetime


# ──────────────────────────────────────────────────────────────
#  Inbound provider events
# ──────────────────────────────────────────────────────────────

class StatusEvent(BaseModel):
    provider_message_id: str
    status: str
    recipient: str = ""
    timestamp: Optional[datetime] = None
    errors: list[dict[str, Any]] = []


class ContentEvent(BaseModel):
    sender: str
    provider_message_id: str
    type: str = "text"                        # text | button | interactive | image | ...
    body: str = ""
    button_reply_id: Optional[str] = None
    button_reply_title: Optional[str] = None
    context_message_id: Optional[str] = None  # message this one replies to
    sender_name: str = ""
    timestamp: Optional[datetime] = None

    @property
    def is_button_reply(self) -> bool:
        return self.type in ("button", "interactive") and bool(
            self.button_reply_id or self.button_reply_title
        )
