"""Shared test fixtures for LessonRelay."""
import itertools
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest

from channels.base import DeliveryClient, SendResult
from config.settings import LLMConfig
from core.engine import ReplyEngine
from database.store_memory import InMemoryStore
from job_queue.enqueuer import DeduplicatingEnqueuer
from job_queue.handlers import DeliveryHandlers
from job_queue.message_queue import InMemoryJobQueue
from models.schemas import CourseRef, CourseSchedule, LessonRef, QuizRef


class FakeClock:
    """Manually stepped clock; starts Monday 2025-03-03 06:00 UTC (09:00 Istanbul)."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 3, 3, 6, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeDeliveryClient(DeliveryClient):
    """Records every descriptor; errors queued with fail_next are raised in order."""

    name = "fake"

    def __init__(self):
        super().__init__()
        self.sent: list[dict[str, Any]] = []
        self._failures: list[Exception] = []
        self._ids = itertools.count(1)

    def fail_next(self, *errors: Exception):
        self._failures.extend(errors)

    async def send(self, recipient: str, descriptor: dict[str, Any]) -> SendResult:
        if self._failures:
            raise self._failures.pop(0)
        msg_id = f"wamid.{next(self._ids)}"
        self.sent.append({"to": recipient, "id": msg_id, **descriptor})
        self.metrics.record_send()
        return SendResult(provider_message_id=msg_id, message_type=descriptor.get("type", "text"))

    def normalize_recipient(self, recipient: str) -> str:
        return re.sub(r"[^\d]", "", recipient)

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == message_type]


# ── Clock, stores, queue ──────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue(clock) -> InMemoryJobQueue:
    return InMemoryJobQueue(rate_limit_per_second=12, base_delay=60, history_limit=5, clock=clock)


@pytest.fixture
def enqueuer(queue, clock) -> DeduplicatingEnqueuer:
    return DeduplicatingEnqueuer(queue, max_retries=3, clock=clock)


@pytest.fixture
def delivery_client() -> FakeDeliveryClient:
    return FakeDeliveryClient()


@pytest.fixture
def handlers(delivery_client, store, clock) -> DeliveryHandlers:
    return DeliveryHandlers(delivery_client, store, attachment_delay_seconds=0, clock=clock)


@pytest.fixture
def reply_engine() -> ReplyEngine:
    # No API key: every reply comes from the fixed fallback text
    return ReplyEngine(LLMConfig(api_key=""))


# ── Course content ────────────────────────────────────

@pytest.fixture
def course() -> CourseRef:
    return CourseRef(
        id="C1",
        name="Python Basics",
        description="Ten short lessons on everyday Python",
        cover_image="https://cdn.example.com/c1/cover.png",
    )


@pytest.fixture
def quiz() -> QuizRef:
    return QuizRef(
        id="Q1",
        question="Which type is immutable?",
        options=["A list", "A tuple", "A dict"],
        correct_option="A tuple",
    )


@pytest.fixture
def lessons(quiz) -> list[LessonRef]:
    return [
        LessonRef(id="L1", title="Variables", content="Names bound to objects", quiz=quiz),
        LessonRef(id="L2", title="Loops", content="for and while"),
        LessonRef(
            id="L3",
            title="Files",
            content="Reading and writing",
            document="https://cdn.example.com/c1/files.pdf",
            media="https://cdn.example.com/c1/files.mp4",
            external_link="https://docs.python.org/3/tutorial/inputoutput.html",
        ),
    ]


@pytest.fixture
def recipients() -> list[str]:
    return ["+15550001", "+15550002", "+15550003"]


@pytest.fixture
def schedule(course, lessons, recipients) -> CourseSchedule:
    return CourseSchedule(
        id="S1",
        course=course,
        lessons=lessons,
        recipients=recipients,
        delivery_time="09:00",
        start_date=date(2025, 3, 3),
        timezone="Europe/Istanbul",
    )
