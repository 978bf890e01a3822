"""
Deduplicating Enqueuer — the single entry point producers use to schedule a send.

The payload is validated against its category's model, fingerprinted, and
handed to the queue's atomic check-and-insert. A second enqueue of the same
(category, fingerprint) is a no-op that reports accepted=False.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ValidationError

from core.errors import InvalidPayload
from job_queue.fingerprint import DEFAULT_TEXT_PREFIX, fingerprint_for
from job_queue.message_queue import JobQueue
from models.schemas import (
    PAYLOAD_TYPES, CourseRef, EnqueueResult, Job, JobCategory, LessonRef, utcnow,
)

logger = structlog.get_logger()


class DeduplicatingEnqueuer:

    def __init__(
        self,
        queue: JobQueue,
        max_retries: int = 3,
        text_prefix_length: int = DEFAULT_TEXT_PREFIX,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.max_retries = max_retries
        self.text_prefix_length = text_prefix_length
        self._clock = clock

    def _validate(
        self, category: JobCategory, payload: Union[BaseModel, Mapping[str, Any]],
    ) -> BaseModel:
        model = PAYLOAD_TYPES[category]
        if isinstance(payload, model):
            return payload
        if isinstance(payload, BaseModel):
            raise InvalidPayload(
                f"{type(payload).__name__} is not a {category.value} payload",
                category=category.value,
            )
        data = {**dict(payload or {}), "category": category.value}
        try:
            return model.model_validate(data)
        except ValidationError as e:
            missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise InvalidPayload(
                f"Invalid {category.value} payload: {', '.join(missing)}",
                category=category.value,
                missing=missing,
            ) from e

    async def enqueue(
        self,
        category: Union[JobCategory, str],
        payload: Union[BaseModel, Mapping[str, Any]],
        scheduled_at: Optional[datetime] = None,
    ) -> EnqueueResult:
        """
        Validate, fingerprint and insert a job. Raises InvalidPayload when the
        payload does not satisfy its category.
        """
        try:
            category = JobCategory(category)
        except ValueError as e:
            raise InvalidPayload(f"Unknown category {category!r}", category=str(category)) from e

        typed = self._validate(category, payload)
        fingerprint = fingerprint_for(typed, self.text_prefix_length)
        now = self._clock()
        job = Job(
            fingerprint=fingerprint,
            category=category,
            payload=typed,
            max_retries=self.max_retries,
            scheduled_at=scheduled_at or now,
            created_at=now,
            schedule_id=getattr(typed, "schedule_id", None),
        )

        accepted = await self.queue.add(job)
        if not accepted:
            logger.info("enqueue_duplicate",
                        category=category.value,
                        fingerprint=fingerprint)
            return EnqueueResult(accepted=False, fingerprint=fingerprint)
        return EnqueueResult(accepted=True, job_ref=job.id, fingerprint=fingerprint)

    # ── convenience wrappers ──

    async def enqueue_lesson(
        self, recipient: str, course: CourseRef, lesson: LessonRef,
        lesson_index: int = 0, schedule_id: str = None,
    ) -> EnqueueResult:
        return await self.enqueue(JobCategory.LESSON, dict(
            recipient=recipient, course=course, lesson=lesson,
            lesson_index=lesson_index, schedule_id=schedule_id,
        ))

    async def enqueue_reminder(
        self, recipient: str, course: CourseRef, lesson: LessonRef,
        lesson_index: int = 0, lead_time_text: str = "2 hours", schedule_id: str = None,
    ) -> EnqueueResult:
        return await self.enqueue(JobCategory.REMINDER, dict(
            recipient=recipient, course=course, lesson=lesson,
            lesson_index=lesson_index, lead_time_text=lead_time_text,
            schedule_id=schedule_id,
        ))

    async def enqueue_notification(
        self, recipient: str, course: CourseRef, schedule_id: str = None,
    ) -> EnqueueResult:
        return await self.enqueue(JobCategory.NOTIFICATION, dict(
            recipient=recipient, course=course, schedule_id=schedule_id,
        ))

    async def enqueue_welcome(self, recipient: str, display_name: str) -> EnqueueResult:
        return await self.enqueue(JobCategory.WELCOME, dict(
            recipient=recipient, display_name=display_name,
        ))

    async def enqueue_text(
        self, recipient: str, content: str, reply_to: str = None,
    ) -> EnqueueResult:
        return await self.enqueue(JobCategory.TEXT, dict(
            recipient=recipient, content=content, reply_to=reply_to,
        ))
