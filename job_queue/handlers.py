"""
Delivery Handlers — what a worker does with a job of each category.

  lesson        new_lesson template → (pause) → document, media, link, quiz list
  reminder      lesson_reminder template
  notification  new_course template → cover image
  welcome       welcome_message template
  text          plain text

Every successful provider call is logged as an outgoing MessageRecord with
status `sent`. Sends that learners can reply to (lesson, course announcement,
quiz) also store a MessageContext so the reconciler can resolve the reply.

A failure part-way through a lesson raises like any other; the retry starts
the lesson again from the template, so parts already sent go out twice.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import structlog

from channels.base import DeliveryClient, SendResult
from core.errors import InvalidPayload
from database.store_base import BaseStore
from models.schemas import (
    Job, JobCategory, LessonPayload, MessageContext, MessageContextRefs, MessageDirection,
    MessageRecord, MessageStatus, NotificationPayload, ReminderPayload, TextPayload,
    WelcomePayload, utcnow,
)

logger = structlog.get_logger()

Handler = Callable[[Job], Awaitable[None]]


class DeliveryHandlers:
    """Category handlers sharing one delivery client and one store."""

    TEMPLATE_LESSON = "new_lesson"
    TEMPLATE_REMINDER = "lesson_reminder"
    TEMPLATE_COURSE = "new_course"
    TEMPLATE_WELCOME = "welcome_message"

    def __init__(
        self,
        client: DeliveryClient,
        store: BaseStore,
        language: str = "tr",
        attachment_delay_seconds: float = 60.0,
        context_ttl_hours: int = 184,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.store = store
        self.language = language
        self.attachment_delay_seconds = attachment_delay_seconds
        self.context_ttl = timedelta(hours=context_ttl_hours)
        self._clock = clock
        self._handlers: dict[JobCategory, Handler] = {
            JobCategory.LESSON: self.deliver_lesson,
            JobCategory.REMINDER: self.deliver_reminder,
            JobCategory.NOTIFICATION: self.deliver_notification,
            JobCategory.WELCOME: self.deliver_welcome,
            JobCategory.TEXT: self.deliver_text,
        }

    def for_category(self, category: JobCategory) -> Handler:
        return self._handlers[category]

    async def __call__(self, job: Job) -> None:
        await self.for_category(job.category)(job)

    # ── Bookkeeping ───────────────────────────────────────────

    async def _record(
        self,
        result: SendResult,
        recipient: str,
        body: str,
        category: JobCategory,
        course_id: str = None,
        lesson_id: str = None,
        quiz_id: str = None,
        message_type: str = None,
    ) -> None:
        now = self._clock()
        await self.store.add_message(MessageRecord(
            provider_message_id=result.provider_message_id,
            direction=MessageDirection.OUTGOING,
            recipient=self.client.normalize_recipient(recipient),
            body=body,
            message_type=message_type or result.message_type,
            category=category,
            status=MessageStatus.SENT,
            context=MessageContextRefs(course_id=course_id, lesson_id=lesson_id, quiz_id=quiz_id),
            created_at=now,
            updated_at=now,
        ))

    async def _remember(self, result: SendResult, recipient: str, course_id: str, **fields) -> None:
        now = self._clock()
        await self.store.save_context(MessageContext(
            provider_message_id=result.provider_message_id,
            recipient=self.client.normalize_recipient(recipient),
            course_id=course_id,
            created_at=now,
            expires_at=now + self.context_ttl,
            **fields,
        ))

    @staticmethod
    def _payload(job: Job, expected: type):
        if not isinstance(job.payload, expected):
            raise InvalidPayload(
                f"Job {job.id} carries {type(job.payload).__name__}, expected {expected.__name__}",
                category=job.category.value,
            )
        return job.payload

    # ── Categories ────────────────────────────────────────────

    async def deliver_lesson(self, job: Job) -> None:
        p: LessonPayload = self._payload(job, LessonPayload)
        course, lesson, to = p.course, p.lesson, p.recipient
        refs = dict(course_id=course.id, lesson_id=lesson.id)

        result = await self.client.send_template(
            to, self.TEMPLATE_LESSON, self.language,
            header_text=lesson.title,
            body_params=[lesson.content or lesson.title],
            quick_reply_payload=f"{self.TEMPLATE_LESSON}_0",
        )
        await self._record(result, to, f"{lesson.title} {lesson.content}".strip(), job.category, **refs)
        await self._remember(result, to, course.id, lesson_id=lesson.id)

        has_attachments = any((lesson.document, lesson.media, lesson.external_link, lesson.quiz))
        if has_attachments and self.attachment_delay_seconds > 0:
            await asyncio.sleep(self.attachment_delay_seconds)

        if lesson.document:
            result = await self.client.send_document(to, lesson.document)
            await self._record(result, to, lesson.document, job.category, **refs)

        if lesson.media:
            if lesson.media.lower().endswith(".mp4"):
                result = await self.client.send_video(to, lesson.media)
            else:
                result = await self.client.send_image(to, lesson.media)
            await self._record(result, to, lesson.media, job.category, **refs)

        if lesson.external_link:
            result = await self.client.send_text(to, lesson.external_link, preview_url=True)
            await self._record(result, to, lesson.external_link, job.category, **refs)

        if lesson.quiz:
            quiz = lesson.quiz
            result = await self.client.send_interactive_list(to, quiz.question, quiz.options)
            await self._record(result, to, quiz.question, job.category,
                               quiz_id=quiz.id, message_type="quiz", **refs)
            await self._remember(
                result, to, course.id,
                lesson_id=lesson.id,
                quiz_id=quiz.id,
                question=quiz.question,
                quiz_options=list(quiz.options),
                correct_option=quiz.correct_option,
            )

        logger.info("lesson_delivered",
                    job_id=job.id,
                    recipient=to,
                    course_id=course.id,
                    lesson_id=lesson.id)

    async def deliver_reminder(self, job: Job) -> None:
        p: ReminderPayload = self._payload(job, ReminderPayload)
        result = await self.client.send_template(
            p.recipient, self.TEMPLATE_REMINDER, self.language,
            header_text=p.lesson.title,
            body_params=[p.course.name, str(p.lesson_index + 1), p.lead_time_text],
            quick_reply_payload=f"{self.TEMPLATE_REMINDER}_0",
        )
        await self._record(result, p.recipient, f"{p.lesson.title} {p.course.name}",
                           job.category, course_id=p.course.id, lesson_id=p.lesson.id)

    async def deliver_notification(self, job: Job) -> None:
        p: NotificationPayload = self._payload(job, NotificationPayload)
        course = p.course
        result = await self.client.send_template(
            p.recipient, self.TEMPLATE_COURSE, self.language,
            header_text=course.name,
            body_params=[course.description or course.name],
            quick_reply_payload=f"{self.TEMPLATE_COURSE}_0",
        )
        await self._record(result, p.recipient, f"{course.name} {course.description}".strip(),
                           job.category, course_id=course.id)
        await self._remember(result, p.recipient, course.id)

        if course.cover_image:
            result = await self.client.send_image(p.recipient, course.cover_image)
            await self._record(result, p.recipient, course.cover_image, job.category,
                               course_id=course.id)

    async def deliver_welcome(self, job: Job) -> None:
        p: WelcomePayload = self._payload(job, WelcomePayload)
        result = await self.client.send_template(
            p.recipient, self.TEMPLATE_WELCOME, self.language,
            body_params=[p.display_name],
        )
        await self._record(result, p.recipient, p.display_name, job.category)

    async def deliver_text(self, job: Job) -> None:
        p: TextPayload = self._payload(job, TextPayload)
        result = await self.client.send_text(p.recipient, p.content)
        await self._record(result, p.recipient, p.content, job.category)
