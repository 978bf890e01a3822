"""
Job fingerprints — the deterministic identity used to deduplicate sends.

Formats are stable; changing them breaks dedup against jobs already queued:
    lesson / reminder   {course_id}:{lesson_id}:{recipient}
    notification        {course_id}:{recipient}
    welcome             {display_name}:{recipient}
    text                {first N chars of content}:{recipient}
"""
from __future__ import annotations

from pydantic import BaseModel

from models.schemas import (
    LessonPayload, NotificationPayload, ReminderPayload, TextPayload, WelcomePayload,
)

DEFAULT_TEXT_PREFIX = 32


def lesson_fingerprint(course_id: str, lesson_id: str, recipient: str) -> str:
    return f"{course_id}:{lesson_id}:{recipient}"


def notification_fingerprint(course_id: str, recipient: str) -> str:
    return f"{course_id}:{recipient}"


def welcome_fingerprint(display_name: str, recipient: str) -> str:
    return f"{display_name}:{recipient}"


def text_fingerprint(content: str, recipient: str, prefix_length: int = DEFAULT_TEXT_PREFIX) -> str:
    return f"{content[:prefix_length]}:{recipient}"


def fingerprint_for(payload: BaseModel, text_prefix_length: int = DEFAULT_TEXT_PREFIX) -> str:
    """Fingerprint of a validated, typed payload."""
    if isinstance(payload, (LessonPayload, ReminderPayload)):
        return lesson_fingerprint(payload.course.id, payload.lesson.id, payload.recipient)
    if isinstance(payload, NotificationPayload):
        return notification_fingerprint(payload.course.id, payload.recipient)
    if isinstance(payload, WelcomePayload):
        return welcome_fingerprint(payload.display_name, payload.recipient)
    if isinstance(payload, TextPayload):
        return text_fingerprint(payload.content, payload.recipient, text_prefix_length)
    raise TypeError(f"No fingerprint shape for {type(payload).__name__}")

