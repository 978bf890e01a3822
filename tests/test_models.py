"""Tests for data models: status lifecycle, tagged payloads and job serialization."""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from models.schemas import (
    ContentEvent, Job, JobCategory, JobPayload, JobState, LessonCursor, LessonPayload,
    MessageStatus, TextPayload, is_forward_transition, status_predecessors,
)


class TestStatusLifecycle:
    @pytest.mark.parametrize("current,new", [
        (MessageStatus.SENT, MessageStatus.DELIVERED),
        (MessageStatus.SENT, MessageStatus.READ),
        (MessageStatus.DELIVERED, MessageStatus.READ),
        (MessageStatus.SENT, MessageStatus.FAILED),
        (MessageStatus.DELIVERED, MessageStatus.FAILED),
    ])
    def test_forward(self, current, new):
        assert is_forward_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (MessageStatus.READ, MessageStatus.DELIVERED),
        (MessageStatus.DELIVERED, MessageStatus.SENT),
        (MessageStatus.READ, MessageStatus.FAILED),
        (MessageStatus.FAILED, MessageStatus.READ),
        (MessageStatus.READ, MessageStatus.READ),
        (MessageStatus.RECEIVED, MessageStatus.READ),
    ])
    def test_not_forward(self, current, new):
        assert not is_forward_transition(current, new)

    def test_predecessors(self):
        assert status_predecessors(MessageStatus.READ) == {MessageStatus.SENT, MessageStatus.DELIVERED}
        assert status_predecessors(MessageStatus.SENT) == set()


class TestJobStates:
    def test_terminal(self):
        assert JobState.COMPLETED.is_terminal
        assert JobState.EXHAUSTED.is_terminal
        assert JobState.RETRY_PENDING.is_live
        assert not JobState.IN_FLIGHT.is_terminal


class TestPayloads:
    def test_discriminated_on_category(self):
        adapter = TypeAdapter(JobPayload)
        payload = adapter.validate_python({"category": "text", "recipient": "15550001", "content": "hi"})
        assert isinstance(payload, TextPayload)

    def test_missing_lesson_fields(self):
        with pytest.raises(ValidationError):
            LessonPayload(recipient="15550001")

    def test_blank_recipient_rejected(self):
        with pytest.raises(ValidationError):
            TextPayload(recipient="", content="hi")

    def test_job_json_roundtrip_keeps_payload_type(self, course, lessons):
        job = Job(
            fingerprint="C1:L1:+15550001",
            category=JobCategory.LESSON,
            payload=LessonPayload(recipient="+15550001", course=course, lesson=lessons[0]),
            schedule_id="S1",
        )
        restored = Job.from_json(job.to_json())
        assert isinstance(restored.payload, LessonPayload)
        assert restored.payload.lesson.quiz.options == ["A list", "A tuple", "A dict"]
        assert restored.scheduled_at == job.scheduled_at
        assert restored.state == JobState.QUEUED


class TestCursor:
    def test_lease_active(self):
        now = datetime(2025, 3, 3, tzinfo=timezone.utc)
        cursor = LessonCursor(schedule_id="S1")
        assert not cursor.lease_active(now)

        cursor.lease_owner = "node-a"
        cursor.lease_expires_at = now + timedelta(seconds=30)
        assert cursor.lease_active(now)
        assert not cursor.lease_active(now + timedelta(minutes=1))


class TestContentEvent:
    def test_button_reply_detection(self):
        assert ContentEvent(sender="1", provider_message_id="m", type="interactive",
                            button_reply_id="option_0").is_button_reply
        assert not ContentEvent(sender="1", provider_message_id="m", type="text",
                                body="option_0").is_button_reply
        assert not ContentEvent(sender="1", provider_message_id="m", type="button").is_button_reply
