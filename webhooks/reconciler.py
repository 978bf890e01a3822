"""
Inbound Reconciler — matches provider webhook events to what we sent.

Status events move an outgoing MessageRecord forward (sent → delivered →
read, or → failed). Content events are logged as incoming records and
answered through the text queue:

    button / list reply with a quiz context   → quiz feedback
    anything else (incl. unknown context)     → AI reply from recent history

The webhook endpoint never waits on this work. Payloads go through an
InboundDispatcher: a bounded asyncio queue drained by a few ingest workers,
each payload retried with tenacity before it is logged and dropped.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from channels.base import option_index
from channels.whatsapp_adapter import WhatsAppClient
from core.engine import ReplyEngine
from core.errors import ReconciliationMiss, WebhookAuthError
from database.store_base import BaseStore
from job_queue.enqueuer import DeduplicatingEnqueuer
from models.schemas import (
    ContentEvent, EnqueueResult, MessageContext, MessageContextRefs, MessageDirection,
    MessageRecord, MessageStatus, StatusEvent, utcnow,
)

logger = structlog.get_logger()


def verify_subscription(client: WhatsAppClient, mode: str, token: str, challenge: str) -> str:
    """Return the challenge for a valid handshake, raise WebhookAuthError otherwise."""
    echoed = client.verify_webhook(mode, token, challenge)
    if echoed is None:
        logger.warning("webhook_verification_failed", mode=mode)
        raise WebhookAuthError("Webhook verification failed")
    logger.info("webhook_verified")
    return echoed


def _norm(text: Optional[str]) -> str:
    return " ".join((text or "").split()).casefold()


def resolve_quiz_answer(context: MessageContext, event: ContentEvent) -> tuple[str, bool]:
    """
    Work out which option the learner picked and whether it is correct.
    Row ids (option_N) are authoritative; otherwise the title is compared,
    allowing for titles shortened to fit the list row.
    """
    idx = option_index(event.button_reply_id)
    if idx is not None and 0 <= idx < len(context.quiz_options):
        chosen = context.quiz_options[idx]
    else:
        chosen = event.button_reply_title or event.body

    correct = _norm(context.correct_option)
    picked = _norm(chosen)
    if not correct:
        return chosen, False
    if picked == correct:
        return chosen, True
    if picked.endswith("..") and len(picked) > 2 and correct.startswith(picked[:-2]):
        return chosen, True
    return chosen, False


class InboundReconciler:
    """Applies parsed webhook events to the message log and queues replies."""

    def __init__(
        self,
        store: BaseStore,
        enqueuer: DeduplicatingEnqueuer,
        engine: ReplyEngine,
        client: WhatsAppClient,
        history_limit: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.enqueuer = enqueuer
        self.engine = engine
        self.client = client
        self.history_limit = history_limit
        self._clock = clock

    async def process_payload(self, body: dict[str, Any]) -> dict[str, int]:
        """Parse one webhook body and handle every event in it."""
        statuses, contents = self.client.parse_webhook(body)
        applied = 0
        replies = 0
        for event in statuses:
            applied += int(await self.handle_status(event))
        for event in contents:
            result = await self.handle_content(event)
            replies += int(bool(result and result.accepted))
        return {
            "statuses": len(statuses),
            "statuses_applied": applied,
            "messages": len(contents),
            "replies_enqueued": replies,
        }

    # ── Status events ─────────────────────────────────────────

    async def handle_status(self, event: StatusEvent) -> bool:
        """Apply a delivery status. Returns True when the record moved forward."""
        try:
            status = MessageStatus(event.status)
        except ValueError:
            logger.info("status_unrecognized",
                        provider_message_id=event.provider_message_id,
                        status=event.status)
            return False

        try:
            moved = await self.store.update_status_forward(
                event.provider_message_id, status, at=event.timestamp or self._clock(),
            )
        except ReconciliationMiss as e:
            logger.warning("status_reconciliation_miss",
                           provider_message_id=e.provider_message_id,
                           status=status.value)
            return False

        if not moved:
            logger.info("status_transition_ignored",
                        provider_message_id=event.provider_message_id,
                        status=status.value)
            return False

        if status == MessageStatus.FAILED:
            logger.warning("delivery_failed_reported",
                           provider_message_id=event.provider_message_id,
                           recipient=event.recipient,
                           errors=event.errors)
        else:
            logger.debug("status_applied",
                         provider_message_id=event.provider_message_id,
                         status=status.value)
        return True

    # ── Content events ────────────────────────────────────────

    async def _resolve_context(self, event: ContentEvent, now: datetime) -> Optional[MessageContext]:
        if event.context_message_id:
            context = await self.store.get_context(event.context_message_id)
            if context and context.expires_at > now:
                return context
        return await self.store.latest_context(event.sender, now)

    async def handle_content(self, event: ContentEvent) -> Optional[EnqueueResult]:
        """
        Log an incoming message and queue the reply. Returns None for a
        provider retry of a message that has already been answered.

        The incoming record is written first and marked with the reply job
        once that is queued. A retry that finds the record unmarked (the
        reply step failed last time) carries on and queues the reply.
        """
        now = self._clock()
        context = await self._resolve_context(event, now) if event.is_button_reply else None

        refs = MessageContextRefs()
        if context:
            refs = MessageContextRefs(
                course_id=context.course_id, lesson_id=context.lesson_id, quiz_id=context.quiz_id,
            )
        logged = await self.store.add_message(MessageRecord(
            provider_message_id=event.provider_message_id,
            direction=MessageDirection.INCOMING,
            recipient=event.sender,
            body=event.body,
            message_type=event.type,
            status=MessageStatus.RECEIVED,
            context=refs,
            created_at=event.timestamp or now,
            updated_at=now,
        ))
        if not logged:
            existing = await self.store.get_message(event.provider_message_id)
            if existing is None or existing.reply_ref:
                logger.info("inbound_duplicate", provider_message_id=event.provider_message_id)
                return None
            logger.info("inbound_reply_resumed", provider_message_id=event.provider_message_id)

        if context and context.quiz_id and context.quiz_options:
            chosen, is_correct = resolve_quiz_answer(context, event)
            reply = await self.engine.quiz_feedback(
                context.question, chosen, context.correct_option, is_correct,
            )
            logger.info("quiz_answered",
                        sender=event.sender,
                        quiz_id=context.quiz_id,
                        correct=is_correct)
        else:
            if event.is_button_reply and context is None:
                logger.info("reply_context_missing",
                            provider_message_id=event.provider_message_id,
                            context_message_id=event.context_message_id)
            history = await self.store.recent_messages(event.sender, limit=self.history_limit)
            reply = await self.engine.reply(history, latest=event.body)

        result = await self.enqueuer.enqueue_text(
            event.sender, reply, reply_to=event.provider_message_id,
        )
        await self.store.mark_replied(event.provider_message_id, result.job_ref or result.fingerprint)
        logger.info("inbound_reply_queued",
                    sender=event.sender,
                    provider_message_id=event.provider_message_id,
                    accepted=result.accepted)
        return result


class InboundDispatcher:
    """
    Background ingestion of webhook payloads.

    Usage:
        dispatcher = InboundDispatcher(reconciler, workers=2)
        await dispatcher.start()
        dispatcher.submit(body)
        await dispatcher.stop()
    """

    def __init__(self, reconciler: InboundReconciler, workers: int = 2, maxsize: int = 1000):
        self.reconciler = reconciler
        self.workers = workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._tasks: list[asyncio.Task] = []
        self.processed = 0
        self.dropped = 0

    def submit(self, body: dict[str, Any]) -> bool:
        """Queue a payload without waiting. False when the backlog is full."""
        try:
            self._queue.put_nowait(body)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error("inbound_backlog_full", backlog=self._queue.qsize())
            return False
        return True

    async def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"inbound_worker_{i}")
            for i in range(self.workers)
        ]
        logger.info("inbound_dispatcher_started", workers=self.workers)

    async def join(self) -> None:
        """Wait until every submitted payload has been handled or dropped."""
        await self._queue.join()

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Let the workers drain the backlog for up to `drain_timeout` seconds, then cancel them."""
        if self._tasks:
            try:
                await asyncio.wait_for(self.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                abandoned = self._queue.qsize()
                self.dropped += abandoned
                logger.error("inbound_backlog_abandoned", abandoned=abandoned)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("inbound_dispatcher_stopped",
                    processed=self.processed, dropped=self.dropped)

    async def _worker(self, worker_id: int) -> None:
        while True:
            body = await self._queue.get()
            try:
                summary = await self._process(body)
                self.processed += 1
                logger.debug("inbound_payload_processed", worker=worker_id, **summary)
            except Exception as e:
                self.dropped += 1
                logger.error("inbound_payload_dropped", worker=worker_id, error=str(e))
            finally:
                self._queue.task_done()

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, max=5), reraise=True)
    async def _process(self, body: dict[str, Any]) -> dict[str, int]:
        return await self.reconciler.process_payload(body)

    def stats(self) -> dict[str, Any]:
        return {
            "backlog": self._queue.qsize(),
            "workers": len(self._tasks),
            "processed": self.processed,
            "dropped": self.dropped,
        }
