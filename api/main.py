"""
FastAPI Application — webhook ingestion and operator endpoints.

Provides:
- WhatsApp webhook handshake and event ingestion
- Queue inspection (per-category state counts, recent / exhausted jobs)
- Schedule registration, suspend and resume
- On-demand retention sweep
- Health diagnostics

The lifespan wires store → queue → enqueuer → handlers → worker pool →
scheduler → sweeper → inbound dispatcher, and tears them down in reverse.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from channels.whatsapp_adapter import WhatsAppClient
from config.settings import get_settings
from core.engine import ReplyEngine
from core.errors import WebhookAuthError
from core.logging import configure_logging
from database.session import close_db, init_db
from database.store_factory import create_store
from job_queue.consumer import WorkerPool
from job_queue.enqueuer import DeduplicatingEnqueuer
from job_queue.handlers import DeliveryHandlers
from job_queue.message_queue import create_job_queue
from maintenance.retention import RetentionSweeper
from models.schemas import CourseSchedule, JobCategory, JobState, utcnow
from scheduler.lesson_scheduler import CourseScheduler
from webhooks.reconciler import InboundDispatcher, InboundReconciler, verify_subscription

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()
configure_logging(settings.debug)

store = create_store({"store_backend": settings.database.store_backend})
job_queue = create_job_queue({
    "backend": settings.queue.backend,
    "redis_url": settings.queue.redis_url,
    "key_prefix": settings.queue.key_prefix,
    "rate_limit_per_second": settings.queue.rate_limit_per_second,
    "retry_backoff_base": settings.queue.retry_backoff_base,
    "history_limit": settings.queue.history_limit,
    "visibility_timeout": settings.queue.visibility_timeout,
})
enqueuer = DeduplicatingEnqueuer(
    job_queue,
    max_retries=settings.queue.max_retries,
    text_prefix_length=settings.fingerprint.text_prefix_length,
)

whatsapp_client = WhatsAppClient(settings.whatsapp)
reply_engine = ReplyEngine(settings.llm)

delivery_handlers = DeliveryHandlers(
    whatsapp_client, store,
    language=settings.whatsapp.language,
    attachment_delay_seconds=settings.workers.attachment_delay_seconds,
    context_ttl_hours=settings.retention.context_retention_hours,
)
worker_pool = WorkerPool(
    job_queue, delivery_handlers,
    categories=settings.workers.categories,
    concurrency=settings.workers.concurrency,
    poll_interval=settings.queue.poll_interval,
)
course_scheduler = CourseScheduler(
    store, enqueuer,
    timezone=settings.scheduler.timezone,
    lease_seconds=settings.scheduler.lease_seconds,
    language=settings.whatsapp.language,
    reminder_lead_hours=settings.scheduler.reminder_lead_hours,
)
sweeper = RetentionSweeper(job_queue, store, settings.retention)

reconciler = InboundReconciler(store, enqueuer, reply_engine, whatsapp_client)
inbound_dispatcher = InboundDispatcher(reconciler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database.store_backend == "sql":
        await init_db(settings.database.url)

    await job_queue.connect()
    await worker_pool.start()
    await inbound_dispatcher.start()
    await course_scheduler.start()
    sweeper.attach(course_scheduler.aps)

    logger.info("lessonrelay_started",
                queue_backend=type(job_queue).__name__,
                store_backend=type(store).__name__,
                categories=settings.workers.categories)
    yield

    await course_scheduler.shutdown()
    await inbound_dispatcher.stop()
    await worker_pool.stop()
    await job_queue.close()
    await whatsapp_client.close()
    await store.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("lessonrelay_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="LessonRelay API",
    description="Scheduled lesson and quiz delivery over WhatsApp",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "queue_backend": type(job_queue).__name__,
        "store_backend": type(store).__name__,
        "delivery": await whatsapp_client.health_check(),
        "workers": worker_pool.stats(),
        "inbound": inbound_dispatcher.stats(),
    }


# ══════════════════════════════════════════════════════════════
#  QUEUES
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/queues/stats")
async def queue_stats():
    return {
        "jobs": await job_queue.stats(),
        "workers": worker_pool.stats(),
    }


@app.get("/api/v1/queues/{category}/jobs")
async def list_jobs(
    category: JobCategory,
    state: Optional[JobState] = None,
    limit: Optional[int] = Query(None, ge=1, le=500),
):
    """Jobs in one category. Terminal states default to the retained history window."""
    if state is not None and state.is_terminal and limit is None:
        jobs = await job_queue.recent(category, state)
    else:
        jobs = await job_queue.list_jobs(category, state, limit=limit or 100)
    return {
        "category": category.value,
        "state": state.value if state else None,
        "jobs": [j.model_dump(mode="json") for j in jobs],
    }


# ══════════════════════════════════════════════════════════════
#  SCHEDULES
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/schedules")
async def register_schedule(schedule: CourseSchedule, announce: bool = True):
    try:
        registered = await course_scheduler.register(schedule, announce=announce)
    except ValueError as e:
        raise HTTPException(422, str(e))
    return {
        "schedule": registered.model_dump(mode="json"),
        "next_run_time": _iso(course_scheduler.next_run_time(registered.id)),
    }


@app.get("/api/v1/schedules/{schedule_id}")
async def get_schedule(schedule_id: str):
    schedule = await store.get_schedule(schedule_id)
    if schedule is None:
        raise HTTPException(404, "Schedule not found")
    cursor = await store.get_cursor(schedule_id)
    return {
        "schedule": schedule.model_dump(mode="json"),
        "cursor": cursor.model_dump(mode="json") if cursor else None,
        "next_run_time": _iso(course_scheduler.next_run_time(schedule_id)),
    }


@app.post("/api/v1/schedules/{schedule_id}/suspend")
async def suspend_schedule(schedule_id: str):
    try:
        schedule = await course_scheduler.suspend(schedule_id)
    except KeyError:
        raise HTTPException(404, "Schedule not found")
    return {"schedule_id": schedule_id, "state": schedule.state.value}


@app.post("/api/v1/schedules/{schedule_id}/resume")
async def resume_schedule(schedule_id: str):
    try:
        schedule = await course_scheduler.resume(schedule_id)
    except KeyError:
        raise HTTPException(404, "Schedule not found")
    return {"schedule_id": schedule_id, "state": schedule.state.value}


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


# ══════════════════════════════════════════════════════════════
#  MAINTENANCE
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/maintenance/sweep")
async def run_sweep():
    report = await sweeper.sweep()
    return report.to_dict()


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp
# ══════════════════════════════════════════════════════════════

@app.get("/webhooks/whatsapp")
async def whatsapp_verify(request: Request):
    params = request.query_params
    try:
        challenge = verify_subscription(
            whatsapp_client,
            params.get("hub.mode", ""),
            params.get("hub.verify_token", ""),
            params.get("hub.challenge", ""),
        )
    except WebhookAuthError:
        raise HTTPException(403, "Verification failed")
    return PlainTextResponse(challenge)


@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    """Accept provider events. Always 200; processing happens in the background."""
    body_bytes = await request.body()

    signature = request.headers.get("X-Hub-Signature-256", "")
    if not whatsapp_client.verify_signature(body_bytes, signature):
        logger.warning("whatsapp_webhook_signature_invalid")
        return {"status": "accepted"}

    try:
        body: Any = json.loads(body_bytes or b"{}")
    except ValueError:
        logger.warning("whatsapp_webhook_body_invalid", size=len(body_bytes))
        return {"status": "accepted"}

    if isinstance(body, dict):
        inbound_dispatcher.submit(body)
    return {"status": "accepted"}


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
