import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger, setup_logging
from app.routers import queue, webhook
from app.services.queue_worker import process_queues
from app.services.task_queue import build_task_queue

setup_logging(settings.log_level)

app = FastAPI(
    title="WhatsApp Inbox Ingest",
    description="Inbound WhatsApp webhook ingestion for the shared inbox",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(queue.router)

app.state.task_queue = None

worker_logger = get_logger("queue_consumer")
_queue_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_queue_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("QUEUE_WORKER_ENABLED"), default=settings.queue_worker_enabled)


async def _queue_worker_loop() -> None:
    interval_seconds = max(settings.queue_worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            task_queue = app.state.task_queue
            if task_queue is None:
                continue
            results = await process_queues(task_queue)
            if results["media_processed"] or results["media_failed"] or results["ai_processed"] or results["ai_failed"]:
                worker_logger.info("Queue worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Queue worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_queue_worker() -> None:
    global _queue_worker_task
    if app.state.task_queue is None:
        app.state.task_queue = build_task_queue(settings.redis_url, settings.redis_socket_timeout_seconds)
    if app.state.task_queue is None or not _is_queue_worker_enabled():
        return
    if _queue_worker_task is None or _queue_worker_task.done():
        _queue_worker_task = asyncio.create_task(_queue_worker_loop())
        worker_logger.info("Queue worker started")


@app.on_event("shutdown")
async def stop_queue_worker() -> None:
    global _queue_worker_task
    if _queue_worker_task is not None:
        _queue_worker_task.cancel()
        try:
            await _queue_worker_task
        except asyncio.CancelledError:
            pass
        _queue_worker_task = None
    if app.state.task_queue is not None:
        await app.state.task_queue.close()
        app.state.task_queue = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
