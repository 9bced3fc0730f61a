"""Task execution plus the queue consumer, dead-letter retry and stats."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import ValidationError

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.schemas.tasks import AIAgentTask, MediaTask, TaskEnvelope
from app.services.agent_service import AgentClient, respond
from app.services.media_service import materialize
from app.services.object_storage import get_media_storage
from app.services.provider_client import ProviderClient
from app.services.task_queue import (
    AI_AGENT_QUEUE,
    DEAD_LETTER_QUEUE,
    LAST_RETRY_KEY,
    LAST_RUN_KEY,
    MEDIA_QUEUE,
    PERMANENT_FAIL_QUEUE,
    QUEUE_BY_KIND,
    RedisTaskQueue,
    TaskRunner,
)

logger = get_logger("queue_worker")

DLQ_WARNING_THRESHOLD = 100
DLQ_CRITICAL_THRESHOLD = 500


async def run_envelope(
    envelope: TaskEnvelope,
    *,
    session_factory=SessionLocal,
    provider: Optional[ProviderClient] = None,
    agent: Optional[AgentClient] = None,
    storage=None,
    sleep_func=asyncio.sleep,
) -> bool:
    """Run one task with its own session. False means the task should be retried."""
    db = session_factory()
    try:
        task = envelope.task()
        provider = provider or ProviderClient()
        if isinstance(task, MediaTask):
            # A media row settled as failed is terminal; nothing left to retry.
            await materialize(db, task, provider, storage or get_media_storage(), sleep_func=sleep_func)
            return True
        result = await respond(db, task, agent or AgentClient(), provider, sleep_func=sleep_func)
        return result.ok
    except Exception as e:
        db.rollback()
        logger.exception(
            "Task execution failed",
            extra={"context": {"kind": envelope.kind, "error": str(e)}},
        )
        return False
    finally:
        db.close()


def _parse(raw: str) -> Optional[TaskEnvelope]:
    try:
        return TaskEnvelope.model_validate_json(raw)
    except ValidationError:
        return None


async def _drain(
    queue: RedisTaskQueue,
    queue_name: str,
    limit: int,
    runner: TaskRunner,
    max_attempts: int,
) -> tuple[int, int]:
    processed = failed = 0
    for raw in await queue.peek(queue_name, limit):
        envelope = _parse(raw)
        if envelope is None:
            await queue.remove(queue_name, raw)
            await queue.push_raw(DEAD_LETTER_QUEUE, raw)
            failed += 1
            logger.error("Malformed queue item moved to DLQ", extra={"context": {"queue": queue_name}})
            continue

        ok = await runner(envelope)
        await queue.remove(queue_name, raw)
        if ok:
            processed += 1
            continue

        failed += 1
        envelope.attempts += 1
        envelope.error = "Task execution failed"
        if envelope.attempts >= max_attempts:
            envelope.failed_at = datetime.now(timezone.utc)
            await queue.push(envelope, DEAD_LETTER_QUEUE)
            logger.warning(
                "Task moved to DLQ",
                extra={"context": {"queue": queue_name, "attempts": envelope.attempts}},
            )
        else:
            await queue.push(envelope, queue_name)
    return processed, failed


def merge_batch(items: list[str]) -> Optional[AIAgentTask]:
    """One AI task answering every batched message; the newest message is the reply target."""
    tasks = []
    for raw in items:
        envelope = _parse(raw)
        if envelope is not None and envelope.kind == "ai-agent":
            tasks.append(envelope.task())
    if not tasks:
        return None
    contents = [task.message_content for task in tasks if task.message_content]
    return tasks[-1].model_copy(update={"message_content": "\n".join(contents)})


async def flush_ai_batches(
    queue: RedisTaskQueue,
    *,
    window_seconds: Optional[float] = None,
    now: Optional[datetime] = None,
) -> int:
    """Turn conversation batches quiet for the debounce window into AI queue tasks."""
    now = now or datetime.now(timezone.utc)
    window = timedelta(seconds=settings.ai_batch_seconds if window_seconds is None else window_seconds)
    flushed = 0
    for conversation_id in await queue.pending_batches():
        updated_at = await queue.batch_updated_at(conversation_id)
        if updated_at is not None and now - updated_at < window:
            continue
        if not await queue.acquire_batch_lock(conversation_id):
            continue
        try:
            items = await queue.take_batch(conversation_id)
            task = merge_batch(items)
            if task is None:
                continue
            await queue.push(TaskEnvelope.wrap(task))
            flushed += 1
            logger.info(
                "AI batch flushed",
                extra={"context": {"conversation_id": conversation_id, "messages": len(items)}},
            )
        finally:
            await queue.release_batch_lock(conversation_id)
    return flushed


async def process_queues(
    queue: RedisTaskQueue,
    *,
    media_limit: Optional[int] = None,
    ai_limit: Optional[int] = None,
    max_attempts: Optional[int] = None,
    batch_window_seconds: Optional[float] = None,
    runner: TaskRunner = run_envelope,
) -> dict:
    """Consume one batch from the media and AI queues, flushing settled AI batches first."""
    started = time.monotonic()
    max_attempts = max_attempts or settings.queue_max_attempts
    media_processed, media_failed = await _drain(
        queue,
        MEDIA_QUEUE,
        settings.queue_media_batch_size if media_limit is None else media_limit,
        runner,
        max_attempts,
    )
    ai_batches_flushed = await flush_ai_batches(queue, window_seconds=batch_window_seconds)
    ai_processed, ai_failed = await _drain(
        queue,
        AI_AGENT_QUEUE,
        settings.queue_ai_batch_size if ai_limit is None else ai_limit,
        runner,
        max_attempts,
    )
    results = {
        "media_processed": media_processed,
        "media_failed": media_failed,
        "ai_processed": ai_processed,
        "ai_failed": ai_failed,
        "ai_batches_flushed": ai_batches_flushed,
    }
    await queue.incr_stats(results)
    await queue.mark(LAST_RUN_KEY)
    results["duration_ms"] = int((time.monotonic() - started) * 1000)
    return results


async def retry_dead_letters(
    queue: RedisTaskQueue,
    *,
    limit: Optional[int] = None,
    max_age_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Requeue recent DLQ items with a fresh attempt budget; park stale ones for good."""
    now = now or datetime.now(timezone.utc)
    limit = settings.queue_retry_batch_size if limit is None else limit
    max_age = timedelta(seconds=settings.queue_dlq_max_age_seconds if max_age_seconds is None else max_age_seconds)
    requeued = permanent_failed = 0

    for raw in await queue.peek(DEAD_LETTER_QUEUE, limit):
        await queue.remove(DEAD_LETTER_QUEUE, raw)
        envelope = _parse(raw)
        if envelope is None:
            await queue.push_raw(PERMANENT_FAIL_QUEUE, raw)
            permanent_failed += 1
            continue

        failed_at = envelope.failed_at or envelope.enqueued_at
        if now - failed_at > max_age:
            envelope.permanent_failed_at = now
            envelope.reason = "Exceeded max DLQ age"
            await queue.push(envelope, PERMANENT_FAIL_QUEUE)
            permanent_failed += 1
            continue

        envelope.attempts = 0
        envelope.requeued_at = now
        envelope.requeued_from = "dlq"
        await queue.push(envelope, QUEUE_BY_KIND[envelope.kind])
        requeued += 1

    await queue.incr_stats({"retry_requeued": requeued, "retry_permanent_fail": permanent_failed})
    await queue.mark(LAST_RETRY_KEY)
    logger.info(
        "DLQ retry finished",
        extra={"context": {"requeued": requeued, "permanent_failed": permanent_failed}},
    )
    return {"requeued": requeued, "permanent_failed": permanent_failed}


def dlq_health(dlq_length: int) -> str:
    if dlq_length > DLQ_CRITICAL_THRESHOLD:
        return "critical"
    if dlq_length > DLQ_WARNING_THRESHOLD:
        return "warning"
    return "healthy"


async def queue_stats(queue: RedisTaskQueue) -> dict:
    queues = {
        "media": await queue.length(MEDIA_QUEUE),
        "ai_agent": await queue.length(AI_AGENT_QUEUE),
        "dlq": await queue.length(DEAD_LETTER_QUEUE),
        "permanent_fail": await queue.length(PERMANENT_FAIL_QUEUE),
    }
    return {
        "queues": queues,
        "stats": await queue.stats(),
        "last_run": await queue.read_mark(LAST_RUN_KEY),
        "last_retry": await queue.read_mark(LAST_RETRY_KEY),
        "health": dlq_health(queues["dlq"]),
    }
