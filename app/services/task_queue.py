"""Durable task queue (Redis lists) and the request-side dispatcher.

The dispatcher pushes tasks to Redis when a queue is configured and falls
back to the request's background tasks otherwise, so media and AI work never
delay the webhook response.
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Union

import redis.asyncio as redis_async
from fastapi import BackgroundTasks

from app.logging_config import get_logger
from app.schemas.tasks import AIAgentTask, MediaTask, TaskEnvelope

logger = get_logger("task_queue")

MEDIA_QUEUE = "queue:media"
AI_AGENT_QUEUE = "queue:ai-agent"
DEAD_LETTER_QUEUE = "queue:dlq"
PERMANENT_FAIL_QUEUE = "queue:permanent-fail"
STATS_KEY = "queue:stats"
LAST_RUN_KEY = "queue:stats:last_run"
LAST_RETRY_KEY = "queue:stats:last_retry"
AI_BATCH_PENDING_KEY = "ai-batch:pending"
AI_BATCH_TTL_SECONDS = 300

QUEUE_BY_KIND = {"media": MEDIA_QUEUE, "ai-agent": AI_AGENT_QUEUE}

Task = Union[MediaTask, AIAgentTask]
TaskRunner = Callable[[TaskEnvelope], Awaitable[bool]]


class EnqueueOutcome:
    QUEUED = "queued"
    BACKGROUND = "background"
    DROPPED = "dropped"


class RedisTaskQueue:
    """Thin wrapper over the Redis list operations the queue needs."""

    def __init__(self, client) -> None:
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout_seconds: float = 2.0) -> "RedisTaskQueue":
        client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client)

    async def push(self, envelope: TaskEnvelope, queue_name: Optional[str] = None) -> None:
        await self.client.rpush(queue_name or QUEUE_BY_KIND[envelope.kind], envelope.to_json())

    async def push_raw(self, queue_name: str, raw: str) -> None:
        await self.client.rpush(queue_name, raw)

    async def peek(self, queue_name: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        return await self.client.lrange(queue_name, 0, limit - 1)

    async def remove(self, queue_name: str, raw: str) -> None:
        await self.client.lrem(queue_name, 1, raw)

    async def length(self, queue_name: str) -> int:
        return int(await self.client.llen(queue_name))

    async def incr_stats(self, counters: dict[str, int]) -> None:
        for field, amount in counters.items():
            if amount:
                await self.client.hincrby(STATS_KEY, field, amount)

    async def stats(self) -> dict[str, int]:
        raw = await self.client.hgetall(STATS_KEY) or {}
        return {field: int(value) for field, value in raw.items()}

    async def mark(self, key: str) -> str:
        stamp = datetime.now(timezone.utc).isoformat()
        await self.client.set(key, stamp)
        return stamp

    async def read_mark(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def add_to_batch(self, task: AIAgentTask, ttl_seconds: int = AI_BATCH_TTL_SECONDS) -> int:
        """Append an AI task to its conversation's pending batch; returns the batch size."""
        key = ai_batch_key(task.conversation_id)
        size = await self.client.rpush(key, TaskEnvelope.wrap(task).to_json())
        await self.client.expire(key, ttl_seconds)
        await self.client.set(f"{key}:updated", datetime.now(timezone.utc).isoformat(), ex=ttl_seconds)
        await self.client.sadd(AI_BATCH_PENDING_KEY, str(task.conversation_id))
        return int(size)

    async def pending_batches(self) -> list[str]:
        return sorted(await self.client.smembers(AI_BATCH_PENDING_KEY) or [])

    async def batch_updated_at(self, conversation_id: str) -> Optional[datetime]:
        raw = await self.client.get(f"{ai_batch_key(conversation_id)}:updated")
        return datetime.fromisoformat(raw) if raw else None

    async def acquire_batch_lock(self, conversation_id: str, ttl_seconds: int = AI_BATCH_TTL_SECONDS) -> bool:
        stamp = datetime.now(timezone.utc).isoformat()
        return bool(await self.client.set(f"lock:{ai_batch_key(conversation_id)}", stamp, nx=True, ex=ttl_seconds))

    async def release_batch_lock(self, conversation_id: str) -> None:
        await self.client.delete(f"lock:{ai_batch_key(conversation_id)}")

    async def take_batch(self, conversation_id: str) -> list[str]:
        """Read and clear a conversation's batch. Call only while holding its lock."""
        key = ai_batch_key(conversation_id)
        items = await self.client.lrange(key, 0, -1)
        await self.client.delete(key, f"{key}:updated")
        await self.client.srem(AI_BATCH_PENDING_KEY, conversation_id)
        return list(items or [])

    async def close(self) -> None:
        await self.client.aclose()


def ai_batch_key(conversation_id) -> str:
    return f"ai-batch:{conversation_id}"


def build_task_queue(redis_url: Optional[str], socket_timeout_seconds: float = 2.0) -> Optional[RedisTaskQueue]:
    """Queue for the configured Redis URL, or None when durable queueing is unavailable."""
    if not redis_url:
        logger.info("REDIS_URL not set, async work runs in-process only")
        return None
    return RedisTaskQueue.from_url(redis_url, socket_timeout_seconds)


class TaskDispatcher:
    """Hands tasks off without waiting for them to run."""

    def __init__(
        self,
        queue: Optional[RedisTaskQueue],
        background_tasks: BackgroundTasks,
        runner: TaskRunner,
        ai_batch_seconds: float = 0.0,
    ) -> None:
        self.queue = queue
        self.background_tasks = background_tasks
        self.runner = runner
        self.ai_batch_seconds = ai_batch_seconds

    async def enqueue(self, task: Task) -> str:
        """Push durably, else schedule in-process. Never raises."""
        try:
            envelope = TaskEnvelope.wrap(task)
        except Exception as e:
            logger.error(f"Task could not be serialized, dropped: {e}")
            return EnqueueOutcome.DROPPED

        context = {"kind": envelope.kind}
        if self.queue is not None and self.ai_batch_seconds > 0 and isinstance(task, AIAgentTask):
            try:
                size = await self.queue.add_to_batch(task, int(self.ai_batch_seconds) + AI_BATCH_TTL_SECONDS)
                logger.info(
                    "AI task added to conversation batch",
                    extra={"context": {**context, "conversation_id": str(task.conversation_id), "batch_size": size}},
                )
                return EnqueueOutcome.QUEUED
            except Exception as e:
                logger.warning(
                    "AI batch append failed, queueing task directly",
                    extra={"context": {**context, "error": str(e)}},
                )

        if self.queue is not None:
            try:
                await self.queue.push(envelope)
                return EnqueueOutcome.QUEUED
            except Exception as e:
                logger.warning(
                    "Queue push failed, running task in background",
                    extra={"context": {**context, "error": str(e)}},
                )
        else:
            logger.info("No durable queue, running task in background", extra={"context": context})

        try:
            self.background_tasks.add_task(self.runner, envelope)
        except Exception as e:
            logger.error("Background scheduling failed, task dropped", extra={"context": {**context, "error": str(e)}})
            return EnqueueOutcome.DROPPED
        return EnqueueOutcome.BACKGROUND
