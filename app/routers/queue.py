"""Queue consumer endpoints for schedulers and operators."""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, status

from app.config import settings
from app.logging_config import get_logger
from app.schemas.queue import QueueProcessResponse, QueueRetryResponse, QueueStatsResponse
from app.services.queue_worker import process_queues, queue_stats, retry_dead_letters
from app.services.task_queue import RedisTaskQueue

logger = get_logger("queue")

router = APIRouter(prefix="/queue")


def _require_service_token(authorization: Optional[str]) -> None:
    expected = settings.service_token
    if not expected:
        return
    if not authorization or authorization != f"Bearer {expected}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid service token")


def _get_queue(request: Request) -> RedisTaskQueue:
    queue = getattr(request.app.state, "task_queue", None)
    if queue is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Task queue not configured")
    return queue


@router.post("/process", response_model=QueueProcessResponse)
async def process(request: Request, authorization: Optional[str] = Header(default=None)):
    _require_service_token(authorization)
    results = await process_queues(_get_queue(request))
    logger.info("Queue batch processed", extra={"context": results})
    return QueueProcessResponse(**results)


@router.post("/retry", response_model=QueueRetryResponse)
async def retry(request: Request, authorization: Optional[str] = Header(default=None)):
    _require_service_token(authorization)
    results = await retry_dead_letters(_get_queue(request))
    if not results["requeued"] and not results["permanent_failed"]:
        return QueueRetryResponse(message="No items in DLQ")
    return QueueRetryResponse(**results)


@router.get("/stats", response_model=QueueStatsResponse)
async def stats(request: Request, authorization: Optional[str] = Header(default=None)):
    _require_service_token(authorization)
    return QueueStatsResponse(**await queue_stats(_get_queue(request)))
