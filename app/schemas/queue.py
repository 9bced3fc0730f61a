from typing import Optional

from pydantic import BaseModel


class QueueProcessResponse(BaseModel):
    success: bool = True
    media_processed: int = 0
    media_failed: int = 0
    ai_processed: int = 0
    ai_failed: int = 0
    ai_batches_flushed: int = 0
    duration_ms: int = 0


class QueueRetryResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    requeued: int = 0
    permanent_failed: int = 0


class QueueStatsResponse(BaseModel):
    success: bool = True
    queues: dict[str, int]
    stats: dict[str, int]
    last_run: Optional[str] = None
    last_retry: Optional[str] = None
    health: str
