from app.schemas.queue import QueueProcessResponse, QueueRetryResponse, QueueStatsResponse
from app.schemas.webhook import ProviderEvent, WebhookErrorResponse, WebhookResponse

__all__ = [
    "ProviderEvent",
    "WebhookResponse",
    "WebhookErrorResponse",
    "QueueProcessResponse",
    "QueueRetryResponse",
    "QueueStatsResponse",
]
