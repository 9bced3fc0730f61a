"""JSON logging for the inbox ingestion service.

Records are one JSON object per line. Correlation ids found in a record's
``context`` (tenant, connection, conversation, message, provider message) are
also lifted to the top level so log search can filter on them directly.
Provider credentials never reach the output.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

LOGGER_NAMESPACE = "inbox"
SERVICE_NAME = "whatsapp-inbox-ingest"

CORRELATION_KEYS = (
    "company_id",
    "connection_id",
    "conversation_id",
    "message_id",
    "provider_message_id",
    "task_kind",
)
REDACTED_KEYS = frozenset({"token", "instance_token", "instanceToken", "authorization", "service_token"})
REDACTED = "***"

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "botocore", "boto3", "urllib3")


def redact(context: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``context`` with credential values masked, one level of nesting deep."""
    cleaned = {}
    for key, value in context.items():
        if key in REDACTED_KEYS and value:
            cleaned[key] = REDACTED
        elif isinstance(value, dict):
            cleaned[key] = {k: REDACTED if k in REDACTED_KEYS and v else v for k, v in value.items()}
        else:
            cleaned[key] = value
    return cleaned


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict) and context:
            context = redact(context)
            for key in CORRELATION_KEYS:
                if context.get(key) is not None:
                    entry[key] = context[key]
            entry["context"] = context

        if record.exc_info:
            entry["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Send JSON records from every logger to stdout."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Stamps bound task context onto every record; per-call ``context=`` wins on key clashes."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        combined = {**self.extra, **(extra.pop("context", None) or {}), **(kwargs.pop("context", None) or {})}
        if combined:
            extra["context"] = combined
        if extra:
            kwargs["extra"] = extra
        return msg, kwargs


def bind_logger(logger: logging.Logger, **context: Any) -> LoggerAdapter:
    """Adapter carrying the ids of one media or agent task."""
    return LoggerAdapter(logger, {key: value for key, value in context.items() if value is not None})
