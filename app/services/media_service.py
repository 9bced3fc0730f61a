"""Materialize WhatsApp media: download from the provider, upload to storage, settle the row."""

import asyncio
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import bind_logger, get_logger
from app.models import Message
from app.schemas.tasks import MediaTask
from app.services.db_utils import jsonb_merge
from app.services.object_storage import ObjectStorageError, S3MediaStorage
from app.services.provider_client import DownloadedMedia, ProviderClient
from app.services.result import ErrorCode, Result
from app.services.state_machine import MessageStatus, transition

logger = get_logger("media_service")

GENERIC_BINARY_MIME = "application/octet-stream"
DOWNLOAD_ATTEMPTS = 2

EXTENSION_MIME_MAP = {
    "md": "text/markdown",
    "markdown": "text/markdown",
    "txt": "text/plain",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "zip": "application/zip",
    "rar": "application/x-rar-compressed",
    "7z": "application/x-7z-compressed",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "opus": "audio/opus",
    "m4a": "audio/mp4",
    "wav": "audio/wav",
    "aac": "audio/aac",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "3gp": "video/3gpp",
    "avi": "video/x-msvideo",
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "json": "application/json",
    "xml": "application/xml",
}

MIME_EXTENSION_MAP = {
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/opus": "opus",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "audio/webm": "webm",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "video/x-msvideo": "avi",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/vnd.ms-powerpoint": "ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
    "text/plain": "txt",
    "text/markdown": "md",
    "text/x-markdown": "md",
    "application/zip": "zip",
    "application/x-rar-compressed": "rar",
    "application/x-7z-compressed": "7z",
}


class MediaOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class FileFormat:
    extension: str
    storage_mime_type: str
    display_mime_type: str


def _base_mime(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def _file_extension(file_name: Optional[str]) -> Optional[str]:
    if not file_name or "." not in file_name:
        return None
    return file_name.rsplit(".", 1)[1].lower() or None


def display_mime_type(file_name: Optional[str], original_mime_type: Optional[str]) -> str:
    """MIME type shown to users; the file extension wins over what the provider declared."""
    extension = _file_extension(file_name)
    if extension and extension in EXTENSION_MIME_MAP:
        return EXTENSION_MIME_MAP[extension]
    base = _base_mime(original_mime_type)
    return base or GENERIC_BINARY_MIME


def storage_safe_mime_type(mime_type: str) -> str:
    """Storage rejects text-like content types."""
    if mime_type.startswith("text/"):
        return GENERIC_BINARY_MIME
    return mime_type


def extension_for(mime_type: Optional[str], file_name: Optional[str] = None) -> str:
    extension = _file_extension(file_name)
    if extension and len(extension) <= 10:
        return extension
    base = _base_mime(mime_type)
    if base in MIME_EXTENSION_MAP:
        return MIME_EXTENSION_MAP[base]
    subtype = base.split("/", 1)[1] if "/" in base else ""
    if subtype:
        return "jpg" if subtype == "jpeg" else subtype
    return "bin"


def choose_file_format(
    media_kind: str,
    downloaded_mime_type: str,
    file_name: Optional[str] = None,
    declared_mime_type: Optional[str] = None,
) -> FileFormat:
    if media_kind == "sticker":
        return FileFormat("webp", "image/webp", "image/webp")
    if media_kind == "document":
        original = declared_mime_type or GENERIC_BINARY_MIME
        display = display_mime_type(file_name, original)
        return FileFormat(extension_for(original, file_name), storage_safe_mime_type(display), display)
    mime_type = _base_mime(downloaded_mime_type) or GENERIC_BINARY_MIME
    return FileFormat(extension_for(mime_type), mime_type, mime_type)


def build_object_key(
    company_id: UUID,
    connection_id: UUID,
    media_kind: str,
    extension: str,
    now: Optional[datetime] = None,
) -> tuple[str, str]:
    """Return (object key, file name) namespaced by tenant, connection and month."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    file_name = f"{media_kind}_{int(now.timestamp() * 1000)}_{suffix}.{extension}"
    return f"{company_id}/{connection_id}/{now:%Y-%m}/{file_name}", file_name


async def download_with_retry(
    provider: ProviderClient,
    provider_message_id: str,
    token: str,
    *,
    sleep_func=asyncio.sleep,
    retry_delay: Optional[float] = None,
) -> Result[DownloadedMedia]:
    delay = settings.media_download_retry_delay_seconds if retry_delay is None else retry_delay
    result: Result[DownloadedMedia] = Result.failure("Download not attempted", ErrorCode.DOWNLOAD_FAILED)
    for attempt in range(1, DOWNLOAD_ATTEMPTS + 1):
        result = await provider.download_media(provider_message_id, token)
        if result.ok:
            return result
        if attempt < DOWNLOAD_ATTEMPTS:
            logger.warning(
                "Media download failed, retrying",
                extra={"context": {"attempt": attempt, "error": result.error}},
            )
            await sleep_func(delay)
    return result


def _current_status(db: Session, message_id: UUID) -> Optional[str]:
    row = db.query(Message.status).filter(Message.id == message_id).first()
    return row.status if row else None


def _settle(db: Session, message_id: UUID, target: MessageStatus, values: dict, metadata: dict) -> bool:
    """Move a PENDING row to ``target``; a row that already left PENDING is left untouched."""
    transition(MessageStatus.PENDING, target)
    values = {
        **values,
        Message.status: target.value,
        Message.updated_at: datetime.now(timezone.utc),
        Message.message_metadata: jsonb_merge(Message.message_metadata, metadata),
    }
    count = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == MessageStatus.PENDING.value)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return count > 0


def mark_media_failed(db: Session, message_id: UUID, error_message: str, reason: str) -> bool:
    return _settle(
        db,
        message_id,
        MessageStatus.FAILED,
        {
            Message.error_message: error_message,
            Message.media_url: None,
        },
        {
            "pendingDownload": False,
            "error": reason,
            "processedAt": datetime.now(timezone.utc).isoformat(),
        },
    )


async def materialize(
    db: Session,
    task: MediaTask,
    provider: ProviderClient,
    storage: S3MediaStorage,
    *,
    sleep_func=asyncio.sleep,
    retry_delay: Optional[float] = None,
) -> MediaOutcome:
    """Download, store and settle one media message. Safe to run more than once per task."""
    log = bind_logger(
        logger,
        message_id=str(task.message_id),
        provider_message_id=task.provider_message_id,
        media_kind=task.media_kind,
    )
    started = time.monotonic()

    status = _current_status(db, task.message_id)
    if status != MessageStatus.PENDING.value:
        log.info("Media task skipped", context={"status": status})
        return MediaOutcome.SKIPPED

    if not task.instance_token:
        mark_media_failed(db, task.message_id, "Missing provider token for connection", "Missing token")
        log.error("Media task has no provider token")
        return MediaOutcome.FAILED

    try:
        download = await download_with_retry(
            provider,
            task.provider_message_id,
            task.instance_token,
            sleep_func=sleep_func,
            retry_delay=retry_delay,
        )
        if not download.ok:
            mark_media_failed(
                db,
                task.message_id,
                f"Download failed from provider after {DOWNLOAD_ATTEMPTS} attempts: {download.error}",
                "Download failed",
            )
            log.error("Media download failed", context={"error": download.error})
            return MediaOutcome.FAILED

        media = download.value
        file_format = choose_file_format(task.media_kind, media.mime_type, task.file_name, task.mime_type)
        key, stored_name = build_object_key(
            task.company_id, task.connection_id, task.media_kind, file_format.extension
        )

        try:
            public_url = await storage.upload_async(key, media.data, file_format.storage_mime_type)
        except ObjectStorageError as e:
            mark_media_failed(db, task.message_id, f"Upload failed: {e}", "Upload failed")
            log.error("Media upload failed", context={"error": str(e), "storage_path": key})
            return MediaOutcome.FAILED
    except Exception as e:
        db.rollback()
        mark_media_failed(db, task.message_id, f"Media processing error: {e}", "Processing error")
        log.exception("Media processing crashed", context={"error": str(e)})
        return MediaOutcome.FAILED

    processing_ms = int((time.monotonic() - started) * 1000)
    metadata = {
        "pendingDownload": False,
        "fileName": stored_name,
        "storagePath": key,
        "fileSize": media.size,
        "downloadedAt": datetime.now(timezone.utc).isoformat(),
        "processedAsync": True,
        "processingTimeMs": processing_ms,
    }
    if task.file_name:
        metadata["originalFileName"] = task.file_name
    settled = _settle(
        db,
        task.message_id,
        MessageStatus.DELIVERED,
        {
            Message.media_url: public_url,
            Message.media_mime_type: file_format.display_mime_type,
            Message.error_message: None,
        },
        metadata,
    )
    if not settled:
        log.info("Media row settled concurrently, upload kept")
        return MediaOutcome.SKIPPED

    log.info("Media delivered", context={"storage_path": key, "processing_time_ms": processing_ms})
    return MediaOutcome.DELIVERED
