import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Message
from app.services.event_classifier import MediaDetails, MessageEvent, MessageKind
from app.services.state_machine import MessageStatus, initial_message_status

logger = get_logger("message_service")


@dataclass(frozen=True)
class PersistResult:
    message_id: Optional[UUID]
    duplicate: bool = False


DUPLICATE = PersistResult(message_id=None, duplicate=True)


def find_message_by_provider_id(db: Session, company_id: UUID, provider_message_id: str) -> Optional[Message]:
    """Lookup by provider id, soft-deleted rows included."""
    return (
        db.query(Message)
        .filter(Message.company_id == company_id, Message.provider_message_id == provider_message_id)
        .first()
    )


def resolve_quoted_message_id(db: Session, conversation_id: UUID, quoted_provider_id: Optional[str]) -> Optional[UUID]:
    """Local id of a quoted message: exact match first, then suffix match.

    Some provider ids arrive prefixed with a routing component ("owner:ID").
    """
    if not quoted_provider_id:
        return None
    quoted = (
        db.query(Message.id)
        .filter(Message.conversation_id == conversation_id, Message.provider_message_id == quoted_provider_id)
        .first()
    )
    if not quoted:
        quoted = (
            db.query(Message.id)
            .filter(
                Message.conversation_id == conversation_id,
                Message.provider_message_id.like(f"%{quoted_provider_id}"),
            )
            .first()
        )
    return quoted.id if quoted else None


def build_media_metadata(kind: MessageKind, media: Optional[MediaDetails]) -> dict[str, Any]:
    """Metadata written at insert time for media rows awaiting download."""
    media = media or MediaDetails()
    if kind == MessageKind.AUDIO:
        metadata = {
            "duration": media.duration,
            "fileSize": media.file_size,
            "isPTT": media.is_ptt,
            "mimeType": media.mime_type or "audio/ogg",
        }
    elif kind == MessageKind.IMAGE:
        metadata = {
            "width": media.width or 0,
            "height": media.height or 0,
            "fileSize": media.file_size,
            "mimeType": media.mime_type or "image/jpeg",
            "hasCaption": bool(media.caption),
        }
    elif kind == MessageKind.VIDEO:
        metadata = {
            "width": media.width or 0,
            "height": media.height or 0,
            "duration": media.duration,
            "fileSize": media.file_size,
            "mimeType": media.mime_type or "video/mp4",
            "hasCaption": bool(media.caption),
        }
    elif kind == MessageKind.DOCUMENT:
        metadata = {
            "fileName": media.file_name or "document",
            "fileSize": media.file_size,
            "mimeType": media.mime_type or "application/octet-stream",
            "pageCount": media.page_count,
            "hasCaption": bool(media.caption),
        }
    elif kind == MessageKind.STICKER:
        metadata = {
            "width": media.width or 512,
            "height": media.height or 512,
            "fileSize": media.file_size,
            "isAnimated": media.is_animated,
        }
    else:
        return {}
    metadata["pendingDownload"] = True
    return metadata


def persist_message(
    db: Session,
    *,
    company_id: UUID,
    conversation_id: UUID,
    provider_message_id: Optional[str],
    direction: str,
    sender_type: str,
    message_type: str,
    content: Optional[str],
    status: MessageStatus,
    quoted_provider_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    media_url: Optional[str] = None,
    media_mime_type: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> PersistResult:
    """Insert one message row, or report a duplicate provider id."""
    if provider_message_id and find_message_by_provider_id(db, company_id, provider_message_id):
        logger.info(
            "Duplicate message ignored",
            extra={"context": {"provider_message_id": provider_message_id}},
        )
        return DUPLICATE

    now = datetime.now(timezone.utc)
    stmt = (
        insert(Message)
        .values(
            id=uuid.uuid4(),
            company_id=company_id,
            conversation_id=conversation_id,
            direction=direction,
            sender_type=sender_type,
            message_type=message_type,
            content=content,
            media_url=media_url,
            media_mime_type=media_mime_type,
            status=status.value,
            error_message=None,
            provider_message_id=provider_message_id,
            quoted_message_id=resolve_quoted_message_id(db, conversation_id, quoted_provider_id),
            message_metadata=metadata or {},
            is_deleted=False,
            created_at=created_at or now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["company_id", "provider_message_id"],
            index_where=Message.is_deleted.is_(False),
        )
        .returning(Message.id)
    )
    message_id = db.execute(stmt).scalar_one_or_none()
    db.commit()
    if message_id is None:
        logger.info(
            "Concurrent duplicate message ignored",
            extra={"context": {"provider_message_id": provider_message_id}},
        )
        return DUPLICATE
    return PersistResult(message_id=message_id)


def persist_inbound_message(
    db: Session, company_id: UUID, conversation_id: UUID, event: MessageEvent
) -> PersistResult:
    """Persist a classified message event in its initial status."""
    return persist_message(
        db,
        company_id=company_id,
        conversation_id=conversation_id,
        provider_message_id=event.provider_message_id,
        direction="outbound" if event.is_from_self else "inbound",
        sender_type="user" if event.is_from_self else "contact",
        message_type=event.kind.value,
        content=event.content,
        status=initial_message_status(event.kind.value, event.is_from_self),
        quoted_provider_id=event.quoted_provider_id,
        metadata=build_media_metadata(event.kind, event.media) if event.is_media else {},
        created_at=event.sent_at,
    )


def mark_messages_deleted(db: Session, company_id: UUID, provider_message_ids, deleted_by_type: str) -> int:
    """Soft-delete messages by provider id. Returns the number of rows touched."""
    ids = [message_id for message_id in provider_message_ids if message_id]
    if not ids:
        return 0
    now = datetime.now(timezone.utc)
    count = (
        db.query(Message)
        .filter(
            Message.company_id == company_id,
            Message.provider_message_id.in_(ids),
            Message.is_deleted.is_(False),
        )
        .update(
            {
                Message.is_deleted: True,
                Message.deleted_at: now,
                Message.deleted_by_type: deleted_by_type,
                Message.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return count
