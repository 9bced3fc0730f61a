import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Conversation, ConversationHistory, Department, WhatsAppConnection
from app.services.contact_service import ResolvedContact
from app.services.db_utils import jsonb_merge
from app.services.state_machine import ConversationStatus, reopen

logger = get_logger("conversation_service")

SYSTEM_ACTOR_NAME = "Sistema"


class ResolutionAction:
    EXISTING = "existing"
    REOPENED = "reopened"
    CREATED = "created"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class ConversationResolution:
    conversation_id: Optional[UUID]
    action: str

    @property
    def is_ignored(self) -> bool:
        return self.conversation_id is None


def find_active_conversation(db: Session, contact_id: UUID, connection_id: UUID) -> Optional[Conversation]:
    """Most recent non-closed conversation for (contact, connection)."""
    return (
        db.query(Conversation)
        .filter(
            Conversation.contact_id == contact_id,
            Conversation.whatsapp_connection_id == connection_id,
            Conversation.status != ConversationStatus.CLOSED.value,
        )
        .order_by(Conversation.last_message_at.desc().nullslast())
        .first()
    )


def find_latest_closed_conversation(db: Session, contact_id: UUID, connection_id: UUID) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.contact_id == contact_id,
            Conversation.whatsapp_connection_id == connection_id,
            Conversation.status == ConversationStatus.CLOSED.value,
        )
        .order_by(Conversation.closed_at.desc().nullslast())
        .first()
    )


def record_history(db: Session, conversation_id: UUID, event_type: str, event_data: dict) -> None:
    db.add(
        ConversationHistory(
            conversation_id=conversation_id,
            event_type=event_type,
            event_data=event_data,
            performed_by=None,
            performed_by_name=SYSTEM_ACTOR_NAME,
            is_automatic=True,
            created_at=datetime.now(timezone.utc),
        )
    )


def touch_conversation(db: Session, conversation_id: UUID, message_at: datetime, is_from_self: bool) -> None:
    """Field-scoped bump of an already open conversation."""
    updates = {
        Conversation.last_message_at: message_at,
        Conversation.updated_at: datetime.now(timezone.utc),
    }
    if not is_from_self:
        updates[Conversation.unread_count] = Conversation.unread_count + 1
    db.query(Conversation).filter(Conversation.id == conversation_id).update(updates, synchronize_session=False)


def reopen_conversation(
    db: Session,
    conversation: Conversation,
    message_at: datetime,
    is_from_self: bool,
    department_id: Optional[UUID] = None,
) -> None:
    """Flip a closed conversation back to open and record why."""
    now = datetime.now(timezone.utc)
    reopen(ConversationStatus(conversation.status))
    updates = {
        Conversation.status: ConversationStatus.OPEN.value,
        Conversation.closed_at: None,
        Conversation.assigned_user_id: None,
        Conversation.assigned_at: None,
        Conversation.unread_count: 0 if is_from_self else 1,
        Conversation.last_message_at: message_at,
        Conversation.updated_at: now,
        Conversation.conversation_metadata: jsonb_merge(
            Conversation.conversation_metadata,
            {"autoReopened": True, "reopenedAt": now.isoformat(), "reopenedByClient": not is_from_self},
        ),
    }
    if department_id is not None:
        updates[Conversation.department_id] = department_id
    db.query(Conversation).filter(Conversation.id == conversation.id).update(updates, synchronize_session=False)
    record_history(
        db,
        conversation.id,
        "reopened",
        {"reason": "client_message", "previous_status": ConversationStatus.CLOSED.value},
    )


def create_conversation(
    db: Session,
    company_id: UUID,
    contact_id: UUID,
    connection: WhatsAppConnection,
    message_at: datetime,
    is_from_self: bool,
    department: Optional[Department] = None,
    contact_name: Optional[str] = None,
    contact_phone: Optional[str] = None,
) -> Optional[UUID]:
    """Insert an open conversation. Returns None when a concurrent delivery created one first."""
    now = datetime.now(timezone.utc)
    stmt = (
        insert(Conversation)
        .values(
            id=uuid.uuid4(),
            company_id=company_id,
            contact_id=contact_id,
            whatsapp_connection_id=connection.id,
            department_id=department.id if department else None,
            channel="whatsapp",
            status=ConversationStatus.OPEN.value,
            unread_count=0 if is_from_self else 1,
            last_message_at=message_at,
            conversation_metadata={},
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=["contact_id", "whatsapp_connection_id"],
            index_where=text("status <> 'closed'"),
        )
        .returning(Conversation.id)
    )
    conversation_id = db.execute(stmt).scalar_one_or_none()
    if conversation_id is None:
        return None
    record_history(
        db,
        conversation_id,
        "created",
        {
            "connection_id": str(connection.id),
            "connection_name": connection.name or "WhatsApp",
            "department_id": str(department.id) if department else None,
            "department_name": department.name if department else None,
            "contact_name": contact_name,
            "contact_phone": contact_phone,
        },
    )
    return conversation_id


def resolve_conversation(
    db: Session,
    company_id: UUID,
    contact: ResolvedContact,
    connection: WhatsAppConnection,
    is_from_self: bool,
    message_at: datetime,
    default_department: Optional[Department] = None,
    contact_name: Optional[str] = None,
    contact_phone: Optional[str] = None,
) -> ConversationResolution:
    """Attach an inbound message to a conversation: open, else reopen closed, else create."""
    context = {"contact_id": str(contact.id), "connection_id": str(connection.id)}

    active = find_active_conversation(db, contact.id, connection.id)
    if active:
        touch_conversation(db, active.id, message_at, is_from_self)
        db.commit()
        return ConversationResolution(active.id, ResolutionAction.EXISTING)

    closed = find_latest_closed_conversation(db, contact.id, connection.id)
    if closed:
        if contact.is_blocked:
            logger.info("Blocked contact, conversation stays closed", extra={"context": context})
            return ConversationResolution(closed.id, ResolutionAction.BLOCKED)
        reopen_conversation(
            db,
            closed,
            message_at,
            is_from_self,
            department_id=default_department.id if default_department else None,
        )
        db.commit()
        logger.info("Conversation reopened", extra={"context": {**context, "conversation_id": str(closed.id)}})
        return ConversationResolution(closed.id, ResolutionAction.REOPENED)

    if contact.is_blocked:
        logger.info("Blocked contact, no conversation created", extra={"context": context})
        return ConversationResolution(None, ResolutionAction.BLOCKED)

    conversation_id = create_conversation(
        db,
        company_id,
        contact.id,
        connection,
        message_at,
        is_from_self,
        department=default_department,
        contact_name=contact_name,
        contact_phone=contact_phone,
    )
    if conversation_id is None:
        db.commit()
        winner = find_active_conversation(db, contact.id, connection.id)
        if winner is None:
            raise RuntimeError("Conversation insert conflicted but no active conversation was found")
        touch_conversation(db, winner.id, message_at, is_from_self)
        db.commit()
        logger.info(
            "Concurrent conversation reused",
            extra={"context": {**context, "conversation_id": str(winner.id)}},
        )
        return ConversationResolution(winner.id, ResolutionAction.EXISTING)

    db.commit()
    logger.info(
        "Conversation created",
        extra={"context": {**context, "conversation_id": str(conversation_id)}},
    )
    return ConversationResolution(conversation_id, ResolutionAction.CREATED)


def bump_last_message_at(db: Session, conversation_id: UUID, message_at: Optional[datetime] = None) -> None:
    now = datetime.now(timezone.utc)
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.last_message_at: message_at or now, Conversation.updated_at: now},
        synchronize_session=False,
    )
