import uuid
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Contact, Message, MessageReaction, Profile
from app.services.event_classifier import ReactionEvent
from app.services.result import ErrorCode, Result

logger = get_logger("reaction_service")


def find_reacted_message(db: Session, company_id: UUID, event: ReactionEvent) -> Optional[Message]:
    for candidate in event.target_candidates():
        message = (
            db.query(Message)
            .filter(Message.company_id == company_id, Message.provider_message_id == candidate)
            .first()
        )
        if message:
            return message
    return None


def resolve_reactor(db: Session, company_id: UUID, event: ReactionEvent) -> tuple[str, Optional[UUID]]:
    """Reactions sent from the tenant's own number are attributed to a company user."""
    if event.is_from_self:
        profile = db.query(Profile.id).filter(Profile.company_id == company_id).first()
        return "user", profile.id if profile else None

    contact = (
        db.query(Contact.id)
        .filter(Contact.company_id == company_id, Contact.phone_number == event.phone_number)
        .first()
    )
    return "contact", contact.id if contact else None


def apply_reaction(db: Session, company_id: UUID, event: ReactionEvent) -> Result[str]:
    """Upsert or remove the reactor's reaction on the target message.

    Returns the action taken ("removed" / "upserted"); unresolvable target or
    reactor come back as a ``NOT_FOUND`` failure, which callers treat as a no-op.
    """
    message = find_reacted_message(db, company_id, event)
    if not message:
        return Result.failure("Original message not found for reaction", ErrorCode.NOT_FOUND)

    reactor_type, reactor_id = resolve_reactor(db, company_id, event)
    if not reactor_id:
        return Result.failure("Could not identify reactor", ErrorCode.NOT_FOUND)

    if event.is_removal:
        db.query(MessageReaction).filter(
            MessageReaction.message_id == message.id,
            MessageReaction.reactor_type == reactor_type,
            MessageReaction.reactor_id == reactor_id,
        ).delete(synchronize_session=False)
        db.commit()
        return Result.success("removed")

    now = datetime.now(timezone.utc)
    stmt = insert(MessageReaction).values(
        id=uuid.uuid4(),
        message_id=message.id,
        company_id=company_id,
        reactor_type=reactor_type,
        reactor_id=reactor_id,
        emoji=event.emoji,
        provider_message_id=event.provider_message_id,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["message_id", "reactor_type", "reactor_id"],
        set_={
            "emoji": stmt.excluded.emoji,
            "provider_message_id": stmt.excluded.provider_message_id,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)
    db.commit()
    logger.info(
        "Reaction stored",
        extra={"context": {"message_id": str(message.id), "reactor_type": reactor_type}},
    )
    return Result.success("upserted")
