import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import case, func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.models import Contact


@dataclass(frozen=True)
class ResolvedContact:
    id: UUID
    is_blocked: bool = False


def build_contact_upsert(
    company_id: UUID,
    phone_number: str,
    display_name: Optional[str],
    avatar_url: Optional[str],
    now: datetime,
):
    """Upsert keyed on (company_id, phone_number).

    A manually edited name is kept; avatar is refreshed only when the provider
    sent one. Last interaction is always bumped.
    """
    stmt = insert(Contact).values(
        id=uuid.uuid4(),
        company_id=company_id,
        phone_number=phone_number,
        name=display_name or phone_number,
        name_manually_edited=False,
        avatar_url=avatar_url,
        is_blocked=False,
        last_interaction_at=now,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    return stmt.on_conflict_do_update(
        index_elements=["company_id", "phone_number"],
        set_={
            "name": case((Contact.name_manually_edited.is_(True), Contact.name), else_=excluded.name),
            "avatar_url": func.coalesce(excluded.avatar_url, Contact.avatar_url),
            "last_interaction_at": excluded.last_interaction_at,
            "updated_at": excluded.updated_at,
        },
    ).returning(Contact.id, Contact.is_blocked)


def resolve_contact(
    db: Session,
    company_id: UUID,
    phone_number: str,
    display_name: Optional[str],
    avatar_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ResolvedContact:
    """Create or refresh the contact for a phone number in one round-trip."""
    now = now or datetime.now(timezone.utc)
    row = db.execute(build_contact_upsert(company_id, phone_number, display_name, avatar_url, now)).one()
    db.commit()
    return ResolvedContact(id=row.id, is_blocked=bool(row.is_blocked))
