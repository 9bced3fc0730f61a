from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Department, WhatsAppConnection

logger = get_logger("connection_service")


def get_connection_by_instance(db: Session, instance_name: str) -> Optional[WhatsAppConnection]:
    """Find the tenant connection registered under the provider instance name."""
    return db.query(WhatsAppConnection).filter(WhatsAppConnection.session_id == instance_name).first()


def backfill_instance_token(db: Session, connection: WhatsAppConnection, token: Optional[str]) -> Optional[str]:
    """Return the provider token for the connection, storing the payload token if none is saved yet."""
    if connection.instance_token:
        return connection.instance_token
    if not token:
        return None
    db.query(WhatsAppConnection).filter(WhatsAppConnection.id == connection.id).update(
        {"instance_token": token}, synchronize_session=False
    )
    db.commit()
    logger.info(
        "Stored provider token from webhook payload",
        extra={"context": {"connection_id": str(connection.id)}},
    )
    return token


def get_default_department(db: Session, connection: WhatsAppConnection) -> Optional[Department]:
    return (
        db.query(Department)
        .filter(
            Department.whatsapp_connection_id == connection.id,
            Department.is_default.is_(True),
        )
        .first()
    )
