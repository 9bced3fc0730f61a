import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_contact_connection_status", "contact_id", "whatsapp_connection_id", "status"),
        Index(
            "uq_conversations_contact_connection_active",
            "contact_id",
            "whatsapp_connection_id",
            unique=True,
            postgresql_where=text("status <> 'closed'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    whatsapp_connection_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_connections.id"))
    department_id = Column(UUID(as_uuid=True), ForeignKey("departments.id"))
    assigned_user_id = Column(UUID(as_uuid=True), ForeignKey("profiles.id"))
    assigned_at = Column(TIMESTAMP(timezone=True))
    channel = Column(Text, nullable=False, default="whatsapp")
    status = Column(Text, nullable=False, default="open")  # open, pending, closed
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(TIMESTAMP(timezone=True))
    closed_at = Column(TIMESTAMP(timezone=True))
    conversation_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    contact = relationship("Contact", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")
    history = relationship("ConversationHistory", back_populates="conversation")
