import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index(
            "uq_messages_company_provider_id",
            "company_id",
            "provider_message_id",
            unique=True,
            postgresql_where=text("is_deleted = false"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    direction = Column(Text, nullable=False)  # inbound, outbound
    sender_type = Column(Text, nullable=False)  # contact, user, bot
    sender_id = Column(UUID(as_uuid=True))
    message_type = Column(Text, nullable=False)  # text, audio, image, video, document, sticker
    content = Column(Text)
    media_url = Column(Text)
    media_mime_type = Column(Text)
    status = Column(Text, nullable=False)  # pending, sent, delivered, failed
    error_message = Column(Text)
    provider_message_id = Column(Text)
    quoted_message_id = Column(UUID(as_uuid=True), ForeignKey("messages.id"))
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(TIMESTAMP(timezone=True))
    deleted_by_type = Column(Text)  # agent, client
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
    reactions = relationship("MessageReaction", back_populates="message")
