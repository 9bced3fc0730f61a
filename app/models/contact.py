import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.database import Base


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("company_id", "phone_number", name="uq_contacts_company_phone"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False)
    phone_number = Column(Text, nullable=False)
    name = Column(Text)
    name_manually_edited = Column(Boolean, nullable=False, default=False)
    avatar_url = Column(Text)
    is_blocked = Column(Boolean, nullable=False, default=False)
    last_interaction_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    conversations = relationship("Conversation", back_populates="contact")
