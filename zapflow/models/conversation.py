import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from zapflow.database import Base
from zapflow.models.session import _utcnow


class Conversation(Base):
    __tablename__ = "whatsapp_conversations"
    __table_args__ = (UniqueConstraint("session_id", "remote_jid", name="whatsapp_conversations_session_jid_unique"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_sessions.id"), nullable=False)
    remote_jid = Column(Text, nullable=False)
    is_group = Column(Boolean, nullable=False, default=False)
    group_name = Column(Text)
    contact_phone = Column(Text)
    contact_name = Column(Text)
    profile_picture = Column(Text)
    contact_id = Column(UUID(as_uuid=True))  # CRM contact, owned outside this service
    assigned_user_id = Column(UUID(as_uuid=True))
    is_pinned = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(TIMESTAMP(timezone=True))

    session = relationship("WhatsappSession", back_populates="conversations")
    messages = relationship("Message", back_populates="conversation")

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None
