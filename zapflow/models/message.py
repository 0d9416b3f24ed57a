import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from zapflow.database import Base
from zapflow.models.session import _utcnow


class Message(Base):
    __tablename__ = "whatsapp_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("whatsapp_conversations.id"), nullable=False)
    message_id = Column(Text, nullable=False, unique=True)  # provider id
    direction = Column(Text, nullable=False)  # incoming, outgoing
    type = Column(Text, nullable=False, default="text")
    content = Column(Text)
    media_url = Column(Text)
    media_filename = Column(Text)
    media_mimetype = Column(Text)
    status = Column(Text, nullable=False, default="pending")  # pending, sent, delivered, read, failed
    sender_id = Column(UUID(as_uuid=True))
    sender_name = Column(Text)
    sender_phone = Column(Text)
    sent_at = Column(TIMESTAMP(timezone=True))
    delivered_at = Column(TIMESTAMP(timezone=True))
    read_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)

    conversation = relationship("Conversation", back_populates="messages")
