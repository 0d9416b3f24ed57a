import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from zapflow.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WhatsappSession(Base):
    __tablename__ = "whatsapp_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    user_id = Column(UUID(as_uuid=True))  # owner; NULL means a global session
    session_name = Column(Text)
    phone_number = Column(Text)
    status = Column(Text, nullable=False, default="pending")  # pending, qr_code, connected, disconnected
    qr_code = Column(Text)
    connected_at = Column(TIMESTAMP(timezone=True))
    last_activity_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(TIMESTAMP(timezone=True))

    conversations = relationship("Conversation", back_populates="session")
