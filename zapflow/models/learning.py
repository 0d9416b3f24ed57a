import uuid

from sqlalchemy import Boolean, Column, Float, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from zapflow.database import Base
from zapflow.models.session import _utcnow


class AiFeedback(Base):
    __tablename__ = "ai_feedback"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    user_id = Column(UUID(as_uuid=True))
    conversation_id = Column(UUID(as_uuid=True))
    user_message = Column(Text, nullable=False)
    ai_response = Column(Text, nullable=False)
    feature = Column(Text, nullable=False, default="chat")
    rating = Column(Text, nullable=False)  # positive, negative, neutral
    correction = Column(Text)
    feedback_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)


class AiFaqEntry(Base):
    __tablename__ = "ai_faq_cache"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    question = Column(Text, nullable=False)
    question_hash = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    times_asked = Column(Integer, nullable=False, default=1)
    times_helpful = Column(Integer, nullable=False, default=0)
    helpfulness_score = Column(Float, nullable=False, default=0.1)
    last_asked_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)


class AiLearningPattern(Base):
    __tablename__ = "ai_learning_patterns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    intent = Column(Text, nullable=False)
    trigger_keywords = Column(JSONB, nullable=False, default=list)
    response_template = Column(Text)
    times_used = Column(Integer, nullable=False, default=1)
    times_successful = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)


class AiConversationContext(Base):
    __tablename__ = "ai_conversation_contexts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), nullable=False)
    topics = Column(JSONB, nullable=False, default=list)
    message_count = Column(Integer, nullable=False, default=0)
    ai_response_count = Column(Integer, nullable=False, default=0)
    sentiment = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)
