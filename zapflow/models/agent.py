import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from zapflow.database import Base
from zapflow.models.session import _utcnow


class AiChatAgent(Base):
    __tablename__ = "ai_chat_agents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    whatsapp_session_id = Column(Text)  # session uuid, NULL, or legacy "default"
    function_definition = Column(Text)
    company_info = Column(Text)
    tone = Column(Text)
    knowledge_guidelines = Column(Text)
    incorrect_info_prevention = Column(Text)
    human_escalation_rules = Column(Text)
    useful_links = Column(Text)
    conversation_examples = Column(Text)
    custom_instructions = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=_utcnow, onupdate=_utcnow)

    documents = relationship("AiKnowledgeDocument", back_populates="agent")

    def instructions(self) -> dict:
        return {
            "function_definition": self.function_definition,
            "company_info": self.company_info,
            "tone": self.tone,
            "knowledge_guidelines": self.knowledge_guidelines,
            "incorrect_info_prevention": self.incorrect_info_prevention,
            "human_escalation_rules": self.human_escalation_rules,
            "useful_links": self.useful_links,
            "conversation_examples": self.conversation_examples,
            "custom_instructions": self.custom_instructions,
        }


class AiKnowledgeDocument(Base):
    __tablename__ = "ai_agent_documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("ai_chat_agents.id"), nullable=False)
    name = Column(Text, nullable=False)
    content = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), default=_utcnow)

    agent = relationship("AiChatAgent", back_populates="documents")
