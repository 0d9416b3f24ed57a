import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from zapflow.logging_config import get_logger
from zapflow.models import AiConversationContext, AiFaqEntry, AiFeedback, AiLearningPattern

logger = get_logger("learning_service")

# First match wins, so order matters ("problema" is support before complaint).
INTENT_KEYWORDS = {
    "greeting": ["oi", "olá", "bom dia", "boa tarde", "boa noite", "hello", "hi"],
    "price_inquiry": ["preço", "valor", "quanto custa", "custo", "orçamento", "budget"],
    "availability": ["disponível", "tem", "existe", "vocês tem", "disponibilidade"],
    "support": ["ajuda", "suporte", "problema", "erro", "não funciona", "bug"],
    "scheduling": ["agendar", "marcar", "horário", "agenda", "reservar", "appointment"],
    "info": ["informação", "info", "saber", "conhecer", "mais sobre", "explicar"],
    "complaint": ["reclamação", "insatisfeito", "ruim", "péssimo", "problema"],
    "thanks": ["obrigado", "obrigada", "agradeço", "valeu", "thanks"],
    "goodbye": ["tchau", "até mais", "bye", "adeus", "até logo"],
    "order": ["pedido", "comprar", "quero", "pedir", "encomendar"],
    "payment": ["pagamento", "pagar", "pix", "cartão", "boleto", "transferência"],
    "delivery": ["entrega", "frete", "envio", "prazo", "chegada"],
}

FAQ_INTENTS = {"price_inquiry", "availability", "support", "scheduling", "info", "order", "payment", "delivery"}

STOP_WORDS = {
    "o", "a", "os", "as", "um", "uma", "de", "da", "do", "em", "no", "na", "para", "com", "por",
    "que", "qual", "como", "quando", "onde", "é", "são", "foi", "ser", "ter", "eu", "você", "ele",
    "ela", "nós", "eles", "meu", "seu", "isso", "este", "esta", "esse", "essa", "oi", "olá", "bom",
    "boa", "dia", "tarde", "noite", "obrigado", "obrigada", "sim", "não",
}

GENERIC_FALLBACKS = (
    "não entendi muito bem",
    "nao entendi muito bem",
    "pode me explicar o que você está procurando",
    "pode me explicar o que voce esta procurando",
    "estou aqui para ajudar",
)

MAX_KEYWORDS = 10
MAX_TOPICS = 5
MAX_CONTEXT_TOPICS = 10
MIN_FAQ_MESSAGE_LENGTH = 15
MIN_FAQ_KEYWORDS = 2
MIN_FAQ_QUESTION_LENGTH = 8
NEW_FAQ_SCORE = 0.1

_NON_WORD_RE = re.compile(r"[^\w]", re.UNICODE)
_NON_WORD_SPACE_RE = re.compile(r"[^\w\s]", re.UNICODE)


def detect_intent(message: str) -> str:
    text = (message or "").lower()
    for intent, keywords in INTENT_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return intent
    return "general"


def extract_keywords(text: str) -> list[str]:
    """Meaningful words (3+ chars, no stop words), first 10 in order, unique."""
    keywords: list[str] = []
    for raw in (text or "").lower().split():
        word = _NON_WORD_RE.sub("", raw).replace("_", "")
        if len(word) >= 3 and word not in STOP_WORDS and word not in keywords:
            keywords.append(word)
        if len(keywords) >= MAX_KEYWORDS:
            break
    return keywords


def hash_question(question: str) -> str:
    normalized = (question or "").strip().lower()
    normalized = _NON_WORD_SPACE_RE.sub("", normalized).replace("_", "")
    normalized = re.sub(r"\s+", " ", normalized)
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


def can_store_faq(intent: str, message: str, keywords: list[str]) -> bool:
    return (
        intent in FAQ_INTENTS
        and len((message or "").strip()) >= MIN_FAQ_MESSAGE_LENGTH
        and len(keywords) >= MIN_FAQ_KEYWORDS
    )


def is_generic_fallback(answer: str) -> bool:
    normalized = (answer or "").strip().lower()
    return any(fallback in normalized for fallback in GENERIC_FALLBACKS)


def find_helpful_faq(db: Session, tenant_id: UUID, question: str, min_score: float = 0.75) -> Optional[AiFaqEntry]:
    """Learned answer for this exact (normalized) question, if it has proven helpful."""
    entry = (
        db.query(AiFaqEntry)
        .filter(AiFaqEntry.tenant_id == tenant_id, AiFaqEntry.question_hash == hash_question(question))
        .first()
    )
    if entry is None:
        return None
    entry.times_asked = (entry.times_asked or 0) + 1
    entry.last_asked_at = datetime.now(timezone.utc)
    db.flush()
    if (entry.helpfulness_score or 0) < min_score:
        return None
    return entry


def create_or_update_faq(db: Session, tenant_id: UUID, question: str, answer: str, assume_helpful: bool = False) -> Optional[AiFaqEntry]:
    if is_generic_fallback(answer):
        return None
    if len((question or "").strip()) < MIN_FAQ_QUESTION_LENGTH:
        return None

    question_hash = hash_question(question)
    entry = (
        db.query(AiFaqEntry)
        .filter(AiFaqEntry.tenant_id == tenant_id, AiFaqEntry.question_hash == question_hash)
        .first()
    )
    if entry is not None:
        if assume_helpful:
            entry.times_helpful = (entry.times_helpful or 0) + 1
            entry.helpfulness_score = entry.times_helpful / max(entry.times_asked or 1, 1)
        db.flush()
        return entry

    entry = AiFaqEntry(
        tenant_id=tenant_id,
        question=question,
        question_hash=question_hash,
        answer=answer,
        times_asked=1,
        times_helpful=1 if assume_helpful else 0,
        helpfulness_score=1.0 if assume_helpful else NEW_FAQ_SCORE,
        last_asked_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    db.flush()
    return entry


def learn_pattern(
    db: Session,
    tenant_id: UUID,
    intent: str,
    trigger_keywords: list[str],
    response_template: str,
    was_successful: bool = True,
) -> AiLearningPattern:
    pattern = (
        db.query(AiLearningPattern)
        .filter(
            AiLearningPattern.tenant_id == tenant_id,
            AiLearningPattern.intent == intent,
            AiLearningPattern.trigger_keywords == trigger_keywords,
        )
        .first()
    )
    if pattern is None:
        pattern = AiLearningPattern(
            tenant_id=tenant_id,
            intent=intent,
            trigger_keywords=trigger_keywords,
            response_template=response_template,
            times_used=1,
            times_successful=1 if was_successful else 0,
            success_rate=1.0 if was_successful else 0.0,
        )
        db.add(pattern)
    else:
        pattern.times_used = (pattern.times_used or 0) + 1
        if was_successful:
            pattern.times_successful = (pattern.times_successful or 0) + 1
        pattern.success_rate = pattern.times_successful / pattern.times_used
    db.flush()
    return pattern


def update_conversation_context(
    db: Session,
    tenant_id: UUID,
    conversation_id: UUID,
    message: str,
    sentiment: Optional[str] = None,
) -> AiConversationContext:
    topics = extract_keywords(message)[:MAX_TOPICS]
    context = (
        db.query(AiConversationContext)
        .filter(
            AiConversationContext.tenant_id == tenant_id,
            AiConversationContext.conversation_id == conversation_id,
        )
        .first()
    )
    if context is None:
        context = AiConversationContext(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            topics=topics,
            message_count=1,
            ai_response_count=1,
            sentiment=sentiment,
        )
        db.add(context)
    else:
        merged = list(context.topics or [])
        merged.extend(topic for topic in topics if topic not in merged)
        context.topics = merged[:MAX_CONTEXT_TOPICS]
        context.message_count = (context.message_count or 0) + 1
        context.ai_response_count = (context.ai_response_count or 0) + 1
        if sentiment:
            context.sentiment = sentiment
    db.flush()
    return context


def record_feedback(
    db: Session,
    tenant_id: UUID,
    user_message: str,
    ai_response: str,
    rating: str,
    feature: str = "chat",
    conversation_id: Optional[UUID] = None,
    metadata: Optional[dict] = None,
) -> AiFeedback:
    feedback = AiFeedback(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        user_message=user_message,
        ai_response=ai_response,
        feature=feature,
        rating=rating,
        feedback_metadata=metadata or {},
    )
    db.add(feedback)
    db.flush()
    return feedback


@dataclass
class InteractionRecord:
    intent: str
    keywords: list[str] = field(default_factory=list)
    faq_stored: bool = False
    pattern_learned: bool = False


def record_interaction(
    db: Session,
    *,
    tenant_id: UUID,
    conversation_id: UUID,
    session_id: UUID,
    agent_id: UUID,
    user_message: str,
    ai_response: str,
) -> Optional[InteractionRecord]:
    """Feed a sent auto-reply into the learning tables.

    Runs in its own SAVEPOINT; a failure is logged and rolled back without
    touching the reply that was already recorded.
    """
    intent = detect_intent(user_message)
    keywords = extract_keywords(user_message)
    record = InteractionRecord(intent=intent, keywords=keywords)

    try:
        with db.begin_nested():
            if can_store_faq(intent, user_message, keywords):
                record.faq_stored = create_or_update_faq(db, tenant_id, user_message, ai_response) is not None
            update_conversation_context(db, tenant_id, conversation_id, user_message)
            if keywords and intent != "general":
                learn_pattern(db, tenant_id, intent, keywords, ai_response, was_successful=True)
                record.pattern_learned = True
            record_feedback(
                db,
                tenant_id,
                user_message,
                ai_response,
                "neutral",
                feature="whatsapp_auto",
                conversation_id=conversation_id,
                metadata={
                    "conversation_id": str(conversation_id),
                    "session_id": str(session_id),
                    "agent_id": str(agent_id),
                    "intent": intent,
                    "keywords": keywords,
                },
            )
    except Exception as e:
        logger.warning(
            "Failed to record AI interaction",
            extra={"context": {"conversation_id": str(conversation_id), "error": str(e)}},
        )
        return None

    logger.info(
        "AI interaction recorded",
        extra={
            "context": {
                "conversation_id": str(conversation_id),
                "intent": intent,
                "faq_stored": record.faq_stored,
                "message_length": len(user_message),
                "response_length": len(ai_response),
            }
        },
    )
    return record
