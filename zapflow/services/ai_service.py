"""Reply generation for the WhatsApp AI agent.

Cheapest source first: canned replies for greetings/thanks/goodbyes, then a
learned FAQ answer that has proven helpful, and only then the LLM with a
compact prompt.
"""

import os
import re
import time
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from zapflow.config import settings
from zapflow.logging_config import get_logger
from zapflow.models import AiChatAgent
from zapflow.services.learning_service import find_helpful_faq
from zapflow.services.llm import LLMError, LLMProvider, OpenAIProvider
from zapflow.services.result import Result

logger = get_logger("ai_service")

LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "30"))
LLM_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.7"))
MAX_CHAT_RESPONSE_TOKENS = 150
MAX_SIMPLE_RESPONSE_TOKENS = 100
MAX_KNOWLEDGE_BASE_CHARS = 200
FAQ_MIN_HELPFULNESS = 0.75

SYSTEM_PREAMBLE = "Assistente virtual em PT-BR."

_GREETING_REPLY = "Olá! Como posso ajudar você hoje?"
_THANKS_REPLY = "Por nada! Estou à disposição."
_GOODBYE_REPLY = "Até mais! Foi um prazer ajudar."

QUICK_RESPONSES = {
    "oi": _GREETING_REPLY,
    "olá": _GREETING_REPLY,
    "ola": _GREETING_REPLY,
    "hello": _GREETING_REPLY,
    "hi": _GREETING_REPLY,
    "bom dia": "Bom dia! Como posso ajudar?",
    "boa tarde": "Boa tarde! Como posso ajudar?",
    "boa noite": "Boa noite! Como posso ajudar?",
    "ok": "Entendido! Posso ajudar com mais alguma coisa?",
    "obrigado": _THANKS_REPLY,
    "obrigada": _THANKS_REPLY,
    "valeu": "Por nada! Qualquer dúvida, estou aqui.",
    "tchau": _GOODBYE_REPLY,
    "bye": _GOODBYE_REPLY,
    "até mais": "Até mais! Volte sempre.",
    "ate mais": "Até mais! Volte sempre.",
}

SIMPLE_MESSAGE_PATTERNS = (
    re.compile(r"^(oi|olá|ola|hello|hi|hey|eai|e ai)[\s!?.]*$"),
    re.compile(r"^(bom dia|boa tarde|boa noite)[\s!?.]*$"),
    re.compile(r"^(ok|sim|não|nao|obrigado|obrigada|valeu|thanks)[\s!?.]*$"),
    re.compile(r"^(tchau|bye|adeus|até mais|ate mais)[\s!?.]*$"),
    re.compile(r"^(tudo bem|como vai|beleza)[\s!?]*$"),
)

QUESTION_HINTS = ("como", "qual", "quando", "onde", "quanto", "preço", "valor", "horário", "funciona", "serviço", "produto", "?")

# (instruction field, label, max chars)
INSTRUCTION_SECTIONS = (
    ("function_definition", "Sua função: {}", 300),
    ("company_info", "Sobre a empresa/produtos: {}", 400),
    ("tone", "Tom da conversa: {}", 150),
    ("knowledge_guidelines", "Orientações de conhecimento: {}", 200),
    ("incorrect_info_prevention", "IMPORTANTE - Prevenção de erros: {}", 200),
    ("human_escalation_rules", "Encaminhar para humano quando: {}", 200),
    ("useful_links", "Links úteis para compartilhar: {}", 200),
    ("conversation_examples", "Exemplos de conversa:\n{}", 300),
)

_llm_provider: Optional[LLMProvider] = None


@dataclass
class AiReply:
    text: str
    source: str  # quick_response, learned_faq, llm
    model: Optional[str] = None


def get_llm_provider() -> Optional[LLMProvider]:
    """Get or create the LLM provider; None when no API key is configured."""
    global _llm_provider
    if _llm_provider is None and settings.llm_api_key:
        _llm_provider = OpenAIProvider(
            api_key=settings.llm_api_key,
            default_model=settings.llm_model,
            base_url=settings.llm_base_url,
        )
    return _llm_provider


def truncate(text: str, max_length: int) -> str:
    return text if len(text) <= max_length else text[:max_length] + "..."


def get_quick_response(message: str) -> Optional[str]:
    normalized = (message or "").strip().lower()
    cleaned = re.sub(r"[!?.]+$", "", normalized)
    return QUICK_RESPONSES.get(cleaned) or QUICK_RESPONSES.get(normalized)


def is_simple_message(message: str) -> bool:
    normalized = (message or "").strip().lower()
    if any(pattern.match(normalized) for pattern in SIMPLE_MESSAGE_PATTERNS):
        return True
    return len(normalized) < 15


def needs_knowledge_base(message: str) -> bool:
    lowered = (message or "").lower()
    return any(hint in lowered for hint in QUESTION_HINTS)


def build_knowledge_base(documents: Iterable) -> str:
    parts = []
    for document in documents:
        content = (getattr(document, "content", None) or "").strip()
        if content:
            parts.append(f"\n\n--- {document.name} ---\n{content}")
    return "".join(parts)


def build_system_prompt(instructions: dict) -> str:
    custom = (instructions.get("custom_instructions") or "").strip()
    if custom:
        return f"{SYSTEM_PREAMBLE}\n\n{truncate(custom, 2000)}"

    parts = [SYSTEM_PREAMBLE]
    for key, template, limit in INSTRUCTION_SECTIONS:
        value = (instructions.get(key) or "").strip()
        if value:
            parts.append(template.format(truncate(value, limit)))
    return "\n\n".join(parts)


def build_user_prompt(message: str, knowledge_base: str = "") -> str:
    if knowledge_base.strip() and needs_knowledge_base(message):
        return f"KB:{truncate(knowledge_base.strip(), MAX_KNOWLEDGE_BASE_CHARS)}\nMsg:{message}"
    return message


def generate_reply(
    db: Session,
    tenant_id: UUID,
    agent: AiChatAgent,
    message: str,
    provider: Optional[LLMProvider] = None,
) -> Result[AiReply]:
    """Produce the agent's reply to `message`."""
    quick = get_quick_response(message)
    if quick:
        logger.debug("AI quick response", extra={"context": {"message": message[:30]}})
        return Result.success(AiReply(text=quick, source="quick_response"))

    faq = find_helpful_faq(db, tenant_id, message, min_score=FAQ_MIN_HELPFULNESS)
    if faq is not None:
        logger.info("AI using learned FAQ response", extra={"context": {"question": message[:50]}})
        return Result.success(AiReply(text=faq.answer, source="learned_faq"))

    provider = provider or get_llm_provider()
    if provider is None:
        return Result.failure("LLM API key not configured", "llm_not_configured")

    messages = [
        {"role": "system", "content": build_system_prompt(agent.instructions())},
        {"role": "user", "content": build_user_prompt(message, build_knowledge_base(agent.documents or []))},
    ]
    max_tokens = MAX_SIMPLE_RESPONSE_TOKENS if is_simple_message(message) else MAX_CHAT_RESPONSE_TOKENS

    started = time.monotonic()
    try:
        response = provider.generate(
            messages,
            temperature=LLM_TEMPERATURE,
            max_tokens=max_tokens,
            timeout_seconds=LLM_TIMEOUT_SECONDS,
        )
    except LLMError as e:
        code = "llm_rate_limited" if e.is_rate_limited else "llm_error"
        return Result.failure(str(e), code)

    logger.info(
        "LLM reply generated",
        extra={
            "context": {
                "agent_id": str(agent.id),
                "model": response.model,
                "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                "usage": response.usage,
            }
        },
    )
    if not response.content:
        return Result.failure("Empty LLM response", "llm_empty")
    return Result.success(AiReply(text=response.content, source="llm", model=response.model))
