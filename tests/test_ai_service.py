import uuid
from unittest.mock import Mock, patch

from zapflow.models import AiChatAgent, AiFaqEntry, AiKnowledgeDocument
from zapflow.services.ai_service import (
    build_knowledge_base,
    build_system_prompt,
    build_user_prompt,
    generate_reply,
    get_quick_response,
    is_simple_message,
)
from zapflow.services.llm import LLMError, LLMResponse


def _agent(**fields):
    agent = AiChatAgent(id=uuid.uuid4(), tenant_id=uuid.uuid4(), name="Atendente", is_active=True, **fields)
    agent.documents = [AiKnowledgeDocument(name="Planos", content="Plano premium: R$ 99/mês")]
    return agent


class TestQuickResponses:
    def test_greeting_with_punctuation(self):
        assert get_quick_response("Oi!") == "Olá! Como posso ajudar você hoje?"

    def test_thanks(self):
        assert get_quick_response("  obrigada ") == "Por nada! Estou à disposição."

    def test_not_quick(self):
        assert get_quick_response("Quanto custa o plano?") is None


class TestPrompts:
    def test_is_simple_message(self):
        assert is_simple_message("bom dia!") is True
        assert is_simple_message("Quero saber sobre o plano premium anual") is False

    def test_custom_instructions_override_sections(self):
        prompt = build_system_prompt({"custom_instructions": "Seja breve.", "tone": "formal"})
        assert prompt == "Assistente virtual em PT-BR.\n\nSeja breve."

    def test_sections(self):
        prompt = build_system_prompt({"function_definition": "Vender planos", "tone": "amigável"})
        assert "Sua função: Vender planos" in prompt
        assert "Tom da conversa: amigável" in prompt

    def test_knowledge_base_only_for_questions(self):
        kb = build_knowledge_base([AiKnowledgeDocument(name="Planos", content="Premium R$ 99")])
        assert "--- Planos ---" in kb
        assert build_user_prompt("Qual o preço?", kb).startswith("KB:")
        assert build_user_prompt("Quero comprar", kb) == "Quero comprar"


class TestGenerateReply:
    def test_quick_response_skips_llm(self):
        provider = Mock()

        result = generate_reply(Mock(), uuid.uuid4(), _agent(), "oi", provider=provider)

        assert result.value.source == "quick_response"
        provider.generate.assert_not_called()

    @patch("zapflow.services.ai_service.find_helpful_faq")
    def test_learned_faq(self, mock_find):
        mock_find.return_value = AiFaqEntry(answer="R$ 99 por mês")
        provider = Mock()

        result = generate_reply(Mock(), uuid.uuid4(), _agent(), "Quanto custa o plano?", provider=provider)

        assert result.value.text == "R$ 99 por mês"
        assert result.value.source == "learned_faq"
        provider.generate.assert_not_called()

    @patch("zapflow.services.ai_service.find_helpful_faq", return_value=None)
    @patch("zapflow.services.ai_service.get_llm_provider", return_value=None)
    def test_no_provider(self, _mock_provider, _mock_find):
        result = generate_reply(Mock(), uuid.uuid4(), _agent(), "Quanto custa o plano?")
        assert result.error_code == "llm_not_configured"

    @patch("zapflow.services.ai_service.find_helpful_faq", return_value=None)
    def test_llm_reply(self, _mock_find):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content="Custa R$ 99.", model="llama-3.3-70b-versatile")

        result = generate_reply(Mock(), uuid.uuid4(), _agent(tone="amigável"), "Quanto custa o plano premium?", provider=provider)

        assert result.ok is True
        assert result.value.source == "llm"
        messages = provider.generate.call_args[0][0]
        assert messages[0]["role"] == "system"
        assert "Tom da conversa: amigável" in messages[0]["content"]
        assert messages[1]["content"].startswith("KB:")
        assert provider.generate.call_args[1]["max_tokens"] == 150

    @patch("zapflow.services.ai_service.find_helpful_faq", return_value=None)
    def test_rate_limited(self, _mock_find):
        provider = Mock()
        provider.generate.side_effect = LLMError("LLM API error: 429", status_code=429)

        result = generate_reply(Mock(), uuid.uuid4(), _agent(), "Quanto custa o plano?", provider=provider)

        assert result.error_code == "llm_rate_limited"

    @patch("zapflow.services.ai_service.find_helpful_faq", return_value=None)
    def test_provider_error(self, _mock_find):
        provider = Mock()
        provider.generate.side_effect = LLMError("LLM transport error: timeout")

        result = generate_reply(Mock(), uuid.uuid4(), _agent(), "Quanto custa o plano?", provider=provider)

        assert result.error_code == "llm_error"

    @patch("zapflow.services.ai_service.find_helpful_faq", return_value=None)
    def test_empty_reply(self, _mock_find):
        provider = Mock()
        provider.generate.return_value = LLMResponse(content="", model="m")

        result = generate_reply(Mock(), uuid.uuid4(), _agent(), "Quanto custa o plano?", provider=provider)

        assert result.error_code == "llm_empty"
