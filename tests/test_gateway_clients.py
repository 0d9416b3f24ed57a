from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from zapflow.services.llm import LLMError, OpenAIProvider
from zapflow.services.whatsapp_client import WhatsappGatewayClient, extract_sent_message_id


def _http_client(mock_client_class, status_code=200, payload=None, side_effect=None):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    response = Mock(status_code=status_code, text="body")
    response.json.return_value = payload if payload is not None else {}
    if side_effect is not None:
        mock_client.request.side_effect = side_effect
        mock_client.post.side_effect = side_effect
    else:
        mock_client.request.return_value = response
        mock_client.post.return_value = response
    return mock_client


class TestWhatsappGatewayClient:
    @patch("zapflow.services.whatsapp_client.httpx.Client")
    def test_send_text(self, mock_client_class):
        mock_client = _http_client(mock_client_class, payload={"data": {"messageId": "OUT-1"}})

        result = WhatsappGatewayClient(base_url="http://gw:3001/").send_text("s-1", "5511@s.whatsapp.net", "Oi")

        assert result["success"] is True
        assert extract_sent_message_id(result) == "OUT-1"
        args, kwargs = mock_client.request.call_args
        assert args == ("POST", "http://gw:3001/messages/send/text")
        assert kwargs["json"] == {"sessionId": "s-1", "to": "5511@s.whatsapp.net", "text": "Oi"}

    @patch("zapflow.services.whatsapp_client.httpx.Client")
    def test_http_error_status(self, mock_client_class):
        _http_client(mock_client_class, status_code=503, payload={"message": "down"})

        result = WhatsappGatewayClient(base_url="http://gw").send_text("s-1", "x", "Oi")

        assert result["success"] is False
        assert result["error"] == "HTTP 503"

    @patch("zapflow.services.whatsapp_client.httpx.Client")
    def test_transport_error(self, mock_client_class):
        _http_client(mock_client_class, side_effect=httpx.ConnectError("refused"))

        result = WhatsappGatewayClient(base_url="http://gw").get_session_status("s-1")

        assert result == {"success": False, "error": "refused"}

    @patch("zapflow.services.whatsapp_client.httpx.Client")
    def test_owner_push_name(self, mock_client_class):
        _http_client(mock_client_class, payload={"success": True, "data": {"pushName": " Loja Central "}})
        assert WhatsappGatewayClient(base_url="http://gw").get_owner_push_name("s-1") == "Loja Central"

    @patch("zapflow.services.whatsapp_client.httpx.Client")
    def test_contact_name_falls_back_to_name(self, mock_client_class):
        mock_client = _http_client(mock_client_class, payload={"data": {"pushName": "", "name": "Maria"}})

        assert WhatsappGatewayClient(base_url="http://gw").get_contact_name("s-1", "99@lid") == "Maria"
        assert mock_client.request.call_args[1]["json"] == {"jid": "99@lid"}

    def test_extract_sent_message_id_missing(self):
        assert extract_sent_message_id({"success": True}) is None


class TestOpenAIProvider:
    @patch("zapflow.services.llm.openai_provider.httpx.Client")
    def test_generate(self, mock_client_class):
        mock_client = _http_client(
            mock_client_class,
            payload={"model": "llama", "choices": [{"message": {"content": " Olá! "}}], "usage": {"total_tokens": 9}},
        )

        response = OpenAIProvider(api_key="k", base_url="https://llm.example/v1/").generate(
            [{"role": "user", "content": "oi"}], max_tokens=100
        )

        assert response.content == "Olá!"
        assert response.usage == {"total_tokens": 9}
        args, kwargs = mock_client.post.call_args
        assert args[0] == "https://llm.example/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer k"
        assert kwargs["json"]["max_tokens"] == 100

    @patch("zapflow.services.llm.openai_provider.httpx.Client")
    def test_rate_limit_status(self, mock_client_class):
        _http_client(mock_client_class, status_code=429)

        with pytest.raises(LLMError) as exc_info:
            OpenAIProvider(api_key="k").generate([{"role": "user", "content": "oi"}])

        assert exc_info.value.is_rate_limited is True

    @patch("zapflow.services.llm.openai_provider.httpx.Client")
    def test_transport_error(self, mock_client_class):
        _http_client(mock_client_class, side_effect=httpx.ReadTimeout("timeout"))

        with pytest.raises(LLMError) as exc_info:
            OpenAIProvider(api_key="k").generate([{"role": "user", "content": "oi"}])

        assert exc_info.value.status_code is None
