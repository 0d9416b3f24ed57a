from unittest.mock import MagicMock, Mock, patch

import httpx

from zapflow.services.alert_service import (
    alert_critical,
    alert_error,
    alert_warning,
    send_alert,
)


class TestSendAlert:
    @patch("zapflow.services.alert_service.ALERT_BOT_TOKEN", None)
    @patch("zapflow.services.alert_service.ALERT_CHAT_ID", None)
    def test_returns_false_when_not_configured(self):
        result = send_alert("ERROR", "Test message")
        assert result is False

    @patch("zapflow.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("zapflow.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("zapflow.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Reply send failed")

        assert result is True
        call_args = mock_client.post.call_args
        assert "api.telegram.org" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "Reply send failed" in json_data["text"]

    @patch("zapflow.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("zapflow.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("zapflow.services.alert_service.httpx.Client")
    def test_includes_context_and_skips_none_values(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        send_alert("ERROR", "Test message", {"conversation_id": "abc-123", "error": None})

        text = mock_client.post.call_args[1]["json"]["text"]
        assert "conversation_id: abc-123" in text
        assert "error:" not in text

    @patch("zapflow.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("zapflow.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("zapflow.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=400)

        assert send_alert("ERROR", "Test message") is False

    @patch("zapflow.services.alert_service.ALERT_BOT_TOKEN", "test-token")
    @patch("zapflow.services.alert_service.ALERT_CHAT_ID", "test-chat")
    @patch("zapflow.services.alert_service.httpx.Client")
    def test_returns_false_on_transport_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = httpx.ConnectError("Network error")

        assert send_alert("ERROR", "Test message") is False


class TestAlertHelpers:
    @patch("zapflow.services.alert_service.send_alert")
    def test_alert_error(self, mock_send):
        mock_send.return_value = True
        result = alert_error("Error message", {"key": "value"})
        mock_send.assert_called_once_with("ERROR", "Error message", {"key": "value"})
        assert result is True

    @patch("zapflow.services.alert_service.send_alert")
    def test_alert_critical(self, mock_send):
        alert_critical("Critical message")
        mock_send.assert_called_once_with("CRITICAL", "Critical message", None)

    @patch("zapflow.services.alert_service.send_alert")
    def test_alert_warning(self, mock_send):
        alert_warning("Warning message")
        mock_send.assert_called_once_with("WARNING", "Warning message", None)
