from typing import Optional

import httpx

from zapflow.config import settings
from zapflow.logging_config import get_logger

logger = get_logger("whatsapp_client")


class WhatsappGatewayClient:
    """HTTP client for the WhatsApp gateway service (sessions, contacts, outbound text)."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.whatsapp_service_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.whatsapp_service_timeout

    def _make_request(self, method: str, path: str, json: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
        """Call the gateway. Transport and HTTP errors come back as `{"success": False, "error": ...}`."""
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=timeout or self.timeout) as client:
                response = client.request(method, url, json=json)
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp gateway error: {e}", extra={"context": {"path": path}})
            return {"success": False, "error": str(e)}

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.status_code >= 400:
            logger.warning(
                "WhatsApp gateway returned error status",
                extra={"context": {"path": path, "status": response.status_code, "body": response.text[:200]}},
            )
            data.setdefault("error", f"HTTP {response.status_code}")
            data["success"] = False
            return data

        data.setdefault("success", True)
        return data

    def send_text(self, session_id: str, to: str, text: str) -> dict:
        """Send a text message. On success `data.messageId` carries the provider id."""
        return self._make_request(
            "POST",
            "/messages/send/text",
            json={"sessionId": session_id, "to": to, "text": text},
        )

    def get_session_status(self, session_id: str) -> dict:
        return self._make_request("GET", f"/sessions/{session_id}/status", timeout=10)

    def get_owner_push_name(self, session_id: str) -> Optional[str]:
        """Display name of the account the session is logged into."""
        result = self.get_session_status(session_id)
        if not result.get("success"):
            return None
        data = result.get("data") or {}
        push_name = data.get("pushName") if isinstance(data, dict) else None
        return push_name.strip() if isinstance(push_name, str) and push_name.strip() else None

    def get_contact_info(self, session_id: str, jid: str) -> dict:
        return self._make_request("POST", f"/sessions/{session_id}/contact-info", json={"jid": jid}, timeout=5)

    def get_contact_name(self, session_id: str, jid: str) -> Optional[str]:
        result = self.get_contact_info(session_id, jid)
        if not result.get("success"):
            return None
        data = result.get("data") or {}
        if not isinstance(data, dict):
            return None
        name = (data.get("pushName") or data.get("name") or "").strip()
        return name or None


def extract_sent_message_id(response: dict) -> Optional[str]:
    data = response.get("data") if isinstance(response, dict) else None
    if isinstance(data, dict) and data.get("messageId"):
        return str(data["messageId"])
    return None
