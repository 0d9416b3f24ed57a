import time
import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from zapflow.config import settings
from zapflow.database import get_db
from zapflow.main import app
from zapflow.routers import whatsapp_webhook as webhook_router
from zapflow.services.identity_service import Resolution
from zapflow.services.result import Result
from zapflow.services.session_state import SessionStatus

ROUTER = "zapflow.routers.whatsapp_webhook"
SESSION_ID = "7d0f2c1e-0000-4000-8000-000000000001"


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _no_secret():
    with patch.object(settings, "whatsapp_webhook_secret", None), patch(f"{ROUTER}.alert_warning"):
        webhook_router._missing_secret_warned = True
        yield


@pytest.fixture
def session():
    return SimpleNamespace(id=uuid.UUID(SESSION_ID), tenant_id=uuid.uuid4(), user_id=None, deleted_at=None, status="connected")


def _message_payload(**overrides):
    payload = {
        "event": "message",
        "sessionId": SESSION_ID,
        "messageId": "ABC123",
        "from": "5511987654321@s.whatsapp.net",
        "fromMe": False,
        "pushName": "Maria",
        "type": "text",
        "text": "Quanto custa o plano?",
        "timestamp": int(time.time()),
    }
    payload.update(overrides)
    return payload


class TestWebhookGuards:
    def test_get_reachability_check(self, client):
        response = client.get("/whatsapp/webhook")
        assert response.status_code == 200
        assert response.json()["ok"] is True

    def test_rejects_wrong_secret(self, client):
        with patch.object(settings, "whatsapp_webhook_secret", "s3cret"):
            response = client.post("/whatsapp/webhook", json=_message_payload(), headers={"X-Webhook-Secret": "nope"})
        assert response.status_code == 401

    def test_accepts_secret_in_query(self, client, session):
        with patch.object(settings, "whatsapp_webhook_secret", "s3cret"), patch(
            f"{ROUTER}.get_session", return_value=None
        ):
            response = client.post("/whatsapp/webhook?webhook_secret=s3cret", json=_message_payload())
        assert response.status_code == 404

    def test_missing_secret_alerts_once(self, client):
        webhook_router._missing_secret_warned = False
        with patch(f"{ROUTER}.alert_warning") as mock_alert, patch(f"{ROUTER}.get_session", return_value=None):
            client.post("/whatsapp/webhook", json=_message_payload())
            client.post("/whatsapp/webhook", json=_message_payload())
        mock_alert.assert_called_once()

    def test_invalid_json(self, client):
        response = client.post(
            "/whatsapp/webhook", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.json() == {
            "success": False,
            "message": "Invalid JSON payload",
            "conversation_id": None,
            "message_id": None,
            "auto_reply_scheduled": False,
        }

    def test_missing_session_id(self, client):
        response = client.post("/whatsapp/webhook", json={"event": "message"})
        assert response.json()["message"] == "Missing event or sessionId"

    def test_unknown_event(self, client):
        response = client.post("/whatsapp/webhook", json={"event": "typing", "sessionId": SESSION_ID})
        assert response.json()["message"] == "Unknown event: typing"

    def test_reconnecting_is_accepted_and_ignored(self, client, db, session):
        with patch(f"{ROUTER}.get_session", return_value=session), patch(
            f"{ROUTER}.apply_session_event"
        ) as session_event, patch(f"{ROUTER}.apply_status_update") as status_update:
            response = client.post("/whatsapp/webhook", json={"event": "reconnecting", "sessionId": SESSION_ID})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["message"] == "Ignored: reconnecting"
        session_event.assert_not_called()
        status_update.assert_not_called()
        db.commit.assert_not_called()

    def test_message_without_sender(self, client):
        payload = _message_payload()
        payload.pop("from")
        response = client.post("/whatsapp/webhook", json=payload)
        assert response.json()["success"] is False

    def test_unknown_session(self, client):
        with patch(f"{ROUTER}.get_session", return_value=None):
            response = client.post("/whatsapp/webhook", json=_message_payload())
        assert response.status_code == 404

    def test_deleted_session_is_ignored(self, client, session):
        session.deleted_at = "2025-01-01"
        with patch(f"{ROUTER}.get_session", return_value=session), patch(f"{ROUTER}.resolve_conversation") as resolve:
            response = client.post("/whatsapp/webhook", json=_message_payload())
        assert response.json()["success"] is True
        assert "deleted" in response.json()["message"]
        resolve.assert_not_called()


class TestLifecycleEvents:
    def test_qr_code(self, client, session):
        with patch(f"{ROUTER}.get_session", return_value=session), patch(
            f"{ROUTER}.apply_session_event", return_value=Result.success(SessionStatus.QR_CODE)
        ) as apply_event:
            response = client.post("/whatsapp/webhook", json={"event": "qr_code", "sessionId": SESSION_ID, "qrCode": "QR"})

        assert response.json()["message"] == "Session qr_code"
        assert apply_event.call_args[0][2].qr_code == "QR"

    def test_stale_event(self, client, session):
        with patch(f"{ROUTER}.get_session", return_value=session), patch(
            f"{ROUTER}.apply_session_event", return_value=Result.failure("late", "stale_event")
        ):
            response = client.post("/whatsapp/webhook", json={"event": "qr_code", "sessionId": SESSION_ID})

        assert response.json() == {
            "success": True,
            "message": "Ignored: stale_event",
            "conversation_id": None,
            "message_id": None,
            "auto_reply_scheduled": False,
        }


class TestMessageEvents:
    def _patches(self, session, conversation, message, created=True, existing=None):
        return (
            patch(f"{ROUTER}.get_session", return_value=session),
            patch(f"{ROUTER}.find_message", return_value=existing),
            patch(
                f"{ROUTER}.resolve_conversation",
                return_value=Result.success((conversation, Resolution.CREATED)),
            ),
            patch(f"{ROUTER}.record_message", return_value=(message, created)),
            patch(f"{ROUTER}.touch_session"),
            patch(f"{ROUTER}.run_auto_response", new=Mock()),
        )

    def test_incoming_message_schedules_reply(self, client, db, session):
        conversation = SimpleNamespace(id=uuid.uuid4())
        message = SimpleNamespace(message_id="ABC123", direction="incoming")
        p_session, p_find, p_resolve, p_record, p_touch, p_run = self._patches(session, conversation, message)

        with p_session, p_find, p_resolve, p_record, p_touch, p_run as run:
            response = client.post("/whatsapp/webhook", json=_message_payload())
            run_calls = run.call_args_list

        body = response.json()
        assert body["success"] is True
        assert body["conversation_id"] == str(conversation.id)
        assert body["message_id"] == "ABC123"
        assert body["auto_reply_scheduled"] is True
        db.commit.assert_called_once()
        assert run_calls[0][0] == (session.id, conversation.id, "Quanto custa o plano?", "ABC123")

    def test_outgoing_message_is_recorded_without_reply(self, client, db, session):
        conversation = SimpleNamespace(id=uuid.uuid4())
        message = SimpleNamespace(message_id="ABC123", direction="outgoing")
        p_session, p_find, p_resolve, p_record, p_touch, p_run = self._patches(session, conversation, message)

        with p_session, p_find, p_resolve, p_record, p_touch, p_run as run:
            response = client.post("/whatsapp/webhook", json=_message_payload(fromMe=True))

        assert response.json()["auto_reply_scheduled"] is False
        run.assert_not_called()
        db.commit.assert_called_once()

    def test_duplicate_delivery_short_circuits(self, client, db, session):
        conversation = SimpleNamespace(id=uuid.uuid4())
        message = SimpleNamespace(message_id="ABC123", direction="incoming")
        p_session, p_find, p_resolve, p_record, p_touch, p_run = self._patches(
            session, conversation, message, existing=message
        )

        with p_session, p_find, p_resolve as resolve, p_record, p_touch, p_run:
            response = client.post("/whatsapp/webhook", json=_message_payload())

        assert response.json()["message"] == "Duplicate message"
        resolve.assert_not_called()
        db.commit.assert_not_called()

    def test_concurrent_duplicate_rolls_back(self, client, db, session):
        conversation = SimpleNamespace(id=uuid.uuid4())
        message = SimpleNamespace(message_id="ABC123", direction="incoming")
        p_session, p_find, p_resolve, p_record, p_touch, p_run = self._patches(
            session, conversation, message, created=False
        )

        with p_session, p_find, p_resolve, p_record, p_touch, p_run as run:
            response = client.post("/whatsapp/webhook", json=_message_payload())

        assert response.json()["message"] == "Duplicate message"
        db.rollback.assert_called_once()
        db.commit.assert_not_called()
        run.assert_not_called()

    def test_resolution_failure(self, client, db, session):
        with patch(f"{ROUTER}.get_session", return_value=session), patch(
            f"{ROUTER}.find_message", return_value=None
        ), patch(f"{ROUTER}.resolve_conversation", return_value=Result.failure("no jid", "missing_jid")):
            response = client.post("/whatsapp/webhook", json=_message_payload())

        assert response.json()["success"] is False
        db.rollback.assert_called_once()

    def test_system_message_type_ignored(self, client, session):
        with patch(f"{ROUTER}.get_session", return_value=session), patch(f"{ROUTER}.resolve_conversation") as resolve:
            response = client.post("/whatsapp/webhook", json=_message_payload(type="protocolMessage"))

        assert response.json()["message"] == "System message ignored"
        resolve.assert_not_called()


class TestStatusEvents:
    def test_status_update(self, client, db, session):
        with patch(f"{ROUTER}.get_session", return_value=session), patch(
            f"{ROUTER}.apply_status_update", return_value=SimpleNamespace(status="read")
        ) as apply_status:
            response = client.post(
                "/whatsapp/webhook",
                json={"event": "message_status", "sessionId": SESSION_ID, "messageId": "ABC123", "status": "read"},
            )

        assert response.json()["message"] == "Status updated"
        apply_status.assert_called_once_with(db, "ABC123", "read")
        db.commit.assert_called_once()

    def test_status_unchanged(self, client, session):
        with patch(f"{ROUTER}.get_session", return_value=session), patch(
            f"{ROUTER}.apply_status_update", return_value=None
        ):
            response = client.post(
                "/whatsapp/webhook",
                json={"event": "message_status", "sessionId": SESSION_ID, "messageId": "ABC123", "status": "sent"},
            )

        assert response.json()["message"] == "Status unchanged"
