import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from zapflow.database import get_db
from zapflow.main import app
from zapflow.services.merge_service import ContactNameReport, MergeGroup, MergeReport

ADMIN = "zapflow.routers.admin"
SESSION_ID = str(uuid.uuid4())


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def session():
    return SimpleNamespace(id=uuid.UUID(SESSION_ID), tenant_id=uuid.uuid4(), user_id=None, deleted_at=None)


def _headers(token="admin-secret"):
    return {"X-Admin-Token": token}


class TestAdminAuth:
    def test_not_configured(self, client, monkeypatch):
        monkeypatch.delenv("ADMIN_TOKEN", raising=False)
        response = client.post(f"/admin/whatsapp/sessions/{SESSION_ID}/merge-duplicates", headers=_headers())
        assert response.status_code == 500

    def test_wrong_token(self, client, mock_env):
        response = client.post(f"/admin/whatsapp/sessions/{SESSION_ID}/merge-duplicates", headers=_headers("nope"))
        assert response.status_code == 401

    def test_unknown_session(self, client, mock_env):
        with patch(f"{ADMIN}.get_session", return_value=None):
            response = client.post(f"/admin/whatsapp/sessions/{SESSION_ID}/merge-duplicates", headers=_headers())
        assert response.status_code == 404


class TestMergeDuplicates:
    def test_dry_run(self, client, db, session, mock_env):
        report = MergeReport(
            session_id=SESSION_ID,
            dry_run=True,
            groups=[MergeGroup("k", "5511987654321@s.whatsapp.net", ["d"], ["99887766@lid"], messages_moved=3)],
        )
        with patch(f"{ADMIN}.get_session", return_value=session), patch(
            f"{ADMIN}.merge_duplicate_conversations", return_value=report
        ) as merge:
            response = client.post(
                f"/admin/whatsapp/sessions/{SESSION_ID}/merge-duplicates?dry_run=true",
                headers=_headers(),
            )

        body = response.json()
        assert body["success"] is True
        assert body["merged"] == 1
        assert body["dry_run"] is True
        assert body["groups"][0]["messages_moved"] == 3
        assert merge.call_args[1]["dry_run"] is True


class TestFixContactNames:
    def test_reports_counts(self, client, session, mock_env):
        with patch(f"{ADMIN}.get_session", return_value=session), patch(
            f"{ADMIN}.fix_contact_names", return_value=ContactNameReport(fixed=2, cleared=1, already_ok=5)
        ):
            response = client.post(f"/admin/whatsapp/sessions/{SESSION_ID}/fix-contact-names", headers=_headers())

        body = response.json()
        assert body["fixed"] == 2
        assert body["cleared"] == 1
        assert body["already_ok"] == 5
        assert "fixed: 2" in body["message"]


class TestOpsEndpoints:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_db_check(self, client, db):
        db.query.return_value.count.return_value = 3
        body = client.get("/db-check").json()
        assert body["sessions"] == 3
        assert body["messages"] == 3

    def test_version(self, client, monkeypatch):
        monkeypatch.setenv("APP_VERSION", "1.2.3")
        assert client.get("/admin/version").json()["version"] == "1.2.3"

    def test_alerts_test(self, client, mock_env):
        with patch("zapflow.routers.alerts.send_alert", return_value=True) as mock_send:
            response = client.post("/alerts/test", headers=_headers())
        assert response.json()["success"] is True
        mock_send.assert_called_once()

    def test_alerts_test_requires_token(self, client, mock_env):
        assert client.post("/alerts/test", headers=_headers("nope")).status_code == 401
