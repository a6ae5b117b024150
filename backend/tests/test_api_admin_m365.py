"""API tests for the Microsoft 365 mail integration admin routes"""
import httpx
import pytest
from fastapi.testclient import TestClient

from request_navigator.api.deps import get_m365_admin_service
from request_navigator.domain.enums import NotificationEventType, RequestStatus
from request_navigator.main import create_app
from request_navigator.services.m365_admin_service import M365AdminService
from request_navigator.services.m365_token_manager import M365TokenManager
from tests.conftest import mock_client_factory


class IdentityStub:
    """Identity platform answering devicecode and token calls"""

    def __init__(self):
        self.calls = []
        self.token_response = httpx.Response(400, json={"error": "authorization_pending"})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        if request.url.path.endswith("/devicecode"):
            return httpx.Response(200, json={
                "device_code": "device-abc",
                "user_code": "ABCD-EFGH",
                "verification_uri": "https://microsoft.com/devicelogin",
                "message": "To sign in, enter the code ABCD-EFGH",
                "interval": 5,
                "expires_in": 900,
            })
        return self.token_response


@pytest.fixture
def identity():
    return IdentityStub()


@pytest.fixture
def client(db, settings_repo, request_repo, mail_client, identity):
    token_manager = M365TokenManager(
        settings_repo=settings_repo,
        client_factory=mock_client_factory(identity),
        authority_url="https://login.example.com",
        lease_poll_seconds=0,
        db=db
    )
    service = M365AdminService(
        settings_repo=settings_repo,
        request_repo=request_repo,
        token_manager=token_manager,
        mail_client=mail_client,
        db=db
    )
    app = create_app()
    app.dependency_overrides[get_m365_admin_service] = lambda: service
    return TestClient(app)


def _error_code(response):
    return response.json()["detail"]["error"]["code"]


# =============================================================================
# Settings
# =============================================================================

def test_overview_before_setup(client):
    data = client.get("/api/v1/admin/m365").json()

    assert data["settings"]["enabled"] is False
    assert data["settings"]["recipientsAdmin"] == ""
    assert data["connection"] == {"hasRefreshToken": False, "expiresAt": None}
    assert data["deviceCode"] is None


def test_update_settings_normalizes_lists(client):
    response = client.put("/api/v1/admin/m365", json={
        "enabled": True,
        "tenantId": " tenant-1 ",
        "clientId": "client-1",
        "senderUpn": "cra-mailbox@example.com",
        "recipientsAdmin": "boss@example.com; deputy@example.com\nBOSS@example.com",
        "flowMap": {"submitted": {"design": True}},
        "templates": {"request_created": {"subject": "New {{requestId}}"}},
    })

    assert response.status_code == 200
    saved = response.json()["settings"]
    assert saved["tenantId"] == "tenant-1"
    assert saved["recipientsAdmin"] == "boss@example.com, deputy@example.com"
    assert saved["flowMap"]["submitted"] == {"sales": False, "design": True, "costing": False, "admin": False}
    assert saved["templates"]["request_created"]["subject"] == "New {{requestId}}"

    overview = client.get("/api/v1/admin/m365").json()
    assert overview["settings"]["enabled"] is True


@pytest.mark.parametrize("body", [
    {"recipientsSales": "sales@example.com, not-an-address"},
    {"flowMap": {"archived": {"sales": True}}},
])
def test_update_settings_rejects_bad_values(client, body):
    response = client.put("/api/v1/admin/m365", json=body)

    assert response.status_code == 400
    assert _error_code(response) == "VALIDATION_ERROR"
    assert response.json()["detail"]["error"]["details"]["errors"]


def test_preview_with_sample_request(client, mail_settings):
    response = client.post("/api/v1/admin/m365/preview", json={})

    assert response.status_code == 200
    data = response.json()
    assert data["subject"] == "[CRA] Request CRA00000000 status changed to Submitted"
    assert "Example Client" in data["html"]
    assert "Example comment (optional)." in data["html"]


def test_preview_with_existing_request(client, engine, mail_settings):
    record = engine.create_request({"clientName": "Acme Trailers"}, status=RequestStatus.SUBMITTED)

    response = client.post("/api/v1/admin/m365/preview", json={
        "eventType": "request_created",
        "status": "submitted",
        "requestId": record.request_id,
    })

    data = response.json()
    assert data["subject"] == f"[CRA] Request {record.request_id} submitted"
    assert "Acme Trailers" in data["html"]
    assert f"https://cra.example.com/requests/{record.request_id}" in data["html"]


def test_preview_unknown_status(client):
    response = client.post("/api/v1/admin/m365/preview", json={"status": "archived"})

    assert response.status_code == 400


# =============================================================================
# Connection
# =============================================================================

def test_device_code_flow(client, identity, token_repo, mail_settings):
    started = client.post("/api/v1/admin/m365/device-code")

    assert started.status_code == 200
    data = started.json()
    assert data["userCode"] == "ABCD-EFGH"
    assert data["intervalSeconds"] == 5
    assert data["expiresIn"] == 900
    assert "deviceCode" not in data

    overview = client.get("/api/v1/admin/m365").json()
    assert overview["deviceCode"]["userCode"] == "ABCD-EFGH"
    assert overview["deviceCode"]["status"] == "pending"

    pending = client.post("/api/v1/admin/m365/poll")
    assert pending.json() == {"status": "pending", "intervalSeconds": 5}

    identity.token_response = httpx.Response(200, json={
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_in": 3600,
    })
    connected = client.post("/api/v1/admin/m365/poll")
    assert connected.json() == {"status": "connected"}
    assert token_repo.get_state().refresh_token == "refresh-1"

    overview = client.get("/api/v1/admin/m365").json()
    assert overview["connection"]["hasRefreshToken"] is True
    assert overview["deviceCode"] is None


def test_device_code_needs_app_ids(client, identity):
    response = client.post("/api/v1/admin/m365/device-code")

    assert response.status_code == 400
    assert _error_code(response) == "CONFIGURATION_ERROR"
    assert identity.calls == []


def test_poll_without_session(client, mail_settings):
    response = client.post("/api/v1/admin/m365/poll")

    assert response.status_code == 404
    assert _error_code(response) == "DEVICE_CODE_SESSION_NOT_FOUND"


def test_check_requires_connection(client, mail_settings):
    response = client.post("/api/v1/admin/m365/check")

    assert response.status_code == 400
    assert _error_code(response) == "NOT_AUTHENTICATED"


def test_check_refreshes_token(client, identity, token_repo, mail_settings, connected):
    identity.token_response = httpx.Response(200, json={"access_token": "access-2", "expires_in": 3600})

    response = client.post("/api/v1/admin/m365/check")

    assert response.json() == {"status": "connected"}
    assert token_repo.get_state().access_token == "access-2"
    assert token_repo.get_state().refresh_token == "refresh-1"


def test_check_with_revoked_refresh_token(client, identity, mail_settings, connected):
    identity.token_response = httpx.Response(400, json={"error": "invalid_grant"})

    response = client.post("/api/v1/admin/m365/check")

    assert response.status_code == 400
    assert _error_code(response) == "NOT_AUTHENTICATED"


def test_disconnect(client, token_repo, mail_settings, connected):
    response = client.post("/api/v1/admin/m365/disconnect")

    assert response.json() == {"ok": True}
    assert not token_repo.get_state().has_refresh_token


# =============================================================================
# Sending
# =============================================================================

@pytest.mark.parametrize("to_email", ["first@example.com; second@example.com", ["first@example.com", "second@example.com"]])
def test_send_test_email(client, graph, mail_settings, connected, to_email):
    response = client.post("/api/v1/admin/m365/test-email", json={"toEmail": to_email})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert graph.recipients() == ["first@example.com", "second@example.com"]
    assert graph.subject() == "[CRA] Test email"


def test_send_test_email_needs_recipient(client, graph, mail_settings, connected):
    response = client.post("/api/v1/admin/m365/test-email", json={"toEmail": " "})

    assert response.status_code == 400
    assert graph.messages == []


def test_send_test_email_graph_failure(client, graph, mail_settings, connected):
    graph.statuses = [403]

    response = client.post("/api/v1/admin/m365/test-email", json={"toEmail": "first@example.com"})

    assert response.status_code == 502
    assert _error_code(response) == "TRANSIENT_DELIVERY_FAILURE"


def test_dispatch_now(client, engine, graph, notification_service, settings_repo, mail_settings, connected):
    settings_repo.save_settings(mail_settings.model_copy(update={"admin_digest_enabled": True}))
    record = engine.create_request({"clientName": "Acme Trailers"}, status=RequestStatus.SUBMITTED)
    notification_service.enqueue_request_event(
        record=record,
        event_type=NotificationEventType.REQUEST_CREATED,
        status=RequestStatus.SUBMITTED
    )

    response = client.post("/api/v1/admin/m365/dispatch")

    assert response.status_code == 200
    data = response.json()
    assert data["outbox"]["sent"] == 1
    assert data["digest"]["sent"] == 1
    assert sorted(graph.recipients(i)[0] for i in range(2)) == ["admin@example.com", "design@example.com"]
