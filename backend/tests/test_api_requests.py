"""API tests for the request routes"""
import pytest
from fastapi.testclient import TestClient

from request_navigator.api.deps import get_request_service
from request_navigator.domain.enums import OutboxStatus
from request_navigator.main import create_app
from request_navigator.services.request_service import RequestService


@pytest.fixture
def client(engine, notification_service):
    app = create_app()
    service = RequestService(engine=engine, notification_service=notification_service)
    app.dependency_overrides[get_request_service] = lambda: service
    return TestClient(app)


def _create(client, **body):
    body.setdefault("clientName", "Acme Trailers")
    body.setdefault("country", "France")
    response = client.post("/api/v1/requests", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def _error_code(response):
    return response.json()["detail"]["error"]["code"]


def test_create_draft(client, notification_repo, mail_settings, connected):
    response = client.post(
        "/api/v1/requests",
        json={"clientName": "Acme Trailers", "createdBy": "u-1", "createdByName": "Sam Sales"},
        headers={"X-Correlation-Id": "corr-123"}
    )

    assert response.status_code == 201
    assert response.headers["X-Correlation-Id"] == "corr-123"
    data = response.json()
    assert data["id"].startswith("CRA")
    assert data["status"] == "draft"
    assert data["version"] == 1
    assert data["clientName"] == "Acme Trailers"
    assert [entry["status"] for entry in data["history"]] == ["draft"]
    assert data["history"][0]["userName"] == "Sam Sales"
    assert notification_repo.list_entries() == []


def test_create_submitted_notifies(client, notification_repo, mail_settings, connected):
    data = _create(client, status="submitted", createdByName="Sam Sales")

    entries = notification_repo.list_entries(request_id=data["id"])
    assert len(entries) == 1
    assert entries[0].subject == f"[CRA] Request {data['id']} submitted"
    assert entries[0].dedupe_key == f"{data['id']}:request_created:{data['history'][0]['id']}"


def test_create_rejects_later_status(client):
    response = client.post("/api/v1/requests", json={"clientName": "Acme", "status": "gm_approved"})

    assert response.status_code == 400
    assert _error_code(response) == "VALIDATION_ERROR"


def test_create_rejects_unknown_status(client):
    response = client.post("/api/v1/requests", json={"clientName": "Acme", "status": "archived"})

    assert response.status_code == 400
    assert _error_code(response) == "VALIDATION_ERROR"


def test_list_and_get(client):
    first = _create(client, clientName="First Client")
    second = _create(client, clientName="Second Client")

    listed = client.get("/api/v1/requests").json()
    assert {item["id"] for item in listed} == {first["id"], second["id"]}
    assert {item["clientName"] for item in listed} == {"First Client", "Second Client"}
    assert "history" not in listed[0]

    fetched = client.get(f"/api/v1/requests/{first['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["clientName"] == "First Client"


def test_list_limit_is_bounded(client):
    assert client.get("/api/v1/requests", params={"limit": 5000}).status_code == 400


def test_get_unknown_request(client):
    response = client.get("/api/v1/requests/CRA99999999")

    assert response.status_code == 404
    assert _error_code(response) == "REQUEST_NOT_FOUND"


def test_plain_edit_keeps_status(client):
    created = _create(client)

    response = client.put(f"/api/v1/requests/{created['id']}", json={"country": "Spain", "status": "closed"})

    assert response.status_code == 200
    data = response.json()
    assert data["country"] == "Spain"
    assert data["status"] == "draft"
    assert len(data["history"]) == 1
    assert data["version"] == 2


def test_recorded_edit_adds_history(client, notification_repo, mail_settings, connected):
    created = _create(client, status="submitted")

    response = client.put(
        f"/api/v1/requests/{created['id']}",
        json={"country": "Spain", "historyEvent": "edited", "editedByName": "Sam Sales"}
    )

    data = response.json()
    assert data["status"] == "edited"
    assert data["history"][-1]["userName"] == "Sam Sales"
    assert len(notification_repo.list_entries(request_id=created["id"])) == 1


def test_edit_with_stale_version(client):
    created = _create(client)

    response = client.put(f"/api/v1/requests/{created['id']}", json={"country": "Spain", "expectedVersion": 7})

    assert response.status_code == 409
    assert _error_code(response) == "CONCURRENCY_CONFLICT"


def test_status_change_notifies(client, notification_repo, mail_settings, connected):
    created = _create(client, status="submitted")

    response = client.post(
        f"/api/v1/requests/{created['id']}/status",
        json={"status": "under_review", "userId": "u-2", "userName": "Dana Design", "comment": "Looking at it"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "under_review"
    assert data["history"][-1]["comment"] == "Looking at it"
    entries = notification_repo.list_entries(request_id=created["id"])
    assert len(entries) == 2
    assert entries[-1].status == OutboxStatus.PENDING
    assert entries[-1].subject == f"[CRA] Request {created['id']} status changed to Under Review"


def test_same_status_does_not_notify(client, notification_repo, mail_settings, connected):
    created = _create(client, status="submitted")

    response = client.post(f"/api/v1/requests/{created['id']}/status", json={"status": "submitted"})

    assert response.status_code == 200
    assert len(notification_repo.list_entries(request_id=created["id"])) == 1


def test_status_change_succeeds_when_notifications_disabled(client, notification_repo):
    created = _create(client)

    response = client.post(f"/api/v1/requests/{created['id']}/status", json={"status": "submitted"})

    assert response.status_code == 200
    assert response.json()["status"] == "submitted"
    assert notification_repo.list_entries() == []


@pytest.mark.parametrize("body", [{}, {"status": ""}, {"status": "archived"}])
def test_status_change_needs_known_status(client, body):
    created = _create(client)

    response = client.post(f"/api/v1/requests/{created['id']}/status", json=body)

    assert response.status_code == 400
    assert _error_code(response) == "VALIDATION_ERROR"


def test_status_change_version_conflict(client):
    created = _create(client)

    response = client.post(
        f"/api/v1/requests/{created['id']}/status",
        json={"status": "submitted", "expectedVersion": created["version"] + 1}
    )

    assert response.status_code == 409
    assert _error_code(response) == "CONCURRENCY_CONFLICT"


def test_status_change_unknown_request(client):
    response = client.post("/api/v1/requests/CRA99999999/status", json={"status": "submitted"})

    assert response.status_code == 404


def test_renotify_is_not_deduplicated(client, notification_repo, mail_settings, connected):
    created = _create(client, status="submitted")

    first = client.post(f"/api/v1/requests/{created['id']}/notify")
    second = client.post(f"/api/v1/requests/{created['id']}/notify", json={"comment": "Reminder"})

    assert first.status_code == 200
    assert first.json()["enqueued"] is True
    assert first.json()["notificationId"]
    assert second.json()["enqueued"] is True
    assert len(notification_repo.list_entries(request_id=created["id"])) == 3


def test_renotify_reports_skip_reason(client):
    created = _create(client)

    response = client.post(f"/api/v1/requests/{created['id']}/notify")

    assert response.status_code == 200
    assert response.json() == {"enqueued": False, "reason": "disabled", "notificationId": None}


def test_renotify_unknown_event_type(client, mail_settings, connected):
    created = _create(client)

    response = client.post(f"/api/v1/requests/{created['id']}/notify", json={"eventType": "reminder"})

    assert response.status_code == 400
