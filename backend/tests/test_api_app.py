"""Application-level API behaviour: root endpoint and error mapping"""
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from request_navigator.api.deps import get_request_service
from request_navigator.main import create_app, APP_NAME


class UnreachableStore:
    def list_requests(self, skip=0, limit=200):
        raise ServerSelectionTimeoutError("localhost:27017: connection refused")


def test_root_describes_api():
    response = TestClient(create_app()).get("/")

    assert response.status_code == 200
    assert response.json()["name"] == APP_NAME
    assert response.json()["api"] == "/api/v1"


def test_store_failure_maps_to_503():
    app = create_app()
    app.dependency_overrides[get_request_service] = lambda: UnreachableStore()

    response = TestClient(app).get("/api/v1/requests", headers={"X-Correlation-Id": "corr-db"})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"
    assert response.headers["X-Correlation-Id"] == "corr-db"
