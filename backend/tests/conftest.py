"""
Pytest Configuration and Fixtures

Shared fixtures for all tests. The store is an in-memory mongomock database
handed to repositories through their `db` argument; outbound HTTP goes
through httpx.MockTransport.
"""

import json
from datetime import timedelta
from typing import Callable, List

import httpx
import mongomock
import pytest

from request_navigator.domain.models import MailSettings
from request_navigator.engine.recipient_resolver import RecipientResolver
from request_navigator.engine.request_id_generator import RequestIdGenerator
from request_navigator.engine.workflow_engine import WorkflowEngine
from request_navigator.repositories.mongo_client import create_indexes
from request_navigator.repositories.counter_repo import CounterRepository
from request_navigator.repositories.request_repo import RequestRepository
from request_navigator.repositories.notification_repo import NotificationRepository
from request_navigator.repositories.digest_repo import AdminDigestRepository
from request_navigator.repositories.mail_settings_repo import MailSettingsRepository
from request_navigator.repositories.m365_token_repo import M365TokenRepository, DeviceCodeSessionRepository
from request_navigator.services.graph_mail_client import GraphMailClient
from request_navigator.services.notification_service import NotificationService
from request_navigator.utils.time import utc_now


# =============================================================================
# HTTP helpers
# =============================================================================

def mock_client_factory(handler: Callable[[httpx.Request], httpx.Response]) -> Callable[[], httpx.AsyncClient]:
    """client_factory whose clients answer every request with `handler`"""
    transport = httpx.MockTransport(handler)
    return lambda: httpx.AsyncClient(transport=transport)


def form_data(request: httpx.Request) -> dict:
    """Decoded application/x-www-form-urlencoded body of a captured request"""
    return dict(httpx.QueryParams(request.content.decode()))


class GraphRecorder:
    """
    Stand-in for Graph sendMail: records each message and answers with the
    next queued status code (202 once the queue is empty).
    """

    def __init__(self, statuses: List[int] = None):
        self.statuses = list(statuses or [])
        self.messages: List[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/me/sendMail")
        self.messages.append(json.loads(request.content))
        status = self.statuses.pop(0) if self.statuses else 202
        return httpx.Response(status, json={} if status >= 400 else None)

    def recipients(self, index: int = -1) -> List[str]:
        message = self.messages[index]["message"]
        return [r["emailAddress"]["address"] for r in message["toRecipients"]]

    def subject(self, index: int = -1) -> str:
        return self.messages[index]["message"]["subject"]


# =============================================================================
# Store
# =============================================================================

@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    database = client["cra_requests_test"]
    create_indexes(database)
    yield database
    client.close()


@pytest.fixture
def counter_repo(db):
    return CounterRepository(db)


@pytest.fixture
def request_repo(db):
    return RequestRepository(db)


@pytest.fixture
def notification_repo(db):
    return NotificationRepository(db)


@pytest.fixture
def digest_repo(db):
    return AdminDigestRepository(db)


@pytest.fixture
def settings_repo(db):
    return MailSettingsRepository(db)


@pytest.fixture
def token_repo(db):
    return M365TokenRepository(db)


@pytest.fixture
def session_repo(db):
    return DeviceCodeSessionRepository(db)


# =============================================================================
# Domain
# =============================================================================

@pytest.fixture
def engine(db, request_repo, counter_repo):
    return WorkflowEngine(
        request_repo=request_repo,
        id_generator=RequestIdGenerator(counter_repo=counter_repo, prefix="CRA", timezone_name="UTC")
    )


@pytest.fixture
def mail_settings(settings_repo):
    """Enabled integration with one address per group"""
    return settings_repo.save_settings(MailSettings(
        enabled=True,
        tenant_id="tenant-1",
        client_id="client-1",
        sender_upn="cra-mailbox@example.com",
        app_base_url="https://cra.example.com",
        recipients_sales="sales@example.com",
        recipients_design="design@example.com",
        recipients_costing="costing@example.com",
        recipients_admin="admin@example.com",
    ))


@pytest.fixture
def connected(token_repo):
    """A stored credential whose access token is valid for an hour"""
    now = utc_now()
    return token_repo.store_tokens(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=now + timedelta(hours=1),
        scope="offline_access Mail.Send",
        token_type="Bearer",
        now=now
    )


@pytest.fixture
def notification_service(db, notification_repo, digest_repo, settings_repo, token_repo):
    return NotificationService(
        repo=notification_repo,
        digest_repo=digest_repo,
        settings_repo=settings_repo,
        token_repo=token_repo,
        resolver=RecipientResolver()
    )


@pytest.fixture
def graph():
    return GraphRecorder()


@pytest.fixture
def mail_client(graph):
    return GraphMailClient(graph_base_url="https://graph.test/v1.0", client_factory=mock_client_factory(graph))
