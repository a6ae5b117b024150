"""Tests for the device-code flow and access token refresh"""
import asyncio
from datetime import timedelta

import httpx
import pytest

from request_navigator.domain.enums import DeviceCodeSessionStatus, DeviceCodePollStatus
from request_navigator.domain.errors import (
    NotAuthenticatedError, InvalidStateError, DeviceCodeSessionNotFoundError,
    DeviceCodeError, ConfigurationError
)
from request_navigator.domain.models import DeviceCodeSession
from request_navigator.repositories.m365_token_repo import M365TokenRepository
from request_navigator.services.m365_token_manager import M365TokenManager
from request_navigator.utils.time import utc_now
from tests.conftest import mock_client_factory, form_data

AUTHORITY = "https://login.example.com"

DEVICE_CODE_RESPONSE = {
    "device_code": "device-abc",
    "user_code": "ABCD-EFGH",
    "verification_uri": "https://microsoft.com/devicelogin",
    "message": "To sign in, enter the code ABCD-EFGH",
    "interval": 5,
    "expires_in": 900,
}


def _manager(db, handler, token_repo=None, **kwargs):
    return M365TokenManager(
        token_repo=token_repo,
        client_factory=mock_client_factory(handler),
        authority_url=AUTHORITY,
        scope="offline_access Mail.Send",
        refresh_margin_seconds=300,
        lease_seconds=30,
        lease_poll_seconds=0,
        lease_wait_attempts=2,
        db=db,
        **kwargs
    )


def _unexpected(request):
    raise AssertionError(f"unexpected HTTP call to {request.url}")


def _session(session_repo, expires_in=900, status=DeviceCodeSessionStatus.PENDING):
    now = utc_now()
    session = DeviceCodeSession(
        session_id="dcs-1",
        device_code="device-abc",
        user_code="ABCD-EFGH",
        interval_seconds=5,
        expires_at=now + timedelta(seconds=expires_in),
        status=status,
        created_at=now
    )
    return session_repo.create_session(session)


def _expire_soon(token_repo, access_token="access-old", refresh_token="refresh-1"):
    now = utc_now()
    token_repo.store_tokens(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + timedelta(seconds=60),
        scope="offline_access Mail.Send",
        token_type="Bearer",
        now=now
    )


# =============================================================================
# Device-code flow
# =============================================================================

@pytest.mark.asyncio
async def test_start_flow_stores_pending_session(db, session_repo, mail_settings):
    captured = []

    def handler(request):
        captured.append(request)
        return httpx.Response(200, json=DEVICE_CODE_RESPONSE)

    manager = _manager(db, handler)
    session = await manager.start_configured_device_code_flow()

    assert str(captured[0].url) == f"{AUTHORITY}/tenant-1/oauth2/v2.0/devicecode"
    assert form_data(captured[0]) == {"client_id": "client-1", "scope": "offline_access Mail.Send"}
    assert session.status == DeviceCodeSessionStatus.PENDING
    assert session.user_code == "ABCD-EFGH"
    assert session.interval_seconds == 5
    assert session_repo.get_session(session.session_id).device_code == "device-abc"


@pytest.mark.asyncio
async def test_new_flow_supersedes_pending_session(db, session_repo, mail_settings):
    manager = _manager(db, lambda request: httpx.Response(200, json=DEVICE_CODE_RESPONSE))

    first = await manager.start_configured_device_code_flow()
    second = await manager.start_configured_device_code_flow()

    assert session_repo.get_session(first.session_id).status == DeviceCodeSessionStatus.SUPERSEDED
    assert session_repo.get_session(second.session_id).status == DeviceCodeSessionStatus.PENDING


@pytest.mark.asyncio
async def test_start_flow_refused(db, mail_settings):
    manager = _manager(db, lambda request: httpx.Response(400, json={"error": "invalid_client"}))

    with pytest.raises(DeviceCodeError):
        await manager.start_configured_device_code_flow()


@pytest.mark.asyncio
async def test_start_flow_requires_client_id(db, settings_repo, mail_settings):
    settings_repo.save_settings(mail_settings.model_copy(update={"client_id": ""}))
    manager = _manager(db, _unexpected)

    with pytest.raises(ConfigurationError):
        await manager.start_configured_device_code_flow()


@pytest.mark.asyncio
@pytest.mark.parametrize("error,expected,interval", [
    ("authorization_pending", DeviceCodePollStatus.PENDING, 5),
    ("slow_down", DeviceCodePollStatus.SLOW_DOWN, 10),
])
async def test_poll_not_yet_authorized(db, session_repo, mail_settings, error, expected, interval):
    _session(session_repo)
    manager = _manager(db, lambda request: httpx.Response(400, json={"error": error}))

    result = await manager.poll_latest_session()

    assert result.status == expected
    assert result.interval_seconds == interval
    stored = session_repo.get_session("dcs-1")
    assert stored.status == DeviceCodeSessionStatus.PENDING
    assert stored.interval_seconds == interval


@pytest.mark.asyncio
async def test_poll_connected_stores_tokens(db, session_repo, token_repo, mail_settings):
    _session(session_repo)
    captured = []

    def handler(request):
        captured.append(form_data(request))
        return httpx.Response(200, json={
            "access_token": "access-new",
            "refresh_token": "refresh-new",
            "expires_in": 3600,
            "scope": "Mail.Send",
            "token_type": "Bearer",
        })

    result = await _manager(db, handler).poll_latest_session()

    assert result.status == DeviceCodePollStatus.CONNECTED
    assert captured[0]["grant_type"] == "urn:ietf:params:oauth:grant-type:device_code"
    assert captured[0]["device_code"] == "device-abc"
    state = token_repo.get_state()
    assert state.access_token == "access-new"
    assert state.refresh_token == "refresh-new"
    assert state.expires_at > utc_now() + timedelta(minutes=50)
    assert session_repo.get_session("dcs-1").status == DeviceCodeSessionStatus.REDEEMED


@pytest.mark.asyncio
async def test_poll_expired_token_answer(db, session_repo, mail_settings):
    _session(session_repo)
    manager = _manager(db, lambda request: httpx.Response(400, json={"error": "expired_token"}))

    result = await manager.poll_latest_session()

    assert result.status == DeviceCodePollStatus.EXPIRED
    assert session_repo.get_session("dcs-1").status == DeviceCodeSessionStatus.EXPIRED


@pytest.mark.asyncio
async def test_poll_expired_session_makes_no_call(db, session_repo, mail_settings):
    _session(session_repo, expires_in=-1)

    result = await _manager(db, _unexpected).poll_latest_session()

    assert result.status == DeviceCodePollStatus.EXPIRED
    assert session_repo.get_session("dcs-1").status == DeviceCodeSessionStatus.EXPIRED


@pytest.mark.asyncio
async def test_poll_already_redeemed_code(db, session_repo, mail_settings):
    _session(session_repo)
    manager = _manager(db, lambda request: httpx.Response(400, json={
        "error": "invalid_grant",
        "error_description": "AADSTS54005: OAuth2 Authorization code was already redeemed",
    }))

    with pytest.raises(DeviceCodeError):
        await manager.poll_latest_session()
    assert session_repo.get_session("dcs-1").status == DeviceCodeSessionStatus.REDEEMED


@pytest.mark.asyncio
async def test_poll_while_another_caller_redeems(db, session_repo, mail_settings):
    _session(session_repo, status=DeviceCodeSessionStatus.REDEEMING)

    result = await _manager(db, _unexpected).poll_latest_session()

    assert result.status == DeviceCodePollStatus.PENDING
    assert result.interval_seconds == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [DeviceCodeSessionStatus.REDEEMED, DeviceCodeSessionStatus.SUPERSEDED])
async def test_poll_session_no_longer_pending(db, session_repo, mail_settings, status):
    _session(session_repo, status=status)

    with pytest.raises(InvalidStateError):
        await _manager(db, _unexpected).poll_latest_session()


@pytest.mark.asyncio
async def test_poll_without_session(db, mail_settings):
    with pytest.raises(DeviceCodeSessionNotFoundError):
        await _manager(db, _unexpected).poll_latest_session()


@pytest.mark.asyncio
async def test_poll_when_connected_skips_redeem(db, session_repo, mail_settings, connected):
    _session(session_repo)

    result = await _manager(db, _unexpected).poll_latest_session()

    assert result.status == DeviceCodePollStatus.CONNECTED
    assert session_repo.get_session("dcs-1").status == DeviceCodeSessionStatus.PENDING


# =============================================================================
# Access tokens
# =============================================================================

@pytest.mark.asyncio
async def test_fresh_token_needs_no_refresh(db, mail_settings, connected):
    token = await _manager(db, _unexpected).get_valid_access_token()

    assert token == "access-1"


@pytest.mark.asyncio
async def test_refresh_keeps_refresh_token_when_omitted(db, token_repo, mail_settings):
    _expire_soon(token_repo)
    captured = []

    def handler(request):
        captured.append(form_data(request))
        return httpx.Response(200, json={"access_token": "access-new", "expires_in": 3600})

    token = await _manager(db, handler).get_valid_access_token()

    assert token == "access-new"
    assert captured[0]["grant_type"] == "refresh_token"
    assert captured[0]["refresh_token"] == "refresh-1"
    state = token_repo.get_state()
    assert state.refresh_token == "refresh-1"
    assert state.scope == "offline_access Mail.Send"
    assert state.refresh_lease_owner is None


@pytest.mark.asyncio
async def test_refresh_rejected(db, token_repo, mail_settings):
    _expire_soon(token_repo)
    manager = _manager(db, lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(NotAuthenticatedError):
        await manager.get_valid_access_token()
    assert token_repo.get_state().refresh_lease_owner is None


@pytest.mark.asyncio
async def test_missing_refresh_token(db, mail_settings):
    with pytest.raises(NotAuthenticatedError):
        await _manager(db, _unexpected).get_valid_access_token()


@pytest.mark.asyncio
async def test_force_refresh_of_fresh_token(db, mail_settings, connected):
    manager = _manager(db, lambda request: httpx.Response(200, json={"access_token": "access-2", "expires_in": 3600}))

    assert await manager.force_refresh_access_token() == "access-2"


class OtherProcessRefreshes(M365TokenRepository):
    """Token repository where another process holds the lease and stores a new token"""

    def acquire_refresh_lease(self, owner, now, lease_until):
        state = self.get_state()
        if state.access_token != "access-other":
            current = utc_now()
            self.store_tokens(
                access_token="access-other",
                refresh_token=None,
                expires_at=current + timedelta(hours=1),
                scope=None,
                token_type=None,
                now=current
            )
        return False


@pytest.mark.asyncio
async def test_lease_loser_uses_winner_token(db, mail_settings):
    token_repo = OtherProcessRefreshes(db)
    _expire_soon(token_repo)

    token = await _manager(db, _unexpected, token_repo=token_repo).get_valid_access_token()

    assert token == "access-other"


class SlowTokenEndpoint:
    """Token endpoint that counts refreshes and answers after a short delay"""

    def __init__(self):
        self.calls = 0

    async def __call__(self, request):
        self.calls += 1
        await asyncio.sleep(0.05)
        return httpx.Response(200, json={"access_token": f"access-{self.calls + 1}", "expires_in": 3600})


@pytest.mark.asyncio
async def test_simultaneous_callers_share_one_refresh(db, token_repo, mail_settings):
    _expire_soon(token_repo)
    endpoint = SlowTokenEndpoint()
    manager = _manager(db, endpoint)

    tokens = await asyncio.gather(*(manager.get_valid_access_token() for _ in range(5)))

    assert endpoint.calls == 1
    assert tokens == ["access-2"] * 5
    assert token_repo.get_state().refresh_lease_owner is None


@pytest.mark.asyncio
async def test_processes_refreshing_together_share_one_refresh(db, token_repo, mail_settings):
    _expire_soon(token_repo)
    endpoint = SlowTokenEndpoint()
    managers = [
        M365TokenManager(
            client_factory=mock_client_factory(endpoint),
            authority_url=AUTHORITY,
            scope="offline_access Mail.Send",
            refresh_margin_seconds=300,
            lease_seconds=30,
            lease_poll_seconds=0.01,
            lease_wait_attempts=100,
            owner_id=f"worker-{index}",
            db=db
        )
        for index in range(3)
    ]

    tokens = await asyncio.gather(*(manager.get_valid_access_token() for manager in managers))

    assert endpoint.calls == 1
    assert tokens == ["access-2"] * 3


@pytest.mark.asyncio
async def test_disconnect_clears_tokens(db, token_repo, mail_settings, connected):
    manager = _manager(db, _unexpected)

    manager.clear_tokens()

    assert not token_repo.get_state().has_refresh_token
