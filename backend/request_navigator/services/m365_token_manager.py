"""
M365 Token Manager - Device-code credential lifecycle for the shared mailbox

The shared mailbox is a service account with no user present at send time,
so it is linked once through the OAuth device authorization grant and then
kept alive with refresh tokens.

=============================================================================
CONCURRENCY
=============================================================================

Access-token refresh is serialized twice:
    - an asyncio.Lock per manager instance (concurrent batches in one process)
    - a lease on the token document (concurrent processes)
Callers that lose either race re-read the token state and use the token the
winner stored.

Device-code redemption is guarded by moving the session pending -> redeeming
with a conditional update; only the caller that wins the update talks to the
token endpoint.

=============================================================================
"""
import asyncio
import os
import socket
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Tuple
import httpx

from ..domain.models import OAuthTokenState, DeviceCodeSession, DeviceCodePollResult
from ..domain.enums import DeviceCodeSessionStatus, DeviceCodePollStatus
from ..domain.errors import (
    NotAuthenticatedError, ConfigurationError, DeviceCodeError,
    DeviceCodeSessionNotFoundError, InvalidStateError
)
from ..repositories.m365_token_repo import M365TokenRepository, DeviceCodeSessionRepository
from ..repositories.mail_settings_repo import MailSettingsRepository
from ..config.settings import settings
from ..utils.idgen import generate_device_code_session_id, generate_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
REFRESH_TOKEN_GRANT_TYPE = "refresh_token"

# Added to the poll interval when the identity platform answers slow_down
SLOW_DOWN_INCREMENT_SECONDS = 5
DEFAULT_POLL_INTERVAL_SECONDS = 5


def default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http_timeout_seconds)


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class M365TokenManager:
    """Owns the OAuth token state; the only way senders get an access token"""

    def __init__(
        self,
        token_repo: Optional[M365TokenRepository] = None,
        session_repo: Optional[DeviceCodeSessionRepository] = None,
        settings_repo: Optional[MailSettingsRepository] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        authority_url: Optional[str] = None,
        scope: Optional[str] = None,
        refresh_margin_seconds: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        lease_poll_seconds: float = 0.5,
        lease_wait_attempts: int = 20,
        owner_id: Optional[str] = None,
        db=None
    ):
        self.token_repo = token_repo or M365TokenRepository(db)
        self.session_repo = session_repo or DeviceCodeSessionRepository(db)
        self.settings_repo = settings_repo or MailSettingsRepository(db)
        self._client_factory = client_factory or default_client_factory
        self.authority_url = (authority_url or settings.m365_authority_url).rstrip("/")
        self.scope = scope or settings.m365_scope
        self.refresh_margin_seconds = (
            refresh_margin_seconds if refresh_margin_seconds is not None
            else settings.token_refresh_margin_seconds
        )
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.token_refresh_lease_seconds
        self.lease_poll_seconds = lease_poll_seconds
        self.lease_wait_attempts = lease_wait_attempts
        self.owner_id = owner_id or f"{socket.gethostname()}-{os.getpid()}-{generate_id()[:8]}"
        self._refresh_lock = asyncio.Lock()

    # =========================================================================
    # Endpoints & configuration
    # =========================================================================

    def _endpoint(self, tenant_id: str, name: str) -> str:
        tenant = (tenant_id or "").strip() or "common"
        return f"{self.authority_url}/{tenant}/oauth2/v2.0/{name}"

    def _require_app_ids(self) -> Tuple[str, str]:
        """Tenant and client ID from the mail settings"""
        mail_settings = self.settings_repo.get_settings()
        if not mail_settings.client_id:
            raise ConfigurationError("Missing Microsoft 365 client id", details={"field": "clientId"})
        if not mail_settings.tenant_id:
            raise ConfigurationError("Missing Microsoft 365 tenant id", details={"field": "tenantId"})
        return mail_settings.tenant_id, mail_settings.client_id

    # =========================================================================
    # Device-code flow
    # =========================================================================

    async def start_device_code_flow(
        self,
        tenant_id: str,
        client_id: str,
        scope: Optional[str] = None
    ) -> DeviceCodeSession:
        """
        Request a device code and store it as the new pending session.

        Older pending sessions are superseded.

        Raises:
            DeviceCodeError: the identity platform refused or was unreachable
        """
        try:
            async with self._client_factory() as client:
                response = await client.post(
                    self._endpoint(tenant_id, "devicecode"),
                    data={"client_id": client_id, "scope": scope or self.scope}
                )
        except httpx.HTTPError as e:
            raise DeviceCodeError(f"Device code request failed: {type(e).__name__}: {e}")

        data = _json_body(response)
        if response.status_code != 200 or not data.get("device_code"):
            raise DeviceCodeError(
                f"Device code request failed: {response.status_code}",
                details={"error": data.get("error"), "error_description": data.get("error_description")}
            )

        now = utc_now()
        expires_in = _parse_int(data.get("expires_in"))
        session = DeviceCodeSession(
            session_id=generate_device_code_session_id(),
            device_code=data["device_code"],
            user_code=data.get("user_code"),
            verification_uri=data.get("verification_uri"),
            verification_uri_complete=data.get("verification_uri_complete"),
            message=data.get("message"),
            interval_seconds=_parse_int(data.get("interval")),
            expires_at=now + timedelta(seconds=expires_in) if expires_in is not None else None,
            status=DeviceCodeSessionStatus.PENDING,
            created_at=now
        )
        self.session_repo.create_session(session)
        return session

    async def start_configured_device_code_flow(self) -> DeviceCodeSession:
        """Start a device-code flow with the tenant and client from mail settings"""
        tenant_id, client_id = self._require_app_ids()
        return await self.start_device_code_flow(tenant_id, client_id)

    async def poll_device_code_token(
        self,
        tenant_id: str,
        client_id: str,
        session: DeviceCodeSession
    ) -> DeviceCodePollResult:
        """
        Try to redeem a session's device code once.

        An expired session is marked expired without calling the identity
        platform. A session some other caller is redeeming reports pending
        (or connected, if that caller already stored tokens).

        Raises:
            DeviceCodeError: unexpected token endpoint error, or a device
                code that was already redeemed without tokens on file
        """
        session_id = session.session_id
        if session.is_expired(utc_now()):
            self.session_repo.update_status(session_id, DeviceCodeSessionStatus.EXPIRED)
            logger.info("Device code expired before redemption", extra={"session_id": session_id})
            return DeviceCodePollResult(status=DeviceCodePollStatus.EXPIRED)

        if not self.session_repo.claim_for_redeem(session_id):
            connected = self.token_repo.get_state().has_refresh_token
            return DeviceCodePollResult(
                status=DeviceCodePollStatus.CONNECTED if connected else DeviceCodePollStatus.PENDING,
                interval_seconds=session.interval_seconds
            )

        try:
            async with self._client_factory() as client:
                response = await client.post(
                    self._endpoint(tenant_id, "token"),
                    data={
                        "grant_type": DEVICE_CODE_GRANT_TYPE,
                        "client_id": client_id,
                        "device_code": session.device_code,
                    }
                )
        except httpx.HTTPError as e:
            self.session_repo.update_status(session_id, DeviceCodeSessionStatus.PENDING)
            raise DeviceCodeError(f"Device code poll failed: {type(e).__name__}: {e}")

        data = _json_body(response)
        if response.status_code == 200 and data.get("access_token"):
            self.store_token_response(data)
            self.session_repo.update_status(session_id, DeviceCodeSessionStatus.REDEEMED)
            logger.info("Microsoft 365 mailbox connected", extra={"session_id": session_id})
            return DeviceCodePollResult(status=DeviceCodePollStatus.CONNECTED)

        error = data.get("error")
        description = data.get("error_description") or ""

        if error == "authorization_pending":
            self.session_repo.update_status(session_id, DeviceCodeSessionStatus.PENDING)
            return DeviceCodePollResult(
                status=DeviceCodePollStatus.PENDING,
                interval_seconds=session.interval_seconds
            )

        if error == "slow_down":
            interval = (session.interval_seconds or DEFAULT_POLL_INTERVAL_SECONDS) + SLOW_DOWN_INCREMENT_SECONDS
            self.session_repo.update_status(
                session_id, DeviceCodeSessionStatus.PENDING, interval_seconds=interval
            )
            return DeviceCodePollResult(status=DeviceCodePollStatus.SLOW_DOWN, interval_seconds=interval)

        if error == "expired_token":
            self.session_repo.update_status(session_id, DeviceCodeSessionStatus.EXPIRED)
            return DeviceCodePollResult(status=DeviceCodePollStatus.EXPIRED)

        lowered = description.lower()
        if error == "invalid_grant" and "already" in lowered and "redeem" in lowered:
            # Usually a double poll from two tabs; the other one stored the tokens
            self.session_repo.update_status(session_id, DeviceCodeSessionStatus.REDEEMED)
            if self.token_repo.get_state().has_refresh_token:
                return DeviceCodePollResult(status=DeviceCodePollStatus.CONNECTED)
            raise DeviceCodeError(
                "This device code was already used, start a new device code",
                details={"session_id": session_id}
            )

        self.session_repo.update_status(session_id, DeviceCodeSessionStatus.PENDING)
        raise DeviceCodeError(
            description or error or f"Device code poll failed: {response.status_code}",
            details={"error": error, "session_id": session_id}
        )

    async def poll_latest_session(self) -> DeviceCodePollResult:
        """
        Poll the most recent device-code session (admin 'poll' action).

        Raises:
            ConfigurationError: tenant or client ID missing
            DeviceCodeSessionNotFoundError: no session was ever started
            InvalidStateError: the latest session was redeemed or superseded
            DeviceCodeError: see poll_device_code_token
        """
        tenant_id, client_id = self._require_app_ids()

        if self.token_repo.get_state().has_refresh_token:
            # Never redeem an old code again once connected
            return DeviceCodePollResult(status=DeviceCodePollStatus.CONNECTED)

        latest = self.session_repo.get_latest()
        if latest is None:
            raise DeviceCodeSessionNotFoundError("No device code session, start a device code first")

        if latest.status == DeviceCodeSessionStatus.EXPIRED:
            return DeviceCodePollResult(status=DeviceCodePollStatus.EXPIRED)

        if latest.status == DeviceCodeSessionStatus.REDEEMING:
            if latest.is_expired(utc_now()):
                self.session_repo.update_status(latest.session_id, DeviceCodeSessionStatus.EXPIRED)
                return DeviceCodePollResult(status=DeviceCodePollStatus.EXPIRED)
            return DeviceCodePollResult(
                status=DeviceCodePollStatus.PENDING,
                interval_seconds=latest.interval_seconds
            )

        if latest.status != DeviceCodeSessionStatus.PENDING:
            raise InvalidStateError(
                "This device code session is no longer pending, start a new device code",
                details={"session_id": latest.session_id, "status": latest.status.value}
            )

        return await self.poll_device_code_token(tenant_id, client_id, latest)

    # =========================================================================
    # Token state
    # =========================================================================

    def get_state(self) -> OAuthTokenState:
        return self.token_repo.get_state()

    def store_token_response(self, token_json: Dict[str, Any]) -> OAuthTokenState:
        """
        Persist a token endpoint response as the singleton token state.

        refresh_token and scope are kept from the previous state when the
        response leaves them out.
        """
        now = utc_now()
        expires_in = _parse_int(token_json.get("expires_in"))
        return self.token_repo.store_tokens(
            access_token=token_json.get("access_token"),
            refresh_token=token_json.get("refresh_token") or None,
            expires_at=now + timedelta(seconds=expires_in) if expires_in is not None else None,
            scope=token_json.get("scope") or None,
            token_type=token_json.get("token_type") or None,
            now=now
        )

    def clear_tokens(self) -> None:
        """Disconnect: a new device-code flow is needed before the next send"""
        self.token_repo.clear(utc_now())

    def _is_fresh(self, state: OAuthTokenState) -> bool:
        if not state.access_token or state.expires_at is None:
            return False
        remaining = (state.expires_at - utc_now()).total_seconds()
        return remaining > self.refresh_margin_seconds

    # =========================================================================
    # Access tokens
    # =========================================================================

    async def get_valid_access_token(self) -> str:
        """
        Current access token, refreshed first when it is about to expire.

        Raises:
            NotAuthenticatedError: no refresh token on file, or refresh failed
            ConfigurationError: tenant or client ID missing
        """
        state = self.token_repo.get_state()
        if self._is_fresh(state):
            return state.access_token

        async with self._refresh_lock:
            state = self.token_repo.get_state()
            if self._is_fresh(state):
                return state.access_token
            return await self._refresh_under_lease(force=False)

    async def force_refresh_access_token(self) -> str:
        """Refresh even if the current token is still valid (admin 'check')"""
        async with self._refresh_lock:
            return await self._refresh_under_lease(force=True)

    async def _refresh_under_lease(self, force: bool) -> str:
        state = self.token_repo.get_state()
        if not state.has_refresh_token:
            raise NotAuthenticatedError("Microsoft 365 is not connected (missing refresh token)")
        tenant_id, client_id = self._require_app_ids()
        started_at = utc_now()

        for _ in range(self.lease_wait_attempts + 1):
            now = utc_now()
            if self.token_repo.acquire_refresh_lease(
                self.owner_id, now, now + timedelta(seconds=self.lease_seconds)
            ):
                try:
                    current = self.token_repo.get_state()
                    if not force and self._is_fresh(current):
                        return current.access_token
                    if not current.has_refresh_token:
                        raise NotAuthenticatedError("Microsoft 365 is not connected (missing refresh token)")
                    token_json = await self._redeem_refresh_token(tenant_id, client_id, current.refresh_token)
                    stored = self.store_token_response(token_json)
                    logger.info("Refreshed Microsoft 365 access token")
                    return stored.access_token
                finally:
                    self.token_repo.release_refresh_lease(self.owner_id)

            # Another process is refreshing; wait for its result
            await asyncio.sleep(self.lease_poll_seconds)
            current = self.token_repo.get_state()
            refreshed_since_start = current.updated_at is not None and current.updated_at >= started_at
            if self._is_fresh(current) and (not force or refreshed_since_start):
                return current.access_token

        raise NotAuthenticatedError("Timed out waiting for another process to refresh the token")

    async def _redeem_refresh_token(self, tenant_id: str, client_id: str, refresh_token: str) -> Dict[str, Any]:
        try:
            async with self._client_factory() as client:
                response = await client.post(
                    self._endpoint(tenant_id, "token"),
                    data={
                        "grant_type": REFRESH_TOKEN_GRANT_TYPE,
                        "client_id": client_id,
                        "refresh_token": refresh_token,
                        "scope": self.scope,
                    }
                )
        except httpx.HTTPError as e:
            logger.warning(
                "Token refresh request failed",
                extra={"error_type": type(e).__name__, "error": str(e)}
            )
            raise NotAuthenticatedError(f"Token refresh failed: {type(e).__name__}")

        data = _json_body(response)
        if response.status_code != 200 or not data.get("access_token"):
            reason = data.get("error_description") or data.get("error") or f"HTTP {response.status_code}"
            logger.warning(
                "Token refresh rejected",
                extra={"error_code": data.get("error"), "error": reason}
            )
            raise NotAuthenticatedError(f"Token refresh failed: {reason}")
        return data
