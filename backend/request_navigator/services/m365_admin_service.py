"""M365 Admin Service - Business logic behind the mail integration admin screen"""
from typing import Any, Dict, Optional
from pydantic import ValidationError as PydanticValidationError

from ..domain.models import MailSettings, DeviceCodeSession, parse_email_list
from ..domain.enums import RequestStatus, NotificationEventType, DeviceCodeSessionStatus
from ..domain.errors import ValidationError, NotAuthenticatedError
from ..domain.request_payload import normalize_request_payload
from ..repositories.mail_settings_repo import MailSettingsRepository
from ..repositories.request_repo import RequestRepository
from .m365_token_manager import M365TokenManager
from .graph_mail_client import GraphMailClient
from .outbox_dispatcher import OutboxDispatcher
from .admin_digest_service import AdminDigestService
from ..templates.email_templates import get_template_for_event, render_status_email, render_test_email
from ..config.settings import settings
from ..utils.time import utc_now, format_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Shown by the preview when no (existing) request id is given
SAMPLE_REQUEST_ID = "CRA00000000"
SAMPLE_REQUEST_PAYLOAD = {
    "clientName": "Example Client",
    "clientContact": "John Doe",
    "country": "Example Country",
    "applicationVehicle": "Example Vehicle",
    "expectedQty": 100,
    "clientExpectedDeliveryDate": "2026-03-01",
}
PREVIEW_ACTOR_NAME = "System"
PREVIEW_COMMENT = "Example comment (optional)."


def _parse_enum(enum_cls, value: Any, default, field: str):
    if value is None or value == "":
        return default
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {field}: {value}", details={"field": field, "value": value})


def device_code_to_wire(session: DeviceCodeSession) -> Dict[str, Any]:
    """Pending device code as shown to the administrator (never the device code itself)"""
    return {
        "userCode": session.user_code,
        "verificationUri": session.verification_uri,
        "verificationUriComplete": session.verification_uri_complete,
        "message": session.message,
        "intervalSeconds": session.interval_seconds,
        "expiresAt": format_iso(session.expires_at) if session.expires_at else None,
        "status": session.status.value,
        "createdAt": format_iso(session.created_at),
    }


class M365AdminService:
    """Service for the Microsoft 365 mail integration admin operations"""

    def __init__(
        self,
        settings_repo: Optional[MailSettingsRepository] = None,
        request_repo: Optional[RequestRepository] = None,
        token_manager: Optional[M365TokenManager] = None,
        mail_client: Optional[GraphMailClient] = None,
        dispatcher: Optional[OutboxDispatcher] = None,
        digest_service: Optional[AdminDigestService] = None,
        db=None
    ):
        self.settings_repo = settings_repo or MailSettingsRepository(db)
        self.request_repo = request_repo or RequestRepository(db)
        self.token_manager = token_manager or M365TokenManager(settings_repo=self.settings_repo, db=db)
        self.mail_client = mail_client or GraphMailClient()
        self.dispatcher = dispatcher or OutboxDispatcher(
            settings_repo=self.settings_repo,
            token_manager=self.token_manager,
            mail_client=self.mail_client,
            db=db
        )
        self.digest_service = digest_service or AdminDigestService(
            settings_repo=self.settings_repo,
            token_manager=self.token_manager,
            mail_client=self.mail_client,
            db=db
        )

    # =========================================================================
    # Settings
    # =========================================================================

    def get_overview(self) -> Dict[str, Any]:
        """Settings, connection state and the pending device code (if any)"""
        mail_settings = self.settings_repo.get_settings()
        state = self.token_manager.get_state()
        connected = state.has_refresh_token

        device_code = None
        if not connected:
            latest = self.token_manager.session_repo.get_latest()
            if (
                latest is not None
                and latest.status == DeviceCodeSessionStatus.PENDING
                and not latest.is_expired(utc_now())
            ):
                device_code = device_code_to_wire(latest)

        return {
            "settings": mail_settings.model_dump(by_alias=True, mode="json"),
            "connection": {
                "hasRefreshToken": connected,
                "expiresAt": format_iso(state.expires_at) if state.expires_at else None,
            },
            "deviceCode": device_code,
        }

    def update_settings(self, body: Dict[str, Any]) -> MailSettings:
        """
        Replace the integration settings.

        Raises:
            ValidationError: malformed address, unknown routing status, etc.
        """
        try:
            mail_settings = MailSettings.model_validate(body)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid mail settings",
                details={"errors": e.errors(include_url=False, include_context=False)}
            )
        return self.settings_repo.save_settings(mail_settings)

    def preview(
        self,
        event_type: Any = None,
        status: Any = None,
        previous_status: Any = None,
        request_id: Optional[str] = None
    ) -> Dict[str, str]:
        """Render a notification exactly as it would be sent, for the template editor"""
        kind = _parse_enum(
            NotificationEventType, event_type, NotificationEventType.REQUEST_STATUS_CHANGED, "eventType"
        )
        new_status = _parse_enum(RequestStatus, status, RequestStatus.SUBMITTED, "status")
        prior = _parse_enum(RequestStatus, previous_status, None, "previousStatus")

        record = self.request_repo.get_request(request_id.strip()) if request_id and request_id.strip() else None
        if record is not None:
            payload, preview_id, updated_at = record.payload, record.request_id, record.updated_at
        else:
            payload = normalize_request_payload(SAMPLE_REQUEST_PAYLOAD)
            preview_id = (request_id or "").strip() or SAMPLE_REQUEST_ID
            updated_at = utc_now()

        mail_settings = self.settings_repo.get_settings()
        content = render_status_email(
            payload=payload,
            request_id=preview_id,
            event_type=kind,
            status=new_status,
            previous_status=prior,
            actor_name=PREVIEW_ACTOR_NAME,
            comment=PREVIEW_COMMENT,
            template=get_template_for_event(mail_settings, kind),
            base_url=mail_settings.app_base_url or settings.frontend_url,
            updated_at=updated_at
        )
        return {"subject": content["subject"], "html": content["body"]}

    # =========================================================================
    # Connection
    # =========================================================================

    async def start_device_code(self) -> Dict[str, Any]:
        session = await self.token_manager.start_configured_device_code_flow()
        expires_in = None
        if session.expires_at is not None:
            expires_in = int((session.expires_at - session.created_at).total_seconds())
        logger.info("Started Microsoft 365 device code flow", extra={"status": session.status.value})
        return {
            "userCode": session.user_code,
            "verificationUri": session.verification_uri,
            "verificationUriComplete": session.verification_uri_complete,
            "message": session.message,
            "intervalSeconds": session.interval_seconds,
            "expiresIn": expires_in,
        }

    async def poll(self) -> Dict[str, Any]:
        result = await self.token_manager.poll_latest_session()
        response = {"status": result.status.value}
        if result.interval_seconds is not None:
            response["intervalSeconds"] = result.interval_seconds
        return response

    async def check(self) -> Dict[str, str]:
        """
        Force a token refresh to prove the stored credential still works.

        Raises:
            NotAuthenticatedError: not connected, or the refresh was rejected
        """
        if not self.token_manager.get_state().has_refresh_token:
            raise NotAuthenticatedError("Microsoft 365 is not connected, start a device code to connect")
        await self.token_manager.force_refresh_access_token()
        return {"status": "connected"}

    def disconnect(self) -> Dict[str, bool]:
        self.token_manager.clear_tokens()
        logger.info("Microsoft 365 mailbox disconnected")
        return {"ok": True}

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_test_email(self, to_email: Any) -> Dict[str, bool]:
        """
        Send a test email right away (bypasses the outbox).

        Raises:
            ValidationError: no recipient given
            NotAuthenticatedError: no usable credential
            TransientDeliveryError: Graph refused the message
        """
        if isinstance(to_email, (list, tuple)):
            to_email = ",".join(str(item) for item in to_email)
        recipients = parse_email_list(to_email)
        if not recipients:
            raise ValidationError("Missing toEmail", details={"field": "toEmail"})

        mail_settings = self.settings_repo.get_settings()
        access_token = await self.token_manager.get_valid_access_token()
        content = render_test_email(mail_settings.sender_upn)
        await self.mail_client.send_mail(
            access_token=access_token,
            recipients=recipients,
            subject=content["subject"],
            body_html=content["body"]
        )
        logger.info("Sent test email", extra={"recipients_count": len(recipients)})
        return {"ok": True}

    async def dispatch(self, include_today: bool = True) -> Dict[str, Any]:
        """One outbox pass and one digest pass, on demand"""
        outbox = await self.dispatcher.dispatch_once()
        digest = await self.digest_service.dispatch_once(include_today=include_today)
        return {
            "outbox": outbox.model_dump(by_alias=True),
            "digest": digest.model_dump(by_alias=True),
        }
