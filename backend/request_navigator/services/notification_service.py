"""Notification Service - Renders request events into the notification outbox

Enqueue is the only thing this service does; delivery happens later in the
outbox dispatcher. Callers on the business path use enqueue_best_effort(),
which never raises: the status change it follows is already committed.
"""
from typing import Optional
from pymongo.errors import DuplicateKeyError

from ..domain.models import (
    RequestRecord, NotificationOutboxEntry, AdminDigestQueueEntry,
    NotificationEnqueueResult, MailSettings
)
from ..domain.enums import (
    RequestStatus, NotificationEventType, RecipientGroup, OutboxStatus, EnqueueSkipReason
)
from ..engine.recipient_resolver import RecipientResolver
from ..repositories.notification_repo import NotificationRepository
from ..repositories.digest_repo import AdminDigestRepository
from ..repositories.mail_settings_repo import MailSettingsRepository
from ..repositories.m365_token_repo import M365TokenRepository
from ..templates.email_templates import get_template_for_event, render_status_email
from ..config.settings import settings
from ..utils.idgen import generate_notification_id, generate_digest_entry_id
from ..utils.time import utc_now, business_date
from ..utils.logger import get_logger

logger = get_logger(__name__)


def recipients_key(recipients) -> str:
    """Grouping key of a recipient list: sorted, lower-cased, comma-joined"""
    return ",".join(sorted({email.lower() for email in recipients}))


class NotificationService:
    """Notification producer for request events"""

    def __init__(
        self,
        repo: Optional[NotificationRepository] = None,
        digest_repo: Optional[AdminDigestRepository] = None,
        settings_repo: Optional[MailSettingsRepository] = None,
        token_repo: Optional[M365TokenRepository] = None,
        resolver: Optional[RecipientResolver] = None,
        db=None
    ):
        self.repo = repo or NotificationRepository(db)
        self.digest_repo = digest_repo or AdminDigestRepository(db)
        self.settings_repo = settings_repo or MailSettingsRepository(db)
        self.token_repo = token_repo or M365TokenRepository(db)
        self.resolver = resolver or RecipientResolver()

    def base_url(self, mail_settings: MailSettings) -> str:
        """Application base URL for email links"""
        return mail_settings.app_base_url or settings.frontend_url

    # =========================================================================
    # Outbox Creation
    # =========================================================================

    def enqueue_request_event(
        self,
        record: RequestRecord,
        event_type: NotificationEventType,
        status: RequestStatus,
        previous_status: Optional[RequestStatus] = None,
        actor_name: str = "",
        comment: Optional[str] = None,
        history_entry_id: Optional[str] = None
    ) -> NotificationEnqueueResult:
        """
        Render one request event and insert it into the outbox.

        Skips (without error) when the integration is disabled, the mailbox
        is not connected, or nobody is routed for the status. With the
        admin digest enabled, admins are served by a digest queue row
        instead of this email.

        Args:
            record: The request after the transition was committed
            event_type: request_created or request_status_changed
            status: Status the request moved to
            previous_status: Status it moved from (None on creation)
            actor_name: Display name of whoever made the change
            comment: Optional transition comment
            history_entry_id: History entry this event belongs to; makes
                the enqueue idempotent per entry

        Raises:
            Whatever rendering or storage raises; see enqueue_best_effort
        """
        mail_settings = self.settings_repo.get_settings()
        if not mail_settings.enabled:
            return NotificationEnqueueResult(enqueued=False, reason=EnqueueSkipReason.DISABLED)

        if not self.token_repo.get_state().has_refresh_token:
            return NotificationEnqueueResult(enqueued=False, reason=EnqueueSkipReason.NOT_CONNECTED)

        now = utc_now()
        digest_entry_id = None
        exclude_groups = ()
        if mail_settings.admin_digest_enabled:
            exclude_groups = (RecipientGroup.ADMIN,)
            if self.resolver.routes_to(mail_settings, status, RecipientGroup.ADMIN):
                digest_entry_id = self._enqueue_admin_digest(
                    mail_settings, record, event_type, status, previous_status, actor_name, comment, now
                )

        recipients = self.resolver.resolve(mail_settings, status, exclude_groups=exclude_groups)
        if not recipients:
            logger.info(
                f"No recipients for {status.value}, notification skipped",
                extra={"request_id": record.request_id, "status": status.value}
            )
            return NotificationEnqueueResult(
                enqueued=False,
                reason=EnqueueSkipReason.NO_RECIPIENTS,
                digest_entry_id=digest_entry_id
            )

        template = get_template_for_event(mail_settings, event_type)
        content = render_status_email(
            payload=record.payload,
            request_id=record.request_id,
            event_type=event_type,
            status=status,
            previous_status=previous_status,
            actor_name=actor_name,
            comment=comment,
            template=template,
            base_url=self.base_url(mail_settings),
            updated_at=record.updated_at
        )

        dedupe_key = None
        if history_entry_id:
            dedupe_key = f"{record.request_id}:{event_type.value}:{history_entry_id}"

        entry = NotificationOutboxEntry(
            notification_id=generate_notification_id(),
            event_type=event_type,
            request_id=record.request_id,
            recipients=recipients,
            subject=content["subject"],
            body_html=content["body"],
            status=OutboxStatus.PENDING,
            attempts=0,
            next_attempt_at=now,
            dedupe_key=dedupe_key,
            created_at=now,
            updated_at=now
        )
        try:
            self.repo.create_entry(entry)
        except DuplicateKeyError:
            logger.info(
                f"Notification already enqueued for {dedupe_key}",
                extra={"request_id": record.request_id, "event_type": event_type.value}
            )
            return NotificationEnqueueResult(
                enqueued=False,
                reason=EnqueueSkipReason.DUPLICATE,
                digest_entry_id=digest_entry_id
            )

        return NotificationEnqueueResult(
            enqueued=True,
            notification_id=entry.notification_id,
            digest_entry_id=digest_entry_id
        )

    def _enqueue_admin_digest(
        self,
        mail_settings: MailSettings,
        record: RequestRecord,
        event_type: NotificationEventType,
        status: RequestStatus,
        previous_status: Optional[RequestStatus],
        actor_name: str,
        comment: Optional[str],
        now
    ) -> Optional[str]:
        recipients = self.resolver.admin_digest_recipients(mail_settings)
        if not recipients:
            return None

        entry = AdminDigestQueueEntry(
            digest_entry_id=generate_digest_entry_id(),
            event_type=event_type,
            request_id=record.request_id,
            request_status=status,
            previous_status=previous_status,
            actor_name=actor_name or "",
            comment=comment,
            recipients=recipients,
            recipients_key=recipients_key(recipients),
            digest_date=business_date(settings.business_timezone, now).isoformat(),
            event_at=now,
            next_attempt_at=now,
            created_at=now,
            updated_at=now
        )
        self.digest_repo.create_entry(entry)
        return entry.digest_entry_id

    def enqueue_best_effort(
        self,
        record: RequestRecord,
        event_type: NotificationEventType,
        status: RequestStatus,
        previous_status: Optional[RequestStatus] = None,
        actor_name: str = "",
        comment: Optional[str] = None,
        history_entry_id: Optional[str] = None
    ) -> Optional[NotificationEnqueueResult]:
        """
        enqueue_request_event() for the business path: failures are logged
        and swallowed.

        Returns:
            The enqueue result, or None if enqueue raised
        """
        try:
            return self.enqueue_request_event(
                record=record,
                event_type=event_type,
                status=status,
                previous_status=previous_status,
                actor_name=actor_name,
                comment=comment,
                history_entry_id=history_entry_id
            )
        except Exception as e:
            logger.error(
                f"Failed to enqueue notification for {record.request_id}",
                extra={
                    "request_id": record.request_id,
                    "event_type": event_type.value,
                    "error_type": type(e).__name__,
                    "error": str(e)
                },
                exc_info=True
            )
            return None
