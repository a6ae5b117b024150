"""
Outbox Dispatcher - Delivers pending notifications with retry and backoff

One run:
    1. return abandoned claims to pending (crash recovery)
    2. skip if the integration is disabled, nothing is due, or no token
    3. claim due entries one at a time (oldest first) up to the batch size
    4. send each; mark sent, or schedule a retry, or mark failed

Delivery is at-least-once. A run that dies after Graph accepted a message
but before mark_sent leaves the entry claimed; once the claim expires the
entry is sent again.
"""
from datetime import timedelta
from typing import Optional

from ..domain.models import DispatchSummary, NotificationOutboxEntry
from ..domain.errors import NotAuthenticatedError, ConfigurationError, TerminalDeliveryError
from ..repositories.notification_repo import NotificationRepository
from ..repositories.mail_settings_repo import MailSettingsRepository
from .m365_token_manager import M365TokenManager
from .graph_mail_client import GraphMailClient
from .retry_policy import RetryPolicy
from ..config.settings import settings
from ..utils.idgen import generate_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class OutboxDispatcher:
    """Sends notification outbox entries through Microsoft Graph"""

    def __init__(
        self,
        repo: Optional[NotificationRepository] = None,
        settings_repo: Optional[MailSettingsRepository] = None,
        token_manager: Optional[M365TokenManager] = None,
        mail_client: Optional[GraphMailClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: Optional[int] = None,
        claim_seconds: Optional[int] = None,
        server_id: Optional[str] = None,
        db=None
    ):
        self.repo = repo or NotificationRepository(db)
        self.settings_repo = settings_repo or MailSettingsRepository(db)
        self.token_manager = token_manager or M365TokenManager(db=db)
        self.mail_client = mail_client or GraphMailClient()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size if batch_size is not None else settings.outbox_batch_size
        self.claim_seconds = claim_seconds if claim_seconds is not None else settings.notification_claim_seconds
        self.server_id = server_id or generate_id()

    async def dispatch_once(self) -> DispatchSummary:
        """
        Run one dispatch pass.

        Never raises for per-entry failures; those are recorded on the rows.
        """
        summary = DispatchSummary()
        now = utc_now()
        summary.released = self.repo.release_stale_claims(now)

        mail_settings = self.settings_repo.get_settings()
        if not mail_settings.enabled:
            summary.skipped_reason = "disabled"
            return summary

        if not self.repo.has_due_entries(now):
            return summary

        try:
            access_token = await self.token_manager.get_valid_access_token()
        except (NotAuthenticatedError, ConfigurationError) as e:
            # Entries stay pending without consuming attempts
            logger.warning(
                "Outbox dispatch skipped: mailbox not authenticated",
                extra={"error_code": e.error_code, "error": e.message}
            )
            summary.skipped_reason = "not_authenticated"
            return summary

        worker_id = f"{self.server_id}-{generate_id()[:8]}"
        for _ in range(self.batch_size):
            claim_now = utc_now()
            entry = self.repo.claim_next_due(
                worker_id,
                claim_now,
                claim_now + timedelta(seconds=self.claim_seconds)
            )
            if entry is None:
                break
            summary.claimed += 1
            await self._deliver(entry, access_token, worker_id, summary)

        if summary.claimed:
            logger.info(
                f"Outbox dispatch: {summary.sent} sent, {summary.retried} retried, {summary.failed} failed",
                extra={"worker_id": worker_id}
            )
        return summary

    async def _deliver(
        self,
        entry: NotificationOutboxEntry,
        access_token: str,
        worker_id: str,
        summary: DispatchSummary
    ) -> None:
        try:
            await self.mail_client.send_mail(
                access_token=access_token,
                recipients=list(entry.recipients),
                subject=entry.subject,
                body_html=entry.body_html
            )
        except Exception as e:
            self._record_failure(entry, worker_id, e, summary)
            return

        self.repo.mark_sent(entry.notification_id, utc_now())
        summary.sent += 1
        logger.info(
            f"Sent notification: {entry.notification_id}",
            extra={
                "notification_id": entry.notification_id,
                "request_id": entry.request_id,
                "event_type": entry.event_type.value,
                "recipients_count": len(entry.recipients),
                "attempts": entry.attempts + 1
            }
        )

    def _record_failure(
        self,
        entry: NotificationOutboxEntry,
        worker_id: str,
        error: Exception,
        summary: DispatchSummary
    ) -> None:
        now = utc_now()
        attempt = entry.attempts + 1
        message = f"{type(error).__name__}: {error}"

        if self.retry_policy.is_exhausted(attempt):
            terminal = TerminalDeliveryError(
                f"Gave up after {attempt} attempts: {message}",
                details={"notification_id": entry.notification_id}
            )
            self.repo.mark_failed(entry.notification_id, worker_id, terminal.message, now)
            summary.failed += 1
            logger.error(
                f"Notification failed permanently: {entry.notification_id}",
                extra={
                    "notification_id": entry.notification_id,
                    "request_id": entry.request_id,
                    "attempts": attempt,
                    "error_code": terminal.error_code,
                    "error_type": type(error).__name__,
                    "error": str(error)
                }
            )
            return

        next_attempt_at = self.retry_policy.next_attempt_at(attempt, now, entry.next_attempt_at)
        self.repo.schedule_retry(entry.notification_id, worker_id, message, next_attempt_at, now)
        summary.retried += 1
        logger.warning(
            f"Notification send failed, retrying: {entry.notification_id}",
            extra={
                "notification_id": entry.notification_id,
                "request_id": entry.request_id,
                "attempts": attempt,
                "error_type": type(error).__name__,
                "error": str(error)
            }
        )
