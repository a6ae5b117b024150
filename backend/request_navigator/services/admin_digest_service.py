"""
Admin Digest Service - Daily summary emails for the admin group

Status-change events routed to admins are queued per business day instead
of mailed one by one. A dispatch pass groups due rows by
(digest_date, recipients_key), renders one summary per group and marks the
whole group sent together. Each group is claimed, sent and retried on its
own, so one failing group never holds back the others.
"""
from datetime import timedelta
from typing import List, Optional

from ..domain.models import DispatchSummary, AdminDigestQueueEntry
from ..domain.errors import NotAuthenticatedError, ConfigurationError, TerminalDeliveryError
from ..repositories.digest_repo import AdminDigestRepository
from ..repositories.mail_settings_repo import MailSettingsRepository
from .m365_token_manager import M365TokenManager
from .graph_mail_client import GraphMailClient
from .retry_policy import RetryPolicy
from ..templates.email_templates import render_digest_email
from ..config.settings import settings
from ..utils.idgen import generate_id
from ..utils.time import utc_now, business_date
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AdminDigestService:
    """Aggregates and sends the admin digest queue"""

    def __init__(
        self,
        repo: Optional[AdminDigestRepository] = None,
        settings_repo: Optional[MailSettingsRepository] = None,
        token_manager: Optional[M365TokenManager] = None,
        mail_client: Optional[GraphMailClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_groups: Optional[int] = None,
        claim_seconds: Optional[int] = None,
        timezone_name: Optional[str] = None,
        server_id: Optional[str] = None,
        db=None
    ):
        self.repo = repo or AdminDigestRepository(db)
        self.settings_repo = settings_repo or MailSettingsRepository(db)
        self.token_manager = token_manager or M365TokenManager(db=db)
        self.mail_client = mail_client or GraphMailClient()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_groups = batch_groups if batch_groups is not None else settings.digest_batch_groups
        self.claim_seconds = claim_seconds if claim_seconds is not None else settings.notification_claim_seconds
        self.timezone_name = timezone_name or settings.business_timezone
        self.server_id = server_id or generate_id()

    async def dispatch_once(self, include_today: bool = False) -> DispatchSummary:
        """
        Send every due digest group whose day has closed.

        Args:
            include_today: Also send today's (still open) group

        Returns:
            Counters in groups: claimed, sent, retried, failed
        """
        summary = DispatchSummary()
        now = utc_now()
        summary.released = self.repo.release_stale_claims(now)

        mail_settings = self.settings_repo.get_settings()
        if not mail_settings.enabled:
            summary.skipped_reason = "disabled"
            return summary

        before_date = None if include_today else business_date(self.timezone_name, now).isoformat()
        groups = self.repo.find_due_groups(now, before_date, limit=self.batch_groups)
        if not groups:
            return summary

        try:
            access_token = await self.token_manager.get_valid_access_token()
        except (NotAuthenticatedError, ConfigurationError) as e:
            logger.warning(
                "Admin digest skipped: mailbox not authenticated",
                extra={"error_code": e.error_code, "error": e.message}
            )
            summary.skipped_reason = "not_authenticated"
            return summary

        base_url = mail_settings.app_base_url or settings.frontend_url
        for digest_date, recipients_key in groups:
            claim_token = f"{self.server_id}-{generate_id()[:8]}"
            claim_now = utc_now()
            entries = self.repo.claim_group(
                digest_date,
                recipients_key,
                claim_token,
                claim_now,
                claim_now + timedelta(seconds=self.claim_seconds)
            )
            if not entries:
                # Another run took this group
                continue
            summary.claimed += 1
            await self._send_group(digest_date, entries, claim_token, access_token, base_url, summary)

        return summary

    async def _send_group(
        self,
        digest_date: str,
        entries: List[AdminDigestQueueEntry],
        claim_token: str,
        access_token: str,
        base_url: str,
        summary: DispatchSummary
    ) -> None:
        try:
            content = render_digest_email(entries, digest_date, base_url)
            await self.mail_client.send_mail(
                access_token=access_token,
                recipients=list(entries[0].recipients),
                subject=content["subject"],
                body_html=content["body"]
            )
        except Exception as e:
            self._record_group_failure(digest_date, entries, claim_token, e, summary)
            return

        self.repo.mark_group_sent(claim_token, utc_now())
        summary.sent += 1
        logger.info(
            f"Sent admin digest for {digest_date}",
            extra={"recipients_count": len(entries[0].recipients), "group_size": len(entries)}
        )

    def _record_group_failure(
        self,
        digest_date: str,
        entries: List[AdminDigestQueueEntry],
        claim_token: str,
        error: Exception,
        summary: DispatchSummary
    ) -> None:
        """One retry decision and one retry time for the whole group"""
        now = utc_now()
        message = f"{type(error).__name__}: {error}"
        attempt = max(entry.attempts for entry in entries) + 1

        if self.retry_policy.is_exhausted(attempt):
            terminal = TerminalDeliveryError(f"Gave up after {attempt} attempts: {message}")
            self.repo.mark_group_failed(claim_token, terminal.message, attempt, now)
            summary.failed += 1
            logger.error(
                f"Admin digest for {digest_date} failed permanently",
                extra={
                    "group_size": len(entries),
                    "attempts": attempt,
                    "error_code": terminal.error_code,
                    "error_type": type(error).__name__,
                    "error": str(error)
                }
            )
            return

        previous = max(entry.next_attempt_at for entry in entries)
        next_attempt_at = self.retry_policy.next_attempt_at(attempt, now, previous)
        self.repo.schedule_group_retry(claim_token, message, attempt, next_attempt_at, now)
        summary.retried += 1
        logger.warning(
            f"Admin digest for {digest_date} failed, retrying",
            extra={
                "group_size": len(entries),
                "attempts": attempt,
                "error_type": type(error).__name__,
                "error": str(error)
            }
        )
