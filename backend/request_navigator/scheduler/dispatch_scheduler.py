"""Dispatch Scheduler - In-process timers for notification delivery

Supports multi-server deployment: every server runs its own scheduler, and
outbox entries / digest groups are claimed in MongoDB before they are sent,
so each one is delivered by exactly one server per attempt.

Jobs:
- Outbox dispatch (every outbox_interval_seconds)
- Admin digest (every digest_interval_minutes)

Both jobs release abandoned claims first (crash recovery).
"""
import os
import socket
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..services.m365_token_manager import M365TokenManager
from ..services.graph_mail_client import GraphMailClient
from ..services.outbox_dispatcher import OutboxDispatcher
from ..services.admin_digest_service import AdminDigestService
from ..utils.logger import get_logger, set_correlation_id
from ..utils.idgen import generate_correlation_id, generate_id

logger = get_logger(__name__)


class NotificationScheduler:
    """
    APScheduler wrapper running the outbox dispatcher and digest aggregator.

    Both jobs share one token manager so a token refresh is serialized
    within the process as well as across processes.
    """

    def __init__(
        self,
        dispatcher: Optional[OutboxDispatcher] = None,
        digest_service: Optional[AdminDigestService] = None,
        db=None
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False
        self._server_id = self._generate_server_id()

        token_manager = M365TokenManager(db=db)
        mail_client = GraphMailClient()
        self.dispatcher = dispatcher or OutboxDispatcher(
            token_manager=token_manager,
            mail_client=mail_client,
            server_id=self._server_id,
            db=db
        )
        self.digest_service = digest_service or AdminDigestService(
            token_manager=token_manager,
            mail_client=mail_client,
            server_id=self._server_id,
            db=db
        )

    def _generate_server_id(self) -> str:
        """Generate unique server identifier for claims"""
        hostname = socket.gethostname()
        pid = os.getpid()
        unique = generate_id()[:8]
        return f"{hostname}-{pid}-{unique}"

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._dispatch_outbox,
            trigger=IntervalTrigger(seconds=settings.outbox_interval_seconds),
            id="dispatch_outbox",
            name="Dispatch pending notifications",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self.scheduler.add_job(
            self._dispatch_admin_digest,
            trigger=IntervalTrigger(minutes=settings.digest_interval_minutes),
            id="dispatch_admin_digest",
            name="Send admin digests",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Scheduler started",
            extra={"worker_id": self._server_id}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _dispatch_outbox(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            summary = await self.dispatcher.dispatch_once()
            if summary.released:
                logger.warning(
                    f"Released {summary.released} abandoned outbox claims",
                    extra={"stale_count": summary.released}
                )
        except Exception as e:
            logger.error(f"Error in outbox dispatch job: {e}", exc_info=True)

    async def _dispatch_admin_digest(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            summary = await self.digest_service.dispatch_once()
            if summary.claimed:
                logger.info(
                    f"Admin digest run: {summary.sent} sent, {summary.retried} retried, {summary.failed} failed",
                    extra={"group_size": summary.claimed}
                )
        except Exception as e:
            logger.error(f"Error in admin digest job: {e}", exc_info=True)


# Global scheduler instance
_scheduler: Optional[NotificationScheduler] = None


def get_scheduler() -> NotificationScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = NotificationScheduler()
    return _scheduler


def start_scheduler() -> None:
    """Start the global scheduler"""
    scheduler = get_scheduler()
    scheduler.start()


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None


def scheduler_status() -> dict:
    """Whether this process runs the dispatch jobs (reported by /health)"""
    return {
        "enabled": settings.scheduler_enabled,
        "running": _scheduler is not None and _scheduler.is_running,
        "outboxIntervalSeconds": settings.outbox_interval_seconds,
        "digestIntervalMinutes": settings.digest_interval_minutes,
    }
