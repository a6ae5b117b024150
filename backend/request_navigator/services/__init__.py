"""Service modules - Business logic layer"""
from .retry_policy import RetryPolicy
from .graph_mail_client import GraphMailClient
from .m365_token_manager import M365TokenManager
from .notification_service import NotificationService
from .outbox_dispatcher import OutboxDispatcher
from .admin_digest_service import AdminDigestService
from .request_service import RequestService
from .m365_admin_service import M365AdminService

__all__ = [
    "RetryPolicy",
    "GraphMailClient",
    "M365TokenManager",
    "NotificationService",
    "OutboxDispatcher",
    "AdminDigestService",
    "RequestService",
    "M365AdminService",
]
