"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, create_indexes
from .counter_repo import CounterRepository
from .request_repo import RequestRepository
from .notification_repo import NotificationRepository
from .digest_repo import AdminDigestRepository
from .mail_settings_repo import MailSettingsRepository
from .m365_token_repo import M365TokenRepository, DeviceCodeSessionRepository

__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "CounterRepository",
    "RequestRepository",
    "NotificationRepository",
    "AdminDigestRepository",
    "MailSettingsRepository",
    "M365TokenRepository",
    "DeviceCodeSessionRepository",
]
