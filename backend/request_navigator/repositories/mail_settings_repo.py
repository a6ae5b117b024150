"""Mail Settings Repository - Singleton Microsoft 365 integration settings"""
from typing import Optional
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import get_collection, to_document, MAIL_SETTINGS
from ..domain.models import MailSettings
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)

SETTINGS_DOC_ID = "default"


class MailSettingsRepository:
    """Repository for the mail integration settings document"""

    def __init__(self, db: Optional[Database] = None):
        self._settings: Collection = get_collection(MAIL_SETTINGS, db)

    def get_settings(self) -> MailSettings:
        """Current settings, or disabled defaults when never saved"""
        doc = self._settings.find_one({"_id": SETTINGS_DOC_ID})
        if not doc:
            return MailSettings()
        doc.pop("_id", None)
        return MailSettings.model_validate(doc)

    def save_settings(self, mail_settings: MailSettings) -> MailSettings:
        """Replace the settings document"""
        mail_settings = mail_settings.model_copy(update={"updated_at": utc_now()})
        doc = to_document(mail_settings)
        doc["_id"] = SETTINGS_DOC_ID

        self._settings.replace_one({"_id": SETTINGS_DOC_ID}, doc, upsert=True)
        logger.info(
            "Mail integration settings updated",
            extra={"status": "enabled" if mail_settings.enabled else "disabled"}
        )
        return mail_settings
