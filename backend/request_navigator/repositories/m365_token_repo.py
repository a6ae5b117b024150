"""Microsoft 365 Credential Repositories - token singleton and device-code sessions"""
from datetime import datetime
from typing import Any, Dict, Optional
from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import get_collection, to_document, MAIL_TOKENS, DEVICE_CODE_SESSIONS
from ..domain.models import OAuthTokenState, DeviceCodeSession
from ..domain.enums import DeviceCodeSessionStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)

TOKEN_DOC_ID = "default"


class M365TokenRepository:
    """
    Repository for the singleton OAuth token state.

    Only the token manager writes here; everything else asks the manager
    for a valid access token.
    """

    def __init__(self, db: Optional[Database] = None):
        self._tokens: Collection = get_collection(MAIL_TOKENS, db)

    def get_state(self) -> OAuthTokenState:
        """Current token state (empty when never connected)"""
        doc = self._tokens.find_one({"_id": TOKEN_DOC_ID})
        if not doc:
            return OAuthTokenState()
        doc.pop("_id", None)
        return OAuthTokenState.model_validate(doc)

    def store_tokens(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        scope: Optional[str],
        token_type: Optional[str],
        now: datetime
    ) -> OAuthTokenState:
        """
        Overwrite the token state.

        A refresh response may omit refresh_token or scope; the stored
        values are kept in that case instead of being wiped.
        """
        fields: Dict[str, Any] = {
            "access_token": access_token,
            "expires_at": expires_at,
            "updated_at": now,
        }
        if refresh_token is not None:
            fields["refresh_token"] = refresh_token
        if scope is not None:
            fields["scope"] = scope
        if token_type is not None:
            fields["token_type"] = token_type

        self._tokens.update_one({"_id": TOKEN_DOC_ID}, {"$set": fields}, upsert=True)
        return self.get_state()

    def clear(self, now: datetime) -> None:
        """Wipe every credential field (disconnect)"""
        self._tokens.update_one(
            {"_id": TOKEN_DOC_ID},
            {
                "$set": {
                    "access_token": None,
                    "refresh_token": None,
                    "expires_at": None,
                    "scope": None,
                    "token_type": None,
                    "refresh_lease_owner": None,
                    "refresh_lease_until": None,
                    "updated_at": now,
                }
            },
            upsert=True
        )
        logger.info("Microsoft 365 tokens cleared")

    def acquire_refresh_lease(self, owner: str, now: datetime, lease_until: datetime) -> bool:
        """
        Try to become the only refresher across processes.

        Returns:
            True if the lease is now held by `owner`
        """
        doc = self._tokens.find_one_and_update(
            {
                "_id": TOKEN_DOC_ID,
                "$or": [
                    {"refresh_lease_until": None},
                    {"refresh_lease_until": {"$lte": now}},
                    {"refresh_lease_owner": owner},
                ],
            },
            {"$set": {"refresh_lease_owner": owner, "refresh_lease_until": lease_until}}
        )
        return doc is not None

    def release_refresh_lease(self, owner: str) -> None:
        """Release the refresh lease if `owner` still holds it"""
        self._tokens.update_one(
            {"_id": TOKEN_DOC_ID, "refresh_lease_owner": owner},
            {"$set": {"refresh_lease_owner": None, "refresh_lease_until": None}}
        )


class DeviceCodeSessionRepository:
    """Repository for device-code authorization sessions"""

    def __init__(self, db: Optional[Database] = None):
        self._sessions: Collection = get_collection(DEVICE_CODE_SESSIONS, db)

    def create_session(self, session: DeviceCodeSession) -> DeviceCodeSession:
        """Insert a new session, superseding every older pending one"""
        superseded = self._sessions.update_many(
            {"status": DeviceCodeSessionStatus.PENDING.value},
            {"$set": {"status": DeviceCodeSessionStatus.SUPERSEDED.value}}
        )
        doc = to_document(session)
        doc["_id"] = session.session_id
        self._sessions.insert_one(doc)

        logger.info(
            f"Created device-code session (superseded {superseded.modified_count})",
            extra={"session_id": session.session_id}
        )
        return session

    def get_session(self, session_id: str) -> Optional[DeviceCodeSession]:
        """Get session by ID"""
        doc = self._sessions.find_one({"session_id": session_id})
        if doc:
            doc.pop("_id", None)
            return DeviceCodeSession.model_validate(doc)
        return None

    def get_latest(self) -> Optional[DeviceCodeSession]:
        """Most recently created session"""
        doc = self._sessions.find_one({}, sort=[("created_at", DESCENDING)])
        if doc:
            doc.pop("_id", None)
            return DeviceCodeSession.model_validate(doc)
        return None

    def claim_for_redeem(self, session_id: str) -> bool:
        """Move a pending session to redeeming; only one caller can win"""
        result = self._sessions.update_one(
            {"session_id": session_id, "status": DeviceCodeSessionStatus.PENDING.value},
            {"$set": {"status": DeviceCodeSessionStatus.REDEEMING.value}}
        )
        return result.modified_count == 1

    def update_status(
        self,
        session_id: str,
        status: DeviceCodeSessionStatus,
        interval_seconds: Optional[int] = None
    ) -> None:
        """Set session status (and optionally a new poll interval)"""
        fields: Dict[str, Any] = {"status": status.value}
        if interval_seconds is not None:
            fields["interval_seconds"] = interval_seconds
        self._sessions.update_one({"session_id": session_id}, {"$set": fields})
