"""Notification Repository - Data access for the notification outbox

Entries move pending -> sending (claimed) -> sent | pending (retry) | failed,
and the entries of one request are claimed in creation order.
Claims are taken with atomic find-and-modify so overlapping dispatcher runs,
in one process or many, never work on the same entry at the same time.
"""
from datetime import datetime
from typing import List, Optional
from pymongo import ASCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import get_collection, to_document, NOTIFICATION_OUTBOX
from ..domain.models import NotificationOutboxEntry
from ..domain.enums import OutboxStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Creation order; the id breaks ties between entries created in the same millisecond
CLAIM_ORDER = [("created_at", ASCENDING), ("notification_id", ASCENDING)]


class NotificationRepository:
    """Repository for notification outbox operations"""

    def __init__(self, db: Optional[Database] = None):
        self._outbox: Collection = get_collection(NOTIFICATION_OUTBOX, db)

    def create_entry(self, entry: NotificationOutboxEntry) -> NotificationOutboxEntry:
        """
        Insert a pending entry.

        Raises:
            DuplicateKeyError: if an entry with the same dedupe key exists
        """
        doc = to_document(entry)
        doc["_id"] = entry.notification_id
        if doc.get("dedupe_key") is None:
            # sparse unique index: absent keys never collide
            doc.pop("dedupe_key", None)

        self._outbox.insert_one(doc)
        logger.info(
            f"Created notification: {entry.event_type.value}",
            extra={
                "notification_id": entry.notification_id,
                "request_id": entry.request_id,
                "recipients_count": len(entry.recipients)
            }
        )
        return entry

    def get_entry(self, notification_id: str) -> Optional[NotificationOutboxEntry]:
        """Get entry by ID"""
        doc = self._outbox.find_one({"notification_id": notification_id})
        if doc:
            doc.pop("_id", None)
            return NotificationOutboxEntry.model_validate(doc)
        return None

    def list_entries(
        self,
        request_id: Optional[str] = None,
        status: Optional[OutboxStatus] = None,
        limit: int = 100
    ) -> List[NotificationOutboxEntry]:
        """List entries oldest first, optionally filtered"""
        query = {}
        if request_id:
            query["request_id"] = request_id
        if status:
            query["status"] = status.value

        entries = []
        for doc in self._outbox.find(query).sort("created_at", ASCENDING).limit(limit):
            doc.pop("_id", None)
            entries.append(NotificationOutboxEntry.model_validate(doc))
        return entries

    def has_due_entries(self, now: datetime) -> bool:
        """Whether at least one pending entry is eligible for an attempt"""
        doc = self._outbox.find_one(
            {"status": OutboxStatus.PENDING.value, "next_attempt_at": {"$lte": now}},
            projection={"_id": 1}
        )
        return doc is not None

    def claim_next_due(
        self,
        worker_id: str,
        now: datetime,
        claimed_until: datetime,
        scan_limit: int = 100
    ) -> Optional[NotificationOutboxEntry]:
        """
        Atomically claim the oldest due pending entry.

        Entries of one request go out in creation order: a candidate is
        skipped while an older entry of the same request is still pending
        (waiting for a retry) or being sent. Failed entries do not block.

        Args:
            worker_id: Unique identifier of the claiming run
            now: Current time, entries with next_attempt_at <= now are due
            claimed_until: When the claim is considered abandoned
            scan_limit: Due candidates examined per call

        Returns:
            The claimed entry (status 'sending'), or None when nothing is due
        """
        due = {"status": OutboxStatus.PENDING.value, "next_attempt_at": {"$lte": now}}
        candidates = list(
            self._outbox.find(
                due, projection={"notification_id": 1, "request_id": 1, "created_at": 1}
            ).sort(CLAIM_ORDER).limit(scan_limit)
        )

        for candidate in candidates:
            if self._has_older_unsent(candidate):
                continue

            doc = self._outbox.find_one_and_update(
                {"notification_id": candidate["notification_id"], **due},
                {
                    "$set": {
                        "status": OutboxStatus.SENDING.value,
                        "claimed_by": worker_id,
                        "claimed_until": claimed_until,
                        "updated_at": now,
                    }
                },
                return_document=ReturnDocument.AFTER
            )
            if doc is None:
                # Another run claimed it first
                continue

            doc.pop("_id", None)
            logger.debug(
                f"Claimed notification {doc['notification_id']}",
                extra={"notification_id": doc["notification_id"], "worker_id": worker_id}
            )
            return NotificationOutboxEntry.model_validate(doc)

        return None

    def _has_older_unsent(self, candidate: dict) -> bool:
        created_at = candidate["created_at"]
        doc = self._outbox.find_one(
            {
                "request_id": candidate["request_id"],
                "status": {"$in": [OutboxStatus.PENDING.value, OutboxStatus.SENDING.value]},
                "$or": [
                    {"created_at": {"$lt": created_at}},
                    {"created_at": created_at, "notification_id": {"$lt": candidate["notification_id"]}},
                ],
            },
            projection={"_id": 1}
        )
        return doc is not None

    def mark_sent(self, notification_id: str, now: datetime) -> bool:
        """
        Mark entry as sent.

        Not guarded by the claim owner: once the mail went out the entry
        must end up 'sent' even if its claim was recovered meanwhile.
        """
        result = self._outbox.update_one(
            {
                "notification_id": notification_id,
                "status": {"$in": [OutboxStatus.SENDING.value, OutboxStatus.PENDING.value]},
            },
            {
                "$set": {
                    "status": OutboxStatus.SENT.value,
                    "sent_at": now,
                    "updated_at": now,
                    "last_error": None,
                    "claimed_by": None,
                    "claimed_until": None,
                }
            }
        )
        return result.modified_count > 0

    def schedule_retry(
        self,
        notification_id: str,
        worker_id: str,
        error: str,
        next_attempt_at: datetime,
        now: datetime
    ) -> bool:
        """Record a failed attempt and put the entry back to pending"""
        result = self._outbox.update_one(
            {
                "notification_id": notification_id,
                "status": OutboxStatus.SENDING.value,
                "claimed_by": worker_id,
            },
            {
                "$set": {
                    "status": OutboxStatus.PENDING.value,
                    "last_error": error,
                    "next_attempt_at": next_attempt_at,
                    "updated_at": now,
                    "claimed_by": None,
                    "claimed_until": None,
                },
                "$inc": {"attempts": 1},
            }
        )
        return result.modified_count > 0

    def mark_failed(self, notification_id: str, worker_id: str, error: str, now: datetime) -> bool:
        """Record the last failed attempt and stop retrying"""
        result = self._outbox.update_one(
            {
                "notification_id": notification_id,
                "status": OutboxStatus.SENDING.value,
                "claimed_by": worker_id,
            },
            {
                "$set": {
                    "status": OutboxStatus.FAILED.value,
                    "last_error": error,
                    "updated_at": now,
                    "claimed_by": None,
                    "claimed_until": None,
                },
                "$inc": {"attempts": 1},
            }
        )
        return result.modified_count > 0

    def release_stale_claims(self, now: datetime) -> int:
        """
        Return abandoned claims to pending.

        A run that crashed while holding a claim leaves the entry in
        'sending'; once the claim expires the entry becomes due again with
        its next_attempt_at unchanged. Attempts are not consumed.

        Returns:
            Number of claims released
        """
        result = self._outbox.update_many(
            {"status": OutboxStatus.SENDING.value, "claimed_until": {"$lte": now}},
            {
                "$set": {
                    "status": OutboxStatus.PENDING.value,
                    "claimed_by": None,
                    "claimed_until": None,
                    "updated_at": now,
                }
            }
        )
        if result.modified_count > 0:
            logger.warning(
                f"Released {result.modified_count} stale notification claims",
                extra={"stale_count": result.modified_count}
            )
        return result.modified_count
