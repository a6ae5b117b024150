"""Admin Digest Repository - Data access for the admin digest queue"""
from datetime import datetime
from typing import List, Optional, Tuple
from pymongo import ASCENDING
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import get_collection, to_document, ADMIN_DIGEST_QUEUE
from ..domain.models import AdminDigestQueueEntry
from ..domain.enums import OutboxStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AdminDigestRepository:
    """
    Repository for admin digest queue entries.

    Rows are grouped at dispatch time by (digest_date, recipients_key) and
    a whole group is claimed with one update_many carrying a claim token.
    """

    def __init__(self, db: Optional[Database] = None):
        self._queue: Collection = get_collection(ADMIN_DIGEST_QUEUE, db)

    def create_entry(self, entry: AdminDigestQueueEntry) -> AdminDigestQueueEntry:
        """Insert a pending digest entry"""
        doc = to_document(entry)
        doc["_id"] = entry.digest_entry_id

        self._queue.insert_one(doc)
        logger.info(
            f"Queued admin digest event for {entry.digest_date}",
            extra={"digest_entry_id": entry.digest_entry_id, "request_id": entry.request_id}
        )
        return entry

    def get_entry(self, digest_entry_id: str) -> Optional[AdminDigestQueueEntry]:
        """Get entry by ID"""
        doc = self._queue.find_one({"digest_entry_id": digest_entry_id})
        if doc:
            doc.pop("_id", None)
            return AdminDigestQueueEntry.model_validate(doc)
        return None

    def find_due_groups(
        self,
        now: datetime,
        before_date: Optional[str],
        limit: int = 20
    ) -> List[Tuple[str, str]]:
        """
        Distinct (digest_date, recipients_key) pairs with due pending rows.

        Args:
            now: Rows with next_attempt_at <= now are due
            before_date: Only dates strictly before this one (YYYY-MM-DD); None for all
            limit: Max groups returned, oldest dates first
        """
        query = {"status": OutboxStatus.PENDING.value, "next_attempt_at": {"$lte": now}}
        if before_date is not None:
            query["digest_date"] = {"$lt": before_date}

        groups: List[Tuple[str, str]] = []
        seen = set()
        cursor = self._queue.find(
            query, projection={"digest_date": 1, "recipients_key": 1}
        ).sort([("digest_date", ASCENDING), ("created_at", ASCENDING)])
        for doc in cursor:
            key = (doc["digest_date"], doc["recipients_key"])
            if key in seen:
                continue
            seen.add(key)
            groups.append(key)
            if len(groups) >= limit:
                break
        return groups

    def claim_group(
        self,
        digest_date: str,
        recipients_key: str,
        claim_token: str,
        now: datetime,
        claimed_until: datetime
    ) -> List[AdminDigestQueueEntry]:
        """
        Claim every due pending row of one group.

        Rows another run already claimed are not touched, so two overlapping
        runs split a group rather than both sending it.

        Returns:
            The rows this claim token now holds, oldest event first
        """
        self._queue.update_many(
            {
                "status": OutboxStatus.PENDING.value,
                "digest_date": digest_date,
                "recipients_key": recipients_key,
                "next_attempt_at": {"$lte": now},
            },
            {
                "$set": {
                    "status": OutboxStatus.SENDING.value,
                    "claimed_by": claim_token,
                    "claimed_until": claimed_until,
                    "updated_at": now,
                }
            }
        )
        entries = []
        cursor = self._queue.find(
            {"status": OutboxStatus.SENDING.value, "claimed_by": claim_token}
        ).sort("event_at", ASCENDING)
        for doc in cursor:
            doc.pop("_id", None)
            entries.append(AdminDigestQueueEntry.model_validate(doc))
        return entries

    def mark_group_sent(self, claim_token: str, now: datetime) -> int:
        """Mark every row held by a claim token as sent"""
        result = self._queue.update_many(
            {"status": OutboxStatus.SENDING.value, "claimed_by": claim_token},
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
        return result.modified_count

    def schedule_group_retry(
        self,
        claim_token: str,
        error: str,
        attempts: int,
        next_attempt_at: datetime,
        now: datetime
    ) -> int:
        """
        Put every row held by a claim token back to pending.

        All rows get the same attempt count and retry time so the group
        becomes due, and is claimed again, as one unit.
        """
        result = self._queue.update_many(
            {"status": OutboxStatus.SENDING.value, "claimed_by": claim_token},
            {
                "$set": {
                    "status": OutboxStatus.PENDING.value,
                    "last_error": error,
                    "attempts": attempts,
                    "next_attempt_at": next_attempt_at,
                    "updated_at": now,
                    "claimed_by": None,
                    "claimed_until": None,
                }
            }
        )
        return result.modified_count

    def mark_group_failed(self, claim_token: str, error: str, attempts: int, now: datetime) -> int:
        """Stop retrying every row held by a claim token"""
        result = self._queue.update_many(
            {"status": OutboxStatus.SENDING.value, "claimed_by": claim_token},
            {
                "$set": {
                    "status": OutboxStatus.FAILED.value,
                    "last_error": error,
                    "attempts": attempts,
                    "updated_at": now,
                    "claimed_by": None,
                    "claimed_until": None,
                }
            }
        )
        return result.modified_count

    def release_stale_claims(self, now: datetime) -> int:
        """Return abandoned group claims to pending"""
        result = self._queue.update_many(
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
                f"Released {result.modified_count} stale digest claims",
                extra={"stale_count": result.modified_count}
            )
        return result.modified_count
