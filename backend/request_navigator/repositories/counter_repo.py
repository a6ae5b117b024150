"""Counter Repository - Atomic named counters"""
from typing import Optional
from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, COUNTERS
from ..domain.errors import ConcurrencyError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class CounterRepository:
    """Repository for named integer counters keyed by `_id`"""

    def __init__(self, db: Optional[Database] = None):
        self._counters: Collection = get_collection(COUNTERS, db)

    def increment(self, name: str, max_attempts: int = 3) -> int:
        """
        Atomically increment a counter and return the new value.

        The counter is created at 0 on first use (upsert). Two callers
        upserting a brand-new counter at the same time can collide on the
        `_id`; the loser retries and lands on the document the winner made.

        Args:
            name: Counter key (e.g. 'request_250607')
            max_attempts: Upsert collisions tolerated before giving up

        Returns:
            The incremented value (1 for the first call)

        Raises:
            ConcurrencyError: if every attempt collided
        """
        for attempt in range(1, max_attempts + 1):
            try:
                doc = self._counters.find_one_and_update(
                    {"_id": name},
                    {"$inc": {"value": 1}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER
                )
                return int(doc["value"])
            except DuplicateKeyError:
                logger.debug(
                    f"Counter upsert collision on {name} (attempt {attempt})",
                    extra={"attempts": attempt}
                )

        raise ConcurrencyError(
            f"Could not increment counter {name}",
            details={"counter": name, "attempts": max_attempts}
        )
