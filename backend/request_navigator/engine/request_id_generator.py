"""Request ID Generator - Human-readable, collision-free request identifiers"""
from datetime import datetime
from typing import Optional
from pymongo.database import Database

from ..config.settings import settings
from ..repositories.counter_repo import CounterRepository
from ..utils.time import business_date
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RequestIdGenerator:
    """
    Issues IDs like CRA25060701: prefix, YYMMDD in the business timezone,
    then the day's sequence zero-padded to two digits (it keeps growing
    past 99).

    Uniqueness comes from the atomic counter increment, one counter per day.
    """

    def __init__(
        self,
        counter_repo: Optional[CounterRepository] = None,
        prefix: Optional[str] = None,
        timezone_name: Optional[str] = None,
        db: Optional[Database] = None
    ):
        self.counter_repo = counter_repo or CounterRepository(db)
        self.prefix = prefix if prefix is not None else settings.request_id_prefix
        self.timezone_name = timezone_name or settings.business_timezone

    def date_stamp(self, now: Optional[datetime] = None) -> str:
        """YYMMDD of `now` in the business timezone"""
        return business_date(self.timezone_name, now).strftime("%y%m%d")

    def next_request_id(self, now: Optional[datetime] = None) -> str:
        """
        Reserve the next identifier for today.

        Raises:
            ConcurrencyError: if the counter could not be incremented
        """
        stamp = self.date_stamp(now)
        value = self.counter_repo.increment(f"request_{stamp}")
        request_id = f"{self.prefix}{stamp}{value:02d}"
        logger.debug(f"Issued request id {request_id}", extra={"request_id": request_id})
        return request_id
