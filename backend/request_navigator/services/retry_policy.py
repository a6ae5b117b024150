"""Retry Policy - Exponential backoff with jitter for outbox and digest rows"""
import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config.settings import settings


class RetryPolicy:
    """
    Backoff for the n-th failed attempt: 2^n seconds (n capped at 10),
    clamped to [min_seconds, max_seconds], then scaled by +/-20% jitter.

    With the defaults that is one minute for early failures, growing to
    at most an hour.
    """

    MAX_EXPONENT = 10
    JITTER_LOW = 0.8
    JITTER_HIGH = 1.2

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        min_seconds: Optional[int] = None,
        max_seconds: Optional[int] = None,
        rng: Optional[Callable[[], float]] = None
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.notification_max_attempts
        self.min_seconds = min_seconds if min_seconds is not None else settings.retry_backoff_min_seconds
        self.max_seconds = max_seconds if max_seconds is not None else settings.retry_backoff_max_seconds
        self._rng = rng or random.random

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after the attempt-th failure (attempt starts at 1)"""
        base = min(self.max_seconds, max(self.min_seconds, 2 ** min(attempt, self.MAX_EXPONENT)))
        jitter = self.JITTER_LOW + self._rng() * (self.JITTER_HIGH - self.JITTER_LOW)
        return base * jitter

    def is_exhausted(self, attempt: int) -> bool:
        """Whether the attempt-th failure uses up the budget"""
        return attempt >= self.max_attempts

    def next_attempt_at(
        self,
        attempt: int,
        now: datetime,
        previous: Optional[datetime] = None
    ) -> datetime:
        """
        When the row becomes due again.

        Always strictly after `previous` (the row's current next_attempt_at),
        by at least one millisecond so the order survives storage rounding.
        """
        next_at = now + timedelta(seconds=self.backoff_seconds(attempt))
        if previous is not None:
            floor = previous + timedelta(milliseconds=1)
            if next_at < floor:
                next_at = floor
        return next_at
