"""Time Utilities - UTC timestamps, business dates and formatting"""
from datetime import date, datetime, timezone
from typing import Optional
from dateutil import tz


def utc_now() -> datetime:
    """Get current UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (as read back from some Mongo drivers)"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """
    Format datetime to ISO 8601 string

    Args:
        dt: Datetime object

    Returns:
        ISO formatted string with Z suffix for UTC
    """
    dt = ensure_utc(dt)
    return dt.isoformat().replace("+00:00", "Z")


def format_utc_display(dt: Optional[datetime]) -> str:
    """Format datetime for email display, e.g. '2025-06-07 14:03:00 UTC'"""
    if dt is None:
        return ""
    return ensure_utc(dt).strftime("%Y-%m-%d %H:%M:%S UTC")


def business_date(timezone_name: str, at: Optional[datetime] = None) -> date:
    """
    Calendar date of an instant in the business timezone

    Args:
        timezone_name: IANA zone name (e.g. 'Europe/Paris'); unknown names fall back to UTC
        at: Instant to convert, defaults to now

    Returns:
        The local calendar date
    """
    zone = tz.gettz(timezone_name) or tz.UTC
    return ensure_utc(at or utc_now()).astimezone(zone).date()
