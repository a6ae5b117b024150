"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'NTF', 'DGQ', 'DCS')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('NTF')
        'NTF-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_notification_id() -> str:
    """Generate notification outbox entry ID"""
    return generate_id("NTF")


def generate_digest_entry_id() -> str:
    """Generate admin digest queue entry ID"""
    return generate_id("DGQ")


def generate_device_code_session_id() -> str:
    """Generate device-code session ID"""
    return generate_id("DCS")


def generate_history_entry_id() -> str:
    """Generate status history entry ID"""
    return generate_id("h")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
