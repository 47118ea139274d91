"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 string in UTC.

    Args:
        value: datetime to convert (naive values are taken as UTC)

    Returns:
        ISO-8601 string, or None if value is None
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string into a UTC datetime.

    Args:
        value: ISO string (a trailing 'Z' is accepted) or a datetime

    Returns:
        timezone-aware datetime, or None if value is None
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return ensure_utc(datetime.fromisoformat(value))


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
