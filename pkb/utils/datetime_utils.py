"""
Datetime utilities for PKB services.

Timestamps are stored in SQLite as UTC ISO-8601 strings so that text
ordering matches chronological ordering.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def make_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware (UTC if naive).

    Args:
        dt: A datetime object that may or may not have timezone info

    Returns:
        The same datetime with UTC timezone if it was naive,
        or the original timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_utc_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a UTC ISO string for storage."""
    if dt is None:
        return None
    return make_aware(dt).astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored ISO timestamp into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return make_aware(value)
    return make_aware(datetime.fromisoformat(value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
