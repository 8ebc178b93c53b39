"""
Timestamp helpers.

All timestamps are handled as timezone-aware UTC. SQLite drops tzinfo on
read, so values coming back from the database go through as_utc().
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_window(valid_from: Optional[datetime], valid_to: Optional[datetime]) -> str:
    """Human readable half-open window, e.g. '2024-01-01T00:00:00+00:00 to open end'."""
    start = as_utc(valid_from).isoformat() if valid_from else "open start"
    end = as_utc(valid_to).isoformat() if valid_to else "open end"
    return f"{start} to {end}"
