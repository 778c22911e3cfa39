"""Time helpers shared by ingestion, workflows and clustering."""

from datetime import datetime, timezone, timedelta
from typing import Optional


def utcnow() -> datetime:
    """Get current time in UTC."""
    return datetime.now(timezone.utc)


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a datetime to an aware UTC datetime.

    Naive values are assumed to already be UTC; SQLite hands timestamps
    back naive, so every comparison in Python goes through here.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601 UTC, or None."""
    if dt is None:
        return None
    return to_utc(dt).isoformat()


def hours_ago(hours: float, now: Optional[datetime] = None) -> datetime:
    """UTC timestamp `hours` before `now`."""
    return (now or utcnow()) - timedelta(hours=hours)

