"""Datetime utilities for timezone-aware UTC timestamps.

SQLite hands back naive datetimes even when aware ones were written, so
anything that sorts or compares timestamps from mixed sources should go
through as_naive_utc() first.

Usage:
    from src.utils.datetime_utils import utc_now

    timestamp = utc_now()

    # For SQLAlchemy Column defaults
    created_at = Column(DateTime, default=utc_now)
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to naive UTC.

    Aware values are converted to UTC and stripped of tzinfo; naive values
    are assumed to already be UTC and returned unchanged.

    Args:
        value: Datetime to normalize (None passes through)

    Returns:
        Naive UTC datetime, or None
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
