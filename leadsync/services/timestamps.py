"""Timestamp helpers shared by ingestion and reconciliation"""
from datetime import datetime, timezone
from typing import Any, Optional


def normalize_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to UTC tz-naive (safe for comparisons)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO8601 string (or pass through a datetime) into UTC tz-naive.

    Returns None for empty values; raises ValueError for garbage.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return normalize_utc_naive(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    return normalize_utc_naive(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
