"""
Time utilities. Every persisted timestamp is epoch milliseconds in UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as dateutil_parser


def now_ms() -> int:
    """Get the current time as epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Args:
        dt: Datetime to convert (naive values are assumed to be UTC)

    Returns:
        Aware datetime in UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def datetime_to_ms(dt: datetime) -> int:
    return int(to_utc(dt).timestamp() * 1000)


def ms_to_datetime(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def ms_to_iso(epoch_ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string (``2024-01-15T10:30:00Z``)."""
    return ms_to_datetime(epoch_ms).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp_ms(value: Optional[str]) -> Optional[int]:
    """
    Parse an ISO-8601 timestamp into epoch milliseconds.

    Args:
        value: Timestamp string, e.g. from an AI tier response

    Returns:
        Epoch milliseconds, or None if the value is missing or unparseable
    """
    if not value or not isinstance(value, str):
        return None

    try:
        return datetime_to_ms(dateutil_parser.isoparse(value.strip()))
    except (ValueError, TypeError, OverflowError):
        return None
