"""
Utility functions for timestamps.

Timestamps are stored as fixed-width ISO-8601 UTC strings with microseconds,
so comparing the strings compares the instants.
"""

from datetime import datetime, timezone

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """
    Format a datetime as a sortable ISO-8601 UTC string.

    Args:
        value: Aware datetime (naive values are assumed to be UTC)

    Returns:
        String like 2025-01-15T10:00:00.000000Z
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
