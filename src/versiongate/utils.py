"""Small helpers shared by schema callbacks."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_timestamp_string(value: datetime, with_millis: bool = False) -> str:
    """Format *value* as a UTC ``YYYY-MM-DD HH:MM:SS[.mmm]`` SQL timestamp literal.

    Aware datetimes are converted to UTC; naive ones are assumed to be UTC
    already. Milliseconds are truncated, not rounded.
    """
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    text = value.strftime("%Y-%m-%d %H:%M:%S")
    if with_millis:
        text += f".{value.microsecond // 1000:03d}"
    return text
