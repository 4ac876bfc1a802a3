"""
Wall-clock helpers for envelope timestamps.

Readings are stamped in epoch milliseconds. The human-readable form is local
time unless a time zone is given, with exactly three millisecond digits.
"""

import time
from datetime import datetime, timezone, tzinfo
from typing import Optional

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def epoch_millis() -> int:
    """Get current time as integer milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def from_epoch_millis(millis: int, tz: Optional[tzinfo] = None) -> datetime:
    """Convert epoch milliseconds to a timezone-aware datetime.

    Args:
        millis: Milliseconds since the epoch
        tz: Target timezone (defaults to the local zone)

    Returns:
        Timezone-aware datetime with millisecond precision
    """
    seconds, remainder = divmod(millis, 1000)
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    dt = dt.replace(microsecond=remainder * 1000)
    return dt.astimezone(tz)


def format_millis(millis: int, tz: Optional[tzinfo] = None) -> str:
    """Format epoch milliseconds as ``YYYY-MM-DD HH:MM:SS.mmm``."""
    dt = from_epoch_millis(millis, tz)
    return f"{dt.strftime(TIME_FORMAT)}.{dt.microsecond // 1000:03d}"


def uptime_seconds(started_at: float) -> int:
    """Seconds elapsed since a ``time.monotonic()`` reading."""
    return int(time.monotonic() - started_at)
