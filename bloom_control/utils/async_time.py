"""
Async-safe time utilities.
All timestamps are timezone-aware UTC and serialized as ISO-8601 strings.
"""

import math
from datetime import datetime, timezone
from typing import Optional


async def get_utc_now() -> datetime:
    """
    Get current UTC datetime asynchronously.

    Returns:
        Current UTC datetime object
    """
    return datetime.now(timezone.utc)


async def get_iso_timestamp() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        ISO formatted timestamp string
    """
    now = await get_utc_now()
    return now.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def seconds_between(start: Optional[str], end: datetime) -> int:
    """Whole seconds elapsed from an ISO timestamp to `end` (0 if unknown)."""
    started = parse_timestamp(start)
    if not started:
        return 0
    return max(0, int((end - started).total_seconds()))


def get_window_start(now: float, window_seconds: int) -> int:
    """
    Align a timestamp to the start of its fixed window.

    Args:
        now: Seconds since epoch
        window_seconds: Window size

    Returns:
        floor(now / window) * window
    """
    return int(math.floor(now / window_seconds) * window_seconds)


def get_day_key(now: float) -> str:
    """Calendar day (UTC) for an epoch timestamp, e.g. '2025-01-31'."""
    return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")


def get_month_key(moment: datetime) -> str:
    """Calendar month for a datetime, e.g. '2025-01'."""
    return moment.strftime("%Y-%m")


def format_duration(seconds: Optional[int]) -> str:
    """Human-readable duration, e.g. '1h 23m', '5m 10s', '42s'."""
    if seconds is None:
        return "in progress"
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
