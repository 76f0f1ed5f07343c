"""Timestamp utilities for mdsync.

Stored timestamps are ISO-8601 strings in UTC. These helpers produce them
and convert them for display.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    """Get the current time as an ISO-8601 UTC string (second precision).

    Returns:
        String like "2026-01-31T12:00:00+00:00"
    """
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def format_timestamp(ts: Optional[str]) -> str:
    """Format a stored ISO timestamp in the local timezone for display.

    Args:
        ts: ISO-8601 string or None

    Returns:
        Formatted string "YYYY-MM-DD HH:MM:SS" in local timezone,
        or empty string if ts is None or unparseable
    """
    if not ts:
        return ""
    try:
        dt = datetime.fromisoformat(ts)
    except ValueError:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone().strftime("%Y-%m-%d %H:%M:%S")
