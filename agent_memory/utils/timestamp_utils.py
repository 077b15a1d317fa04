"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime, timedelta, timezone


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def days_ago_iso(days: int) -> str:
    """ISO-8601 cutoff ``days`` days before now."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    return cutoff.replace(microsecond=0).isoformat()


def seconds_ago_iso(seconds: int) -> str:
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=seconds)
    return cutoff.replace(microsecond=0).isoformat()


def elapsed_ms(start: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - start) * 1000)
