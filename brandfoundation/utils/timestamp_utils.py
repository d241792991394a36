"""
Timestamp utilities for consistent time handling across the pipeline.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to a timezone-aware UTC datetime.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def elapsed_ms(started: float) -> int:
    """Milliseconds elapsed since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - started) * 1000)
