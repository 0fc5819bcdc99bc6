"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime
from typing import Optional, Union

DAY_SECONDS = 24 * 60 * 60


def to_seconds_str(timestamp: Optional[Union[int, float, datetime]] = None) -> str:
    """Convert timestamp to seconds string format.

    Args:
        timestamp: Unix timestamp in seconds or datetime (optional, uses current time if None)

    Returns:
        Seconds timestamp as string
    """
    if timestamp is None:
        timestamp = time.time()
    elif isinstance(timestamp, datetime):
        timestamp = timestamp.timestamp()
    return str(int(timestamp))


def to_datetime(timestamp: Optional[Union[int, float, str]] = None) -> datetime:
    """Convert timestamp to datetime object.

    Args:
        timestamp: Unix timestamp in seconds, as number or string (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(int(float(timestamp)))


def age_seconds(moment: datetime, now: Optional[datetime] = None) -> float:
    """Seconds elapsed since moment, never negative."""
    now = now or datetime.now()
    return max(0.0, (now - moment).total_seconds())
