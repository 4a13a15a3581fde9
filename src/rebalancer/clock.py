"""Millisecond timestamps and UTC calendar-day helpers."""

import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], int]

MS_PER_DAY = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


def utc_date(timestamp_ms: int) -> str:
    """UTC calendar date (YYYY-MM-DD) of a millisecond timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def day_start_ms(timestamp_ms: int) -> int:
    """Millisecond timestamp of 00:00 UTC on the day containing timestamp_ms."""
    return timestamp_ms - timestamp_ms % MS_PER_DAY


def day_window_ms(timestamp_ms: int) -> tuple[int, int]:
    """[start, end) millisecond bounds of the UTC day containing timestamp_ms."""
    start = day_start_ms(timestamp_ms)
    return start, start + MS_PER_DAY


def utc_hour(timestamp_ms: int) -> int:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).hour


def days_ago_ms(timestamp_ms: int, days: int) -> int:
    return timestamp_ms - int(timedelta(days=days).total_seconds() * 1000)
