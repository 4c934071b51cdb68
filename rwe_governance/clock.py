"""Time helpers shared by the governance services"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 86400.0


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def days_between(start: datetime, end: datetime) -> float:
    """Fractional days from start to end"""
    return (end - start).total_seconds() / SECONDS_PER_DAY


def day_string(value: datetime) -> str:
    """Calendar day (YYYY-MM-DD) of a timestamp"""
    return value.date().isoformat()


def ensure_utc(value: datetime) -> datetime:
    """Treat a naive timestamp as UTC and convert an aware one to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
