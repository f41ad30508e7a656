"""
Time helpers shared by the scheduler, caches and credential handling.

Services take a `now` callable so tests can inject a fake clock.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
