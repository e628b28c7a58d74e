"""Time helpers shared by the reconciliation services"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..config import BUSINESS_TIMEZONE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def business_tz() -> ZoneInfo:
    return ZoneInfo(BUSINESS_TIMEZONE)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.
    Naive values (SQLite drops tzinfo on round-trip) are treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def at_local_time(day: date, hour: int, minute: int = 0) -> datetime:
    """Instant for a wall-clock time on a business day, returned in UTC"""
    local = datetime.combine(day, time(hour, minute), tzinfo=business_tz())
    return local.astimezone(timezone.utc)


def local_day_bounds(day: date) -> tuple[datetime, datetime]:
    """Start and end (exclusive) of a business day, in UTC"""
    start = datetime.combine(day, time.min, tzinfo=business_tz())
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=business_tz())
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_today(now: Optional[datetime] = None) -> date:
    now = now or utcnow()
    return as_utc(now).astimezone(business_tz()).date()
