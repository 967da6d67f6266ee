"""
Civil-day helpers.

A "day" is a calendar date in the fixed settlement timezone. Boundaries are
found by converting the instant into that zone, never by UTC arithmetic.
"""

from datetime import UTC, date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from .config import get_settings


def utc_now() -> datetime:
    return datetime.now(UTC)


def settlement_zone(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or get_settings().settlement_timezone)


def civil_date(instant: datetime, zone: Optional[ZoneInfo] = None) -> date:
    """Calendar date of ``instant`` in the settlement timezone."""
    if instant.tzinfo is None:
        raise ValueError("civil_date() needs a timezone-aware datetime")
    return instant.astimezone(zone or settlement_zone()).date()


def today(zone: Optional[ZoneInfo] = None, now: Optional[datetime] = None) -> date:
    return civil_date(now or utc_now(), zone)


def yesterday(zone: Optional[ZoneInfo] = None, now: Optional[datetime] = None) -> date:
    return today(zone, now) - timedelta(days=1)


def day_bounds(day: date, zone: Optional[ZoneInfo] = None) -> tuple[datetime, datetime]:
    """UTC [start, end) of the civil day."""
    zone = zone or settlement_zone()
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(UTC), end.astimezone(UTC)


def week_start(day: date) -> date:
    # Sunday-to-Sunday weeks: weekday() is 0 for Monday, 6 for Sunday.
    return day - timedelta(days=(day.weekday() + 1) % 7)


def week_bounds(day: date, zone: Optional[ZoneInfo] = None) -> tuple[datetime, datetime]:
    start_day = week_start(day)
    start, _ = day_bounds(start_day, zone)
    end, _ = day_bounds(start_day + timedelta(days=7), zone)
    return start, end


def month_start(day: date) -> date:
    return day.replace(day=1)
