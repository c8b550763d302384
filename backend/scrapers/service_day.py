"""
Transit clock helpers.

The operator's service day runs past midnight: trains leaving at 1 AM belong
to the previous calendar day's schedule. All helpers take an explicit `now`
so callers and tests control the clock.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from api.config import settings

TRANSIT_TZ = ZoneInfo(settings.transit_timezone)


def transit_now(now: Optional[datetime] = None) -> datetime:
    """Current time in the transit timezone."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(TRANSIT_TZ)


def transit_hour(now: Optional[datetime] = None) -> int:
    return transit_now(now).hour


def transit_minute_of_day(now: Optional[datetime] = None) -> int:
    local = transit_now(now)
    return local.hour * 60 + local.minute


def service_date(now: Optional[datetime] = None) -> date:
    """Calendar date of the service day in progress at `now`."""
    local = transit_now(now)
    if local.hour < settings.service_day_rollover_hour:
        return local.date() - timedelta(days=1)
    return local.date()


def service_day_start(day: date) -> datetime:
    """
    Absolute start of a service day (4:00 AM local on `day`).

    zoneinfo resolves CST vs CDT for that specific date.
    """
    local = datetime.combine(day, time(hour=settings.service_day_rollover_hour), tzinfo=TRANSIT_TZ)
    return local.astimezone(timezone.utc)


def current_service_day_start(now: Optional[datetime] = None) -> datetime:
    return service_day_start(service_date(now))


def next_service_day_start(now: Optional[datetime] = None) -> datetime:
    """
    4:00 AM local on tomorrow's calendar date.

    The seed runs at 03:55 and must capture the whole upcoming day, so this
    is never today's start even when that is only minutes away.
    """
    return service_day_start(transit_now(now).date() + timedelta(days=1))


def is_active_hours(now: Optional[datetime] = None) -> bool:
    """Commute hours, 4 AM to 6 PM local."""
    hour = transit_hour(now)
    return settings.active_hours_start <= hour < settings.active_hours_end


def crowding_cache_ttl(now: Optional[datetime] = None) -> int:
    """Freshness window in minutes: short during commute hours, wide off-hours."""
    if is_active_hours(now):
        return settings.cache_ttl_active_minutes
    return settings.cache_ttl_off_minutes
