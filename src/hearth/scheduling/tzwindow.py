"""Resolve local days and weeks of an IANA timezone into UTC intervals.

Local midnight is found by probing the zone's UTC offset at 12:00 UTC on the
date and applying it to nominal UTC midnight. A DST transition between local
midnight and noon on that date therefore shifts the result by the size of the
transition; callers accept that approximation.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hearth.scheduling.intervals import Interval


class InvalidTimezoneError(ValueError):
    """Raised for timezone ids unknown to the tz database."""


def get_zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezoneError(f"Unknown timezone: {timezone!r}") from exc


def _noon_offset(day: date, zone: ZoneInfo) -> timedelta:
    noon = datetime(day.year, day.month, day.day, 12, tzinfo=UTC).astimezone(zone)
    offset = noon.utcoffset()
    return offset if offset is not None else timedelta(0)


def local_midnight(day: date, timezone: str) -> datetime:
    """UTC instant of 00:00 local time on *day*."""
    zone = get_zone(timezone)
    return datetime(day.year, day.month, day.day, tzinfo=UTC) - _noon_offset(day, zone)


def day_window(day: date, timezone: str) -> Interval:
    start = local_midnight(day, timezone)
    return Interval(start, start + timedelta(hours=24))


def week_window(day: date, timezone: str) -> Interval:
    """Monday-to-Monday week containing *day* (Sunday closes the previous week)."""
    monday = day - timedelta(days=day.weekday())
    start = local_midnight(monday, timezone)
    return Interval(start, start + timedelta(days=7))


def today_in_timezone(timezone: str, now: datetime | None = None) -> date:
    current = now if now is not None else datetime.now(UTC)
    return current.astimezone(get_zone(timezone)).date()


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def local_weekday(day: date) -> int:
    """Day of week numbered 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7
