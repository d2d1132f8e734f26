"""Work-hour preferences stored on ``users.preferences``."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from hearth.scheduling.intervals import Interval

logger = logging.getLogger(__name__)

DEFAULT_WORK_HOURS_START = "09:00"
DEFAULT_WORK_HOURS_END = "17:00"
DEFAULT_WORK_DAYS = frozenset({1, 2, 3, 4, 5})

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
# The settings page stores short day names; the API stores 0=Sun..6=Sat.
_DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}


def parse_hhmm(value: str) -> int:
    """Minutes after midnight for ``"HH:MM"`` (``"24:00"`` allowed)."""
    match = _HHMM_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if minutes >= 60 or hours * 60 + minutes > 24 * 60:
        raise ValueError(f"Time of day out of range: {value!r}")
    return hours * 60 + minutes


def _parse_work_days(value: Any) -> frozenset[int]:
    days: set[int] = set()
    for item in value:
        if isinstance(item, bool):
            raise ValueError(f"Invalid work day: {item!r}")
        if isinstance(item, int) and 0 <= item <= 6:
            days.add(item)
        elif isinstance(item, str) and item.strip().lower()[:3] in _DAY_NAMES:
            days.add(_DAY_NAMES[item.strip().lower()[:3]])
        else:
            raise ValueError(f"Invalid work day: {item!r}")
    return frozenset(days)


@dataclass(frozen=True)
class WorkHoursConfig:
    """Daily work window as minute offsets from local midnight."""

    start_minute: int = 9 * 60
    end_minute: int = 17 * 60
    work_days: frozenset[int] = field(default=DEFAULT_WORK_DAYS)

    @classmethod
    def from_preferences(cls, preferences: Mapping[str, Any] | None) -> WorkHoursConfig:
        """Read ``workHoursStart``/``workHoursEnd``/``workDays``.

        Missing keys take the defaults (09:00 to 17:00, Monday to Friday). A
        malformed value is logged and replaced by its default.
        """
        prefs = preferences or {}

        start = cls._minute_pref(prefs, "workHoursStart", DEFAULT_WORK_HOURS_START)
        end = cls._minute_pref(prefs, "workHoursEnd", DEFAULT_WORK_HOURS_END)

        work_days = DEFAULT_WORK_DAYS
        raw_days = prefs.get("workDays")
        if isinstance(raw_days, list):
            try:
                work_days = _parse_work_days(raw_days)
            except ValueError as exc:
                logger.warning("Ignoring invalid workDays preference: %s", exc)
        elif raw_days is not None:
            logger.warning("Ignoring non-list workDays preference: %r", raw_days)

        return cls(start_minute=start, end_minute=end, work_days=work_days)

    @staticmethod
    def _minute_pref(prefs: Mapping[str, Any], key: str, default: str) -> int:
        value = prefs.get(key)
        if isinstance(value, str):
            try:
                return parse_hhmm(value)
            except ValueError as exc:
                logger.warning("Ignoring invalid %s preference: %s", key, exc)
        elif value is not None:
            logger.warning("Ignoring non-string %s preference: %r", key, value)
        return parse_hhmm(default)

    def is_work_day(self, weekday: int) -> bool:
        """*weekday* is numbered 0=Sunday .. 6=Saturday."""
        return weekday in self.work_days

    def window(self, midnight: datetime) -> Interval | None:
        """Work window of the day starting at *midnight*; ``None`` if empty."""
        return Interval.maybe(
            midnight + timedelta(minutes=self.start_minute),
            midnight + timedelta(minutes=self.end_minute),
        )
