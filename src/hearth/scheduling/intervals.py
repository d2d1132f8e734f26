"""Half-open time interval algebra used by the auto-scheduler."""

from __future__ import annotations

import bisect
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True, order=True)
class Interval:
    """``[start, end)`` with ``start < end``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(f"Interval must have start < end, got [{self.start}, {self.end})")

    @classmethod
    def maybe(cls, start: datetime, end: datetime) -> Interval | None:
        """Build an interval, or ``None`` for an empty or inverted range."""
        if start >= end:
            return None
        return cls(start, end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and other.start < self.end


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and coalesce overlapping or touching intervals."""
    merged: list[Interval] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = Interval(last.start, interval.end)
            continue
        merged.append(interval)
    return merged


def free_slots(window: Interval | None, merged_busy: Iterable[Interval]) -> list[Interval]:
    """Gaps of *window* not covered by *merged_busy*.

    *merged_busy* must already be sorted and disjoint, as returned by
    :func:`merge_intervals`. A ``None`` window has no free time.
    """
    if window is None:
        return []

    slots: list[Interval] = []
    cursor = window.start
    for busy in merged_busy:
        if busy.end <= window.start:
            continue
        if busy.start >= window.end:
            break
        if cursor < busy.start:
            slots.append(Interval(cursor, busy.start))
        cursor = max(cursor, busy.end)
        if cursor >= window.end:
            break
    if cursor < window.end:
        slots.append(Interval(cursor, window.end))
    return slots


class BusySet:
    """Sorted, merged busy intervals that grow as tasks are placed.

    Owned by a single scheduling run.
    """

    def __init__(self, intervals: Iterable[Interval] = ()) -> None:
        self._intervals = merge_intervals(intervals)

    def __iter__(self) -> Iterator[Interval]:
        return iter(self._intervals)

    def __len__(self) -> int:
        return len(self._intervals)

    def add(self, interval: Interval) -> None:
        bisect.insort(self._intervals, interval)
        self._intervals = merge_intervals(self._intervals)

    def free_slots(self, window: Interval | None) -> list[Interval]:
        return free_slots(window, self._intervals)
