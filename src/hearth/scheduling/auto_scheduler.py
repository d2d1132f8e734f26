"""Greedy first-fit placement of estimated tasks into free work time.

Tasks are placed one at a time in priority order (URGENT first, then by due
date with undated tasks last). Each task takes the earliest free slot, over
the next ``lookahead_days`` local days, that lies inside the user's work hours
and is long enough for its estimate. Placed tasks are never moved again, and
tasks that fit nowhere are left unscheduled.

There is no lock across runs: two concurrent runs for the same user read the
same busy set and may place tasks into the same slot.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from opentelemetry import trace

from hearth.config import SchedulerConfig
from hearth.scheduling.intervals import BusySet, Interval
from hearth.scheduling.models import Placement, Task, priority_rank
from hearth.scheduling.store import Span, TaskStore
from hearth.scheduling.tzwindow import add_days, local_midnight, local_weekday, today_in_timezone
from hearth.scheduling.workhours import WorkHoursConfig

logger = logging.getLogger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


class SchedulingError(RuntimeError):
    """Base error raised by the scheduler."""


class UserNotFoundError(SchedulingError):
    """Raised when the user to schedule for does not exist."""


def _utc_now() -> datetime:
    return datetime.now(UTC)


def order_tasks(tasks: Sequence[Task]) -> list[Task]:
    """Priority rank ascending, then due date ascending with missing due dates last."""
    return sorted(
        tasks,
        key=lambda task: (
            priority_rank(task.priority),
            task.due_date is None,
            task.due_date or _FAR_FUTURE,
        ),
    )


def _intervals(spans: Sequence[Span], *, pad: timedelta = timedelta(0)) -> list[Interval]:
    intervals = []
    for start, end in spans:
        interval = Interval.maybe(start - pad, end + pad)
        if interval is not None:
            intervals.append(interval)
    return intervals


class AutoScheduler:
    """Places a user's unscheduled tasks around their calendar."""

    def __init__(
        self,
        *,
        store: TaskStore,
        config: SchedulerConfig | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._config = config or SchedulerConfig()
        self._now = now

    @property
    def buffer(self) -> timedelta:
        return timedelta(minutes=self._config.buffer_minutes)

    async def auto_schedule_tasks(self, user_id: uuid.UUID) -> int:
        """Place every unscheduled task that fits; return how many were placed."""
        tracer = trace.get_tracer("hearth")
        with tracer.start_as_current_span("hearth.scheduling.auto_schedule") as span:
            span.set_attribute("user.id", str(user_id))

            user = await self._store.get_user(user_id)
            if user is None:
                raise UserNotFoundError(f"User '{user_id}' not found")
            work_hours = WorkHoursConfig.from_preferences(user.preferences)

            tasks = await self._store.list_unscheduled_tasks(user_id)
            if not tasks:
                return 0

            now = self._now()
            lookahead_days = self._config.lookahead_days
            today = today_in_timezone(user.timezone, now)
            lookahead = Interval(
                local_midnight(today, user.timezone),
                local_midnight(add_days(today, lookahead_days), user.timezone),
            )

            events = await self._store.list_busy_events(user_id, lookahead.start, lookahead.end)
            scheduled = await self._store.list_scheduled_task_spans(
                user_id, lookahead.start, lookahead.end
            )
            busy = BusySet(_intervals(events) + _intervals(scheduled, pad=self.buffer))

            days = [
                (local_weekday(day), local_midnight(day, user.timezone))
                for day in (add_days(today, offset) for offset in range(lookahead_days))
            ]
            earliest = max(lookahead.start, now)

            placements: list[Placement] = []
            for task in order_tasks(tasks):
                placement = self._place(task, days, work_hours, busy, earliest)
                if placement is None:
                    logger.debug(
                        "No free slot for task %s in the next %d days", task.id, lookahead_days
                    )
                    continue
                placements.append(placement)

            await self._store.apply_placements(placements)
            span.set_attribute("scheduling.placed", len(placements))

        logger.info(
            "Auto-scheduled %d/%d tasks for user %s", len(placements), len(tasks), user_id
        )
        return len(placements)

    def _place(
        self,
        task: Task,
        days: Sequence[tuple[int, datetime]],
        work_hours: WorkHoursConfig,
        busy: BusySet,
        earliest: datetime,
    ) -> Placement | None:
        if task.estimated_mins is None or task.estimated_mins <= 0:
            return None
        duration = timedelta(minutes=task.estimated_mins)

        for weekday, midnight in days:
            if not work_hours.is_work_day(weekday):
                continue
            window = work_hours.window(midnight)
            if window is None:
                continue
            clipped = Interval.maybe(max(window.start, earliest), window.end)
            for slot in busy.free_slots(clipped):
                if slot.duration < duration:
                    continue
                start = slot.start
                end = start + duration
                # Keep the buffer free after the task for the next placement.
                busy.add(Interval(start, end + self.buffer))
                return Placement(task_id=task.id, scheduled_start=start, scheduled_end=end)
        return None

    async def clear_scheduled_tasks(self, user_id: uuid.UUID) -> int:
        """Unschedule every open task of the user; return how many were cleared."""
        cleared = await self._store.clear_scheduled_tasks(user_id)
        logger.info("Cleared %d scheduled tasks for user %s", cleared, user_id)
        return cleared

    async def auto_schedule_all_users(self) -> int:
        """Run :meth:`auto_schedule_tasks` for every user; return the total placed.

        A failure for one user is logged and the batch continues.
        """
        total = 0
        for user in await self._store.list_users():
            try:
                total += await self.auto_schedule_tasks(user.id)
            except Exception:
                logger.exception("Auto-scheduling failed for user %s", user.id)
        return total
