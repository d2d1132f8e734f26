"""Roll overdue scheduled tasks forward by one day."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from hearth.scheduling.models import Task, TaskShift
from hearth.scheduling.store import TaskStore
from hearth.scheduling.tzwindow import local_midnight, today_in_timezone

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def shift_task(task: Task) -> TaskShift:
    """Move the schedule one day later.

    The due date moves with it when it falls on the same UTC date as the old
    ``scheduled_start``.
    """
    due_date = task.due_date
    if (
        due_date is not None
        and task.scheduled_start is not None
        and due_date.astimezone(UTC).date() == task.scheduled_start.astimezone(UTC).date()
    ):
        due_date = due_date + ONE_DAY
    return TaskShift(
        task_id=task.id,
        scheduled_start=task.scheduled_start + ONE_DAY if task.scheduled_start else None,
        scheduled_end=task.scheduled_end + ONE_DAY if task.scheduled_end else None,
        due_date=due_date,
    )


async def defer_overdue_tasks(
    store: TaskStore,
    *,
    now: Callable[[], datetime] | None = None,
) -> int:
    """Shift open tasks that ended before the start of each user's today.

    One transaction per user. Returns the number of tasks shifted.
    """
    current = now() if now is not None else datetime.now(UTC)
    total = 0
    for user in await store.list_users():
        start_of_today = local_midnight(today_in_timezone(user.timezone, current), user.timezone)
        overdue = await store.list_overdue_tasks(user.id, start_of_today)
        if not overdue:
            continue
        await store.apply_shifts([shift_task(task) for task in overdue])
        logger.info("Deferred %d overdue tasks for user %s", len(overdue), user.id)
        total += len(overdue)
    return total
