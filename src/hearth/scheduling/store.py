"""Task persistence used by the auto-scheduler and overdue deferral."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from hearth.db import Database, rows_affected
from hearth.scheduling.models import (
    OPEN_TASK_STATUSES,
    Placement,
    Task,
    TaskShift,
    UserProfile,
)

logger = logging.getLogger(__name__)

Span = tuple[datetime, datetime]

_OPEN_STATUSES = [str(status) for status in OPEN_TASK_STATUSES]

_TASK_COLUMNS = """
    id, user_id, title, priority, status, due_date,
    scheduled_start, scheduled_end, estimated_mins
"""


class TaskStore(Protocol):
    """Persistence contract for scheduling."""

    async def get_user(self, user_id: uuid.UUID) -> UserProfile | None: ...

    async def list_users(self) -> list[UserProfile]: ...

    async def list_unscheduled_tasks(self, user_id: uuid.UUID) -> list[Task]:
        """Open tasks with ``estimated_mins`` set and no ``scheduled_start``."""
        ...

    async def list_busy_events(
        self, user_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[Span]:
        """Events of the user's active calendars overlapping ``[start, end)``."""
        ...

    async def list_scheduled_task_spans(
        self, user_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[Span]:
        """Open, already-placed tasks overlapping ``[start, end)``."""
        ...

    async def apply_placements(self, placements: Sequence[Placement]) -> None:
        """Write all placements in one transaction."""
        ...

    async def clear_scheduled_tasks(self, user_id: uuid.UUID) -> int: ...

    async def list_overdue_tasks(self, user_id: uuid.UUID, before: datetime) -> list[Task]:
        """Open tasks whose ``scheduled_end`` is before *before*."""
        ...

    async def apply_shifts(self, shifts: Sequence[TaskShift]) -> None:
        """Write all shifts in one transaction."""
        ...


def _preferences(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        value = json.loads(value)
    return value if isinstance(value, dict) else {}


def _user_from_row(row: Any) -> UserProfile:
    return UserProfile(
        id=row["id"],
        timezone=row["timezone"] or "UTC",
        preferences=_preferences(row["preferences"]),
    )


class PostgresTaskStore:
    """asyncpg-backed :class:`TaskStore`."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_user(self, user_id: uuid.UUID) -> UserProfile | None:
        row = await self._db.fetchrow(
            "SELECT id, timezone, preferences FROM users WHERE id = $1", user_id
        )
        return _user_from_row(row) if row is not None else None

    async def list_users(self) -> list[UserProfile]:
        rows = await self._db.fetch(
            "SELECT id, timezone, preferences FROM users ORDER BY created_at, id"
        )
        return [_user_from_row(row) for row in rows]

    async def list_unscheduled_tasks(self, user_id: uuid.UUID) -> list[Task]:
        rows = await self._db.fetch(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            WHERE user_id = $1
              AND status = ANY($2::text[])
              AND estimated_mins IS NOT NULL
              AND scheduled_start IS NULL
            ORDER BY created_at, id
            """,
            user_id,
            _OPEN_STATUSES,
        )
        return [Task.model_validate(dict(row)) for row in rows]

    async def list_busy_events(
        self, user_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[Span]:
        rows = await self._db.fetch(
            """
            SELECT e.start_time, e.end_time
            FROM calendar_events e
            JOIN calendars c ON c.id = e.calendar_id
            WHERE c.user_id = $1
              AND c.is_active
              AND e.start_time < $3
              AND e.end_time > $2
            """,
            user_id,
            start,
            end,
        )
        return [(row["start_time"], row["end_time"]) for row in rows]

    async def list_scheduled_task_spans(
        self, user_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[Span]:
        rows = await self._db.fetch(
            """
            SELECT scheduled_start, scheduled_end
            FROM tasks
            WHERE user_id = $1
              AND status = ANY($2::text[])
              AND scheduled_start IS NOT NULL
              AND scheduled_end IS NOT NULL
              AND scheduled_start < $4
              AND scheduled_end > $3
            """,
            user_id,
            _OPEN_STATUSES,
            start,
            end,
        )
        return [(row["scheduled_start"], row["scheduled_end"]) for row in rows]

    async def apply_placements(self, placements: Sequence[Placement]) -> None:
        if not placements:
            return
        async with self._db.transaction() as conn:
            await conn.executemany(
                """
                UPDATE tasks
                SET scheduled_start = $2, scheduled_end = $3, updated_at = now()
                WHERE id = $1
                """,
                [(p.task_id, p.scheduled_start, p.scheduled_end) for p in placements],
            )
        logger.debug("Applied %d task placements", len(placements))

    async def clear_scheduled_tasks(self, user_id: uuid.UUID) -> int:
        status = await self._db.execute(
            """
            UPDATE tasks
            SET scheduled_start = NULL, scheduled_end = NULL, updated_at = now()
            WHERE user_id = $1
              AND status = ANY($2::text[])
              AND scheduled_start IS NOT NULL
            """,
            user_id,
            _OPEN_STATUSES,
        )
        return rows_affected(status)

    async def list_overdue_tasks(self, user_id: uuid.UUID, before: datetime) -> list[Task]:
        rows = await self._db.fetch(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            WHERE user_id = $1
              AND status = ANY($2::text[])
              AND scheduled_end < $3
            ORDER BY scheduled_end, id
            """,
            user_id,
            _OPEN_STATUSES,
            before,
        )
        return [Task.model_validate(dict(row)) for row in rows]

    async def apply_shifts(self, shifts: Sequence[TaskShift]) -> None:
        if not shifts:
            return
        async with self._db.transaction() as conn:
            await conn.executemany(
                """
                UPDATE tasks
                SET scheduled_start = $2, scheduled_end = $3, due_date = $4,
                    updated_at = now()
                WHERE id = $1
                """,
                [(s.task_id, s.scheduled_start, s.scheduled_end, s.due_date) for s in shifts],
            )
        logger.debug("Applied %d task shifts", len(shifts))
