"""Persistence for calendars, their events and the tag vocabulary.

The sync engine depends only on the :class:`CalendarRepository` and
:class:`EventWriter` protocols; :class:`PostgresCalendarStore` is the asyncpg
implementation used in production.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any, Literal, Protocol

import asyncpg

from hearth.calendar.models import Calendar, CalendarCredentials, KidTag, ProviderEvent
from hearth.db import Database, rows_affected

logger = logging.getLogger(__name__)

UpsertOutcome = Literal["created", "updated"]


class EventWriter(Protocol):
    """Transaction-scoped writes of one calendar reconciliation."""

    async def upsert_event(
        self,
        calendar_id: uuid.UUID,
        event: ProviderEvent,
        *,
        kid_id: uuid.UUID | None,
    ) -> UpsertOutcome:
        """Insert or update by ``(calendar_id, external_id)``."""
        ...

    async def delete_event(self, calendar_id: uuid.UUID, external_id: str) -> int:
        """Delete by natural key; return the number of rows actually removed."""
        ...

    async def list_external_ids(self, calendar_id: uuid.UUID) -> set[str]:
        """Return the external ids currently stored for a calendar."""
        ...

    async def save_sync_state(
        self,
        calendar_id: uuid.UUID,
        *,
        sync_token: str | None,
        synced_at: datetime,
    ) -> None:
        """Persist the next cursor and ``last_sync_at``."""
        ...


class CalendarRepository(Protocol):
    """Calendar lookups and the out-of-transaction writes of a sync."""

    async def get_calendar(self, calendar_id: uuid.UUID) -> Calendar | None: ...

    async def list_active_calendar_ids(self) -> list[uuid.UUID]: ...

    async def load_tags(self, user_id: uuid.UUID) -> list[KidTag]:
        """Tag vocabulary of a user in stable ``(created_at, id)`` order."""
        ...

    async def save_credentials(
        self, calendar_id: uuid.UUID, credentials: CalendarCredentials
    ) -> None: ...

    async def clear_sync_token(self, calendar_id: uuid.UUID) -> None: ...

    def reconcile(self) -> AbstractAsyncContextManager[EventWriter]:
        """Open one transaction; all writes through the writer commit or roll back together."""
        ...


def _json_object(value: Any) -> dict[str, Any]:
    # asyncpg hands JSONB back as text unless a codec is registered.
    if isinstance(value, str):
        value = json.loads(value)
    return value if isinstance(value, dict) else {}


def calendar_from_row(row: Any) -> Calendar:
    return Calendar(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        external_id=row["external_id"],
        credentials=CalendarCredentials.model_validate(_json_object(row["credentials"])),
        ics_url=row["ics_url"],
        is_active=row["is_active"],
        sync_token=row["sync_token"],
        last_sync_at=row["last_sync_at"],
    )


class PostgresEventWriter:
    """:class:`EventWriter` bound to one open asyncpg connection."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def upsert_event(
        self,
        calendar_id: uuid.UUID,
        event: ProviderEvent,
        *,
        kid_id: uuid.UUID | None,
    ) -> UpsertOutcome:
        # xmax is 0 only on a row this statement inserted.
        inserted = await self._conn.fetchval(
            """
            INSERT INTO calendar_events (
                calendar_id, external_id, title, description, location,
                start_time, end_time, all_day, kid_id, raw
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
            ON CONFLICT (calendar_id, external_id) DO UPDATE
            SET title = EXCLUDED.title,
                description = EXCLUDED.description,
                location = EXCLUDED.location,
                start_time = EXCLUDED.start_time,
                end_time = EXCLUDED.end_time,
                all_day = EXCLUDED.all_day,
                kid_id = EXCLUDED.kid_id,
                raw = EXCLUDED.raw,
                updated_at = now()
            RETURNING (xmax = 0)
            """,
            calendar_id,
            event.external_id,
            event.title,
            event.description,
            event.location,
            event.start_at,
            event.end_at,
            event.all_day,
            kid_id,
            json.dumps(event.raw, default=str),
        )
        return "created" if inserted else "updated"

    async def delete_event(self, calendar_id: uuid.UUID, external_id: str) -> int:
        status = await self._conn.execute(
            "DELETE FROM calendar_events WHERE calendar_id = $1 AND external_id = $2",
            calendar_id,
            external_id,
        )
        return rows_affected(status)

    async def list_external_ids(self, calendar_id: uuid.UUID) -> set[str]:
        rows = await self._conn.fetch(
            "SELECT external_id FROM calendar_events WHERE calendar_id = $1",
            calendar_id,
        )
        return {row["external_id"] for row in rows}

    async def save_sync_state(
        self,
        calendar_id: uuid.UUID,
        *,
        sync_token: str | None,
        synced_at: datetime,
    ) -> None:
        await self._conn.execute(
            "UPDATE calendars SET sync_token = $2, last_sync_at = $3 WHERE id = $1",
            calendar_id,
            sync_token,
            synced_at,
        )


class PostgresCalendarStore:
    """asyncpg-backed :class:`CalendarRepository`."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_calendar(self, calendar_id: uuid.UUID) -> Calendar | None:
        row = await self._db.fetchrow(
            """
            SELECT id, user_id, provider, external_id, credentials, ics_url,
                   is_active, sync_token, last_sync_at
            FROM calendars
            WHERE id = $1
            """,
            calendar_id,
        )
        if row is None:
            return None
        return calendar_from_row(row)

    async def list_active_calendar_ids(self) -> list[uuid.UUID]:
        rows = await self._db.fetch(
            "SELECT id FROM calendars WHERE is_active ORDER BY created_at, id"
        )
        return [row["id"] for row in rows]

    async def load_tags(self, user_id: uuid.UUID) -> list[KidTag]:
        rows = await self._db.fetch(
            "SELECT id, name, keywords FROM kids WHERE user_id = $1 ORDER BY created_at, id",
            user_id,
        )
        return [
            KidTag(id=row["id"], name=row["name"], keywords=list(row["keywords"] or []))
            for row in rows
        ]

    async def save_credentials(
        self, calendar_id: uuid.UUID, credentials: CalendarCredentials
    ) -> None:
        # Merge so keys owned by the connect flow survive.
        await self._db.execute(
            """
            UPDATE calendars
            SET credentials = COALESCE(credentials, '{}'::jsonb) || $2::jsonb
            WHERE id = $1
            """,
            calendar_id,
            json.dumps(credentials.model_dump(exclude_none=True)),
        )
        logger.debug("Persisted rotated credentials for calendar %s", calendar_id)

    async def clear_sync_token(self, calendar_id: uuid.UUID) -> None:
        await self._db.execute("UPDATE calendars SET sync_token = NULL WHERE id = $1", calendar_id)

    @asynccontextmanager
    async def reconcile(self) -> AsyncIterator[PostgresEventWriter]:
        async with self._db.transaction() as conn:
            yield PostgresEventWriter(conn)
