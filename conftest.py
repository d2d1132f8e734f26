"""Root conftest: shared store doubles and PostgreSQL fixtures for all test trees.

The in-memory stores implement the same protocols as the asyncpg stores so the
sync engine and scheduler can be tested without a database. ``reconcile()``
snapshots state and restores it when the block raises, like a rolled-back
transaction.
"""

from __future__ import annotations

import copy
import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import pytest

from hearth.calendar.models import (
    Calendar,
    CalendarCredentials,
    KidTag,
    ProviderEvent,
    ProviderKind,
)
from hearth.scheduling.models import (
    OPEN_TASK_STATUSES,
    Placement,
    Task,
    TaskShift,
    UserProfile,
)

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from hearth.db import Database

docker_available = shutil.which("docker") is not None


# ---------------------------------------------------------------------------
# Calendar store double
# ---------------------------------------------------------------------------


@dataclass
class StoredEvent:
    calendar_id: uuid.UUID
    external_id: str
    title: str
    description: str | None
    location: str | None
    start_at: datetime | None
    end_at: datetime | None
    all_day: bool
    kid_id: uuid.UUID | None
    raw: dict[str, Any]


class InMemoryEventWriter:
    def __init__(self, store: InMemoryCalendarStore) -> None:
        self._store = store

    async def upsert_event(
        self,
        calendar_id: uuid.UUID,
        event: ProviderEvent,
        *,
        kid_id: uuid.UUID | None,
    ) -> str:
        if event.external_id in self._store.fail_on_upsert:
            raise RuntimeError(f"simulated write failure for {event.external_id}")
        key = (calendar_id, event.external_id)
        existed = key in self._store.events
        self._store.events[key] = StoredEvent(
            calendar_id=calendar_id,
            external_id=event.external_id,
            title=event.title,
            description=event.description,
            location=event.location,
            start_at=event.start_at,
            end_at=event.end_at,
            all_day=event.all_day,
            kid_id=kid_id,
            raw=dict(event.raw),
        )
        return "updated" if existed else "created"

    async def delete_event(self, calendar_id: uuid.UUID, external_id: str) -> int:
        return 1 if self._store.events.pop((calendar_id, external_id), None) else 0

    async def list_external_ids(self, calendar_id: uuid.UUID) -> set[str]:
        return {ext for (cal, ext) in self._store.events if cal == calendar_id}

    async def save_sync_state(
        self,
        calendar_id: uuid.UUID,
        *,
        sync_token: str | None,
        synced_at: datetime,
    ) -> None:
        calendar = self._store.calendars[calendar_id]
        self._store.calendars[calendar_id] = calendar.model_copy(
            update={"sync_token": sync_token, "last_sync_at": synced_at}
        )


class InMemoryCalendarStore:
    def __init__(self) -> None:
        self.calendars: dict[uuid.UUID, Calendar] = {}
        self.tags: dict[uuid.UUID, list[KidTag]] = {}
        self.events: dict[tuple[uuid.UUID, str], StoredEvent] = {}
        self.saved_credentials: list[tuple[uuid.UUID, CalendarCredentials]] = []
        self.cleared_tokens: list[uuid.UUID] = []
        self.fail_on_upsert: set[str] = set()

    def add_calendar(
        self,
        *,
        provider: ProviderKind = ProviderKind.GOOGLE,
        user_id: uuid.UUID | None = None,
        **fields: Any,
    ) -> Calendar:
        calendar = Calendar(
            id=fields.pop("id", uuid.uuid4()),
            user_id=user_id or uuid.uuid4(),
            provider=provider,
            **fields,
        )
        self.calendars[calendar.id] = calendar
        return calendar

    def add_tag(self, user_id: uuid.UUID, name: str, keywords: list[str]) -> KidTag:
        tag = KidTag(id=uuid.uuid4(), name=name, keywords=keywords)
        self.tags.setdefault(user_id, []).append(tag)
        return tag

    def events_for(self, calendar_id: uuid.UUID) -> dict[str, StoredEvent]:
        return {ext: ev for (cal, ext), ev in self.events.items() if cal == calendar_id}

    async def get_calendar(self, calendar_id: uuid.UUID) -> Calendar | None:
        return self.calendars.get(calendar_id)

    async def list_active_calendar_ids(self) -> list[uuid.UUID]:
        return [c.id for c in self.calendars.values() if c.is_active]

    async def load_tags(self, user_id: uuid.UUID) -> list[KidTag]:
        return list(self.tags.get(user_id, []))

    async def save_credentials(
        self, calendar_id: uuid.UUID, credentials: CalendarCredentials
    ) -> None:
        self.saved_credentials.append((calendar_id, credentials))
        calendar = self.calendars[calendar_id]
        self.calendars[calendar_id] = calendar.model_copy(update={"credentials": credentials})

    async def clear_sync_token(self, calendar_id: uuid.UUID) -> None:
        self.cleared_tokens.append(calendar_id)
        calendar = self.calendars[calendar_id]
        self.calendars[calendar_id] = calendar.model_copy(update={"sync_token": None})

    @asynccontextmanager
    async def reconcile(self) -> AsyncIterator[InMemoryEventWriter]:
        events_before = copy.deepcopy(self.events)
        calendars_before = dict(self.calendars)
        try:
            yield InMemoryEventWriter(self)
        except BaseException:
            self.events = events_before
            self.calendars = calendars_before
            raise


@pytest.fixture
def calendar_store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


# ---------------------------------------------------------------------------
# Task store double
# ---------------------------------------------------------------------------


def _overlaps(start: datetime, end: datetime, lo: datetime, hi: datetime) -> bool:
    return start < hi and end > lo


class InMemoryTaskStore:
    def __init__(self) -> None:
        self.users: dict[uuid.UUID, UserProfile] = {}
        self.tasks: dict[uuid.UUID, Task] = {}
        self.events: list[tuple[uuid.UUID, datetime, datetime]] = []
        self.placement_batches: list[list[Placement]] = []

    def add_user(
        self, *, timezone: str = "UTC", preferences: dict[str, Any] | None = None
    ) -> UserProfile:
        user = UserProfile(id=uuid.uuid4(), timezone=timezone, preferences=preferences or {})
        self.users[user.id] = user
        return user

    def add_task(self, user_id: uuid.UUID, **fields: Any) -> Task:
        task = Task(id=uuid.uuid4(), user_id=user_id, **fields)
        self.tasks[task.id] = task
        return task

    def add_event(self, user_id: uuid.UUID, start: datetime, end: datetime) -> None:
        self.events.append((user_id, start, end))

    def _open(self, user_id: uuid.UUID) -> list[Task]:
        return [
            t
            for t in self.tasks.values()
            if t.user_id == user_id and t.status in OPEN_TASK_STATUSES
        ]

    async def get_user(self, user_id: uuid.UUID) -> UserProfile | None:
        return self.users.get(user_id)

    async def list_users(self) -> list[UserProfile]:
        return list(self.users.values())

    async def list_unscheduled_tasks(self, user_id: uuid.UUID) -> list[Task]:
        return [
            t
            for t in self._open(user_id)
            if t.estimated_mins is not None and t.scheduled_start is None
        ]

    async def list_busy_events(
        self, user_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[tuple[datetime, datetime]]:
        return [
            (s, e) for (uid, s, e) in self.events if uid == user_id and _overlaps(s, e, start, end)
        ]

    async def list_scheduled_task_spans(
        self, user_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[tuple[datetime, datetime]]:
        return [
            (t.scheduled_start, t.scheduled_end)
            for t in self._open(user_id)
            if t.scheduled_start is not None
            and t.scheduled_end is not None
            and _overlaps(t.scheduled_start, t.scheduled_end, start, end)
        ]

    async def apply_placements(self, placements: Sequence[Placement]) -> None:
        missing = [p.task_id for p in placements if p.task_id not in self.tasks]
        if missing:
            raise LookupError(f"unknown tasks: {missing}")
        self.placement_batches.append(list(placements))
        for p in placements:
            self.tasks[p.task_id] = self.tasks[p.task_id].model_copy(
                update={"scheduled_start": p.scheduled_start, "scheduled_end": p.scheduled_end}
            )

    async def clear_scheduled_tasks(self, user_id: uuid.UUID) -> int:
        cleared = 0
        for task in self._open(user_id):
            if task.scheduled_start is None:
                continue
            self.tasks[task.id] = task.model_copy(
                update={"scheduled_start": None, "scheduled_end": None}
            )
            cleared += 1
        return cleared

    async def list_overdue_tasks(self, user_id: uuid.UUID, before: datetime) -> list[Task]:
        return [
            t
            for t in self._open(user_id)
            if t.scheduled_end is not None and t.scheduled_end < before
        ]

    async def apply_shifts(self, shifts: Sequence[TaskShift]) -> None:
        for s in shifts:
            self.tasks[s.task_id] = self.tasks[s.task_id].model_copy(
                update={
                    "scheduled_start": s.scheduled_start,
                    "scheduled_end": s.scheduled_end,
                    "due_date": s.due_date,
                }
            )


@pytest.fixture
def task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


# ---------------------------------------------------------------------------
# PostgreSQL (testcontainers)
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``migrated_database()`` call provisions a new database with a random
    name, so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def migrated_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh, migrated database and connect a pool to it.

    Tests should use this as:
        async with migrated_database() as db:
            ...
    """
    from hearth.db import Database
    from hearth.migrations import run_migrations

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Database]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=1,
            max_pool_size=3,
        )
        await db.provision()
        await run_migrations(db.url)
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
