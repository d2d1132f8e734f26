"""PostgreSQL-backed store tests (testcontainers).

Each test provisions a fresh database from the core migration chain.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any

import pytest

from conftest import docker_available
from hearth.calendar.models import CalendarCredentials, FetchResult, ProviderEvent, ProviderKind
from hearth.calendar.store import PostgresCalendarStore
from hearth.calendar.sync import CalendarSyncEngine
from hearth.config import SchedulerConfig
from hearth.scheduling.auto_scheduler import AutoScheduler
from hearth.scheduling.defer import defer_overdue_tasks
from hearth.scheduling.models import Placement, TaskShift
from hearth.scheduling.store import PostgresTaskStore

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]

MONDAY_8AM = datetime(2026, 3, 2, 8, tzinfo=UTC)


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=UTC)


async def _insert_user(db, *, timezone: str = "UTC", preferences: dict | None = None):
    return await db.fetchval(
        "INSERT INTO users (name, timezone, preferences) VALUES ($1, $2, $3::jsonb) RETURNING id",
        "Parent",
        timezone,
        json.dumps(preferences or {}),
    )


async def _insert_calendar(db, user_id, *, is_active: bool = True, **fields: Any):
    credentials = fields.pop("credentials", {"access_token": "at-1", "refresh_token": "rt-1"})
    return await db.fetchval(
        """
        INSERT INTO calendars (user_id, provider, credentials, is_active, sync_token)
        VALUES ($1, $2, $3::jsonb, $4, $5)
        RETURNING id
        """,
        user_id,
        str(fields.pop("provider", ProviderKind.GOOGLE)),
        json.dumps(credentials),
        is_active,
        fields.pop("sync_token", None),
    )


async def _insert_task(db, user_id, **fields: Any):
    return await db.fetchval(
        """
        INSERT INTO tasks (
            user_id, title, priority, status, due_date,
            scheduled_start, scheduled_end, estimated_mins
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        RETURNING id
        """,
        user_id,
        fields.get("title", "Task"),
        fields.get("priority", "MEDIUM"),
        fields.get("status", "TODO"),
        fields.get("due_date"),
        fields.get("scheduled_start"),
        fields.get("scheduled_end"),
        fields.get("estimated_mins"),
    )


def _event(external_id: str, title: str = "Event", hour: int = 9) -> ProviderEvent:
    return ProviderEvent(
        external_id=external_id,
        title=title,
        start_at=_at(3, hour),
        end_at=_at(3, hour + 1),
        raw={"id": external_id},
    )


class _FixedProvider:
    supports_cursor = True

    def __init__(self, result: FetchResult) -> None:
        self._result = result

    async def fetch(self, cursor, *, on_credentials_rotated):
        await on_credentials_rotated(
            CalendarCredentials(access_token="at-2", refresh_token="rt-2")
        )
        return self._result


class TestCalendarStore:
    async def test_reconcile_upserts_and_deletes(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresCalendarStore(db)
            user_id = await _insert_user(db)
            calendar_id = await _insert_calendar(db, user_id)

            async with store.reconcile() as writer:
                assert await writer.upsert_event(calendar_id, _event("a"), kid_id=None) == (
                    "created"
                )
                assert await writer.upsert_event(calendar_id, _event("b"), kid_id=None) == (
                    "created"
                )
            async with store.reconcile() as writer:
                renamed = _event("a", "Renamed")
                assert await writer.upsert_event(calendar_id, renamed, kid_id=None) == "updated"
                assert await writer.delete_event(calendar_id, "b") == 1
                assert await writer.delete_event(calendar_id, "b") == 0
                assert await writer.list_external_ids(calendar_id) == {"a"}
                await writer.save_sync_state(calendar_id, sync_token="tok", synced_at=MONDAY_8AM)

            row = await db.fetchrow(
                "SELECT title, raw FROM calendar_events WHERE calendar_id = $1", calendar_id
            )
            assert row["title"] == "Renamed"
            assert json.loads(row["raw"]) == {"id": "a"}
            calendar = await store.get_calendar(calendar_id)
            assert calendar is not None
            assert calendar.sync_token == "tok"
            assert calendar.last_sync_at == MONDAY_8AM

    async def test_failed_reconcile_rolls_back(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresCalendarStore(db)
            user_id = await _insert_user(db)
            calendar_id = await _insert_calendar(db, user_id)

            with pytest.raises(RuntimeError):
                async with store.reconcile() as writer:
                    await writer.upsert_event(calendar_id, _event("a"), kid_id=None)
                    raise RuntimeError("abort")

            count = await db.fetchval("SELECT count(*) FROM calendar_events")
            assert count == 0

    async def test_save_credentials_merges_into_existing_payload(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresCalendarStore(db)
            user_id = await _insert_user(db)
            calendar_id = await _insert_calendar(
                db,
                user_id,
                credentials={"access_token": "at-1", "refresh_token": "rt-1", "scope": "cal"},
            )

            await store.save_credentials(calendar_id, CalendarCredentials(access_token="at-2"))

            raw = await db.fetchval("SELECT credentials FROM calendars WHERE id = $1", calendar_id)
            assert json.loads(raw) == {
                "access_token": "at-2",
                "refresh_token": "rt-1",
                "scope": "cal",
            }

    async def test_tags_active_calendars_and_cursor_clearing(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresCalendarStore(db)
            user_id = await _insert_user(db)
            first = await db.fetchval(
                "INSERT INTO kids (user_id, name, keywords) VALUES ($1, 'Sam', $2) RETURNING id",
                user_id,
                ["soccer"],
            )
            await db.execute(
                "INSERT INTO kids (user_id, name, keywords, created_at)"
                " VALUES ($1, 'Alex', $2, now() + interval '1 minute')",
                user_id,
                ["piano", "swim"],
            )
            active = await _insert_calendar(db, user_id, sync_token="tok")
            await _insert_calendar(db, user_id, is_active=False)

            tags = await store.load_tags(user_id)
            assert [(t.id == first, t.keywords) for t in tags] == [
                (True, ["soccer"]),
                (False, ["piano", "swim"]),
            ]
            assert await store.list_active_calendar_ids() == [active]

            await store.clear_sync_token(active)
            calendar = await store.get_calendar(active)
            assert calendar is not None and calendar.sync_token is None
            assert await store.get_calendar(uuid.uuid4()) is None

    async def test_sync_engine_end_to_end(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresCalendarStore(db)
            user_id = await _insert_user(db)
            kid_id = await db.fetchval(
                "INSERT INTO kids (user_id, name, keywords) VALUES ($1, 'Sam', $2) RETURNING id",
                user_id,
                ["soccer"],
            )
            calendar_id = await _insert_calendar(db, user_id)
            result = FetchResult(
                events=[_event("a", "Soccer practice"), _event("b", "Dentist", hour=11)],
                next_cursor="tok-1",
            )
            engine = CalendarSyncEngine(
                store=store,
                http_client=None,
                now=lambda: MONDAY_8AM,
                provider_factory=lambda calendar, **kwargs: _FixedProvider(result),
            )

            first = await engine.sync_calendar(calendar_id)
            second = await engine.sync_calendar(calendar_id)

            assert (first.created, first.updated) == (2, 0)
            assert (second.created, second.updated) == (0, 2)
            tagged = await db.fetchval(
                "SELECT kid_id FROM calendar_events WHERE external_id = 'a'"
            )
            assert tagged == kid_id
            calendar = await store.get_calendar(calendar_id)
            assert calendar is not None
            assert calendar.sync_token == "tok-1"
            assert calendar.credentials.access_token == "at-2"


class TestTaskStore:
    async def test_unscheduled_tasks_and_placements(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresTaskStore(db)
            user_id = await _insert_user(db, timezone="Europe/Berlin")
            open_id = await _insert_task(db, user_id, estimated_mins=30, priority="HIGH")
            await _insert_task(db, user_id, estimated_mins=None)
            await _insert_task(db, user_id, estimated_mins=30, status="DONE")

            user = await store.get_user(user_id)
            assert user is not None and user.timezone == "Europe/Berlin"
            tasks = await store.list_unscheduled_tasks(user_id)
            assert [t.id for t in tasks] == [open_id]
            assert tasks[0].priority == "HIGH"

            await store.apply_placements(
                [Placement(task_id=open_id, scheduled_start=_at(2, 9), scheduled_end=_at(2, 10))]
            )
            spans = await store.list_scheduled_task_spans(user_id, _at(2, 0), _at(3, 0))
            assert spans == [(_at(2, 9), _at(2, 10))]
            assert await store.list_unscheduled_tasks(user_id) == []

            assert await store.clear_scheduled_tasks(user_id) == 1
            assert await store.list_scheduled_task_spans(user_id, _at(2, 0), _at(3, 0)) == []

    async def test_busy_events_ignore_inactive_calendars(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresTaskStore(db)
            calendars = PostgresCalendarStore(db)
            user_id = await _insert_user(db)
            active = await _insert_calendar(db, user_id)
            inactive = await _insert_calendar(db, user_id, is_active=False)
            async with calendars.reconcile() as writer:
                await writer.upsert_event(active, _event("a", hour=9), kid_id=None)
                await writer.upsert_event(inactive, _event("b", hour=11), kid_id=None)

            busy = await store.list_busy_events(user_id, _at(3, 0), _at(4, 0))
            assert busy == [(_at(3, 9), _at(3, 10))]
            assert await store.list_busy_events(user_id, _at(3, 10), _at(3, 11)) == []

    async def test_overdue_tasks_and_shifts(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresTaskStore(db)
            user_id = await _insert_user(db)
            overdue = await _insert_task(
                db,
                user_id,
                scheduled_start=_at(1, 9),
                scheduled_end=_at(1, 10),
                due_date=_at(1, 18),
            )
            await _insert_task(
                db, user_id, status="DONE", scheduled_start=_at(1, 9), scheduled_end=_at(1, 10)
            )

            tasks = await store.list_overdue_tasks(user_id, _at(2, 0))
            assert [t.id for t in tasks] == [overdue]

            await store.apply_shifts(
                [
                    TaskShift(
                        task_id=overdue,
                        scheduled_start=_at(2, 9),
                        scheduled_end=_at(2, 10),
                        due_date=_at(2, 18),
                    )
                ]
            )
            row = await db.fetchrow(
                "SELECT scheduled_start, due_date FROM tasks WHERE id = $1", overdue
            )
            assert row["scheduled_start"] == _at(2, 9)
            assert row["due_date"] == _at(2, 18)

    async def test_scheduler_and_deferral_end_to_end(self, migrated_database):
        async with migrated_database() as db:
            store = PostgresTaskStore(db)
            calendars = PostgresCalendarStore(db)
            user_id = await _insert_user(db)
            calendar_id = await _insert_calendar(db, user_id)
            async with calendars.reconcile() as writer:
                morning = ProviderEvent(
                    external_id="standup", start_at=_at(2, 9), end_at=_at(2, 10)
                )
                await writer.upsert_event(calendar_id, morning, kid_id=None)
            urgent = await _insert_task(db, user_id, estimated_mins=60, priority="URGENT")
            low = await _insert_task(db, user_id, estimated_mins=60, priority="LOW")

            scheduler = AutoScheduler(
                store=store, config=SchedulerConfig(), now=lambda: MONDAY_8AM
            )
            assert await scheduler.auto_schedule_tasks(user_id) == 2

            starts = {
                row["id"]: row["scheduled_start"]
                for row in await db.fetch("SELECT id, scheduled_start FROM tasks")
            }
            assert starts[urgent] == _at(2, 10)
            assert starts[low] == _at(2, 11, 10)

            tuesday = datetime(2026, 3, 3, 0, 15, tzinfo=UTC)
            assert await defer_overdue_tasks(store, now=lambda: tuesday) == 2
            shifted = await db.fetchval("SELECT scheduled_start FROM tasks WHERE id = $1", urgent)
            assert shifted == _at(3, 10)
