"""Calendar sync orchestration.

One ``sync_calendar`` call loads a calendar, asks its provider adapter for
changes since the stored cursor and reconciles them into ``calendar_events``:

1. Load the calendar and the owner's tag vocabulary.
2. Fetch from the adapter. An invalid cursor is cleared and the fetch is
   retried exactly once as a full sync.
3. Apply delete directives and upserts, auto-tagging every upsert.
4. For full-snapshot feeds, delete stored events missing from the snapshot.
5. Persist the next cursor and ``last_sync_at``. A delta fetch that returns no
   new cursor keeps the one it started from; after a full-sync retry only the
   retry's cursor is stored.

Steps 3 to 5 share one transaction. Rotated credentials and a cleared cursor
are written immediately, outside it, so they survive a failed reconciliation.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

import httpx
from opentelemetry import trace

from hearth.calendar.errors import (
    CalendarNotFoundError,
    CalendarSyncError,
    CursorInvalidError,
    TransientProviderError,
    safe_error_message,
)
from hearth.calendar.models import (
    Calendar,
    CalendarCredentials,
    FetchResult,
    KidTag,
    SyncResult,
)
from hearth.calendar.providers import build_provider
from hearth.calendar.providers.base import CalendarProvider, utc_now
from hearth.calendar.store import CalendarRepository
from hearth.calendar.tagging import auto_tag
from hearth.config import HearthConfig
from hearth.core.logging import calendar_context

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., CalendarProvider]


class CalendarSyncEngine:
    """Reconciles external calendars into the local event store."""

    def __init__(
        self,
        *,
        store: CalendarRepository,
        http_client: httpx.AsyncClient,
        config: HearthConfig | None = None,
        now: Callable[[], datetime] = utc_now,
        provider_factory: ProviderFactory = build_provider,
    ) -> None:
        self._store = store
        self._http_client = http_client
        self._config = config or HearthConfig()
        self._now = now
        self._provider_factory = provider_factory

    def _provider_for(self, calendar: Calendar) -> CalendarProvider:
        return self._provider_factory(
            calendar,
            http_client=self._http_client,
            config=self._config,
            now=self._now,
        )

    async def sync_calendar(self, calendar_id: uuid.UUID) -> SyncResult:
        """Sync one calendar and return created/updated/deleted counts.

        Raises:
            CalendarNotFoundError: no calendar with this id.
            AuthError: credentials missing or rejected.
            TransientProviderError: provider failure, including a second
                cursor invalidation during the full-sync retry.
        """
        tracer = trace.get_tracer("hearth")
        span_name = "hearth.calendar.sync"
        with calendar_context(calendar_id), tracer.start_as_current_span(span_name) as span:
            span.set_attribute("calendar.id", str(calendar_id))

            calendar = await self._store.get_calendar(calendar_id)
            if calendar is None:
                raise CalendarNotFoundError(f"Calendar '{calendar_id}' not found")
            span.set_attribute("calendar.provider", str(calendar.provider))

            tags = await self._store.load_tags(calendar.user_id)
            fetched, used_cursor = await self._fetch(calendar)
            # A delta response without a new cursor leaves the current one valid.
            next_cursor = fetched.next_cursor or used_cursor

            result = await self._reconcile(calendar, tags, fetched, next_cursor)
            span.set_attribute("calendar.sync.created", result.created)
            span.set_attribute("calendar.sync.updated", result.updated)
            span.set_attribute("calendar.sync.deleted", result.deleted)

            logger.info(
                "Synced calendar %s (%s): created=%d updated=%d deleted=%d",
                calendar.id,
                calendar.provider,
                result.created,
                result.updated,
                result.deleted,
            )
        return result

    async def _fetch(self, calendar: Calendar) -> tuple[FetchResult, str | None]:
        """Fetch changes; also return the cursor the successful fetch started from."""
        latest_credentials = calendar.credentials

        async def _persist_rotation(credentials: CalendarCredentials) -> None:
            nonlocal latest_credentials
            latest_credentials = credentials
            await self._store.save_credentials(calendar.id, credentials)

        provider = self._provider_for(calendar)
        cursor = calendar.sync_token if provider.supports_cursor else None
        try:
            fetched = await provider.fetch(cursor, on_credentials_rotated=_persist_rotation)
            return fetched, cursor
        except CursorInvalidError:
            if cursor is None:
                raise
            logger.info(
                "Sync cursor for calendar %s is no longer valid; running a full sync",
                calendar.id,
            )

        await self._store.clear_sync_token(calendar.id)
        # Rebuild so the retry uses any credentials rotated during the first attempt.
        retry_calendar = calendar.model_copy(
            update={"sync_token": None, "credentials": latest_credentials}
        )
        provider = self._provider_for(retry_calendar)
        try:
            fetched = await provider.fetch(None, on_credentials_rotated=_persist_rotation)
            return fetched, None
        except CursorInvalidError as exc:
            raise TransientProviderError(
                f"Provider rejected the full-sync retry for calendar '{calendar.id}'"
            ) from exc

    async def _reconcile(
        self,
        calendar: Calendar,
        tags: list[KidTag],
        fetched: FetchResult,
        next_cursor: str | None,
    ) -> SyncResult:
        created = updated = deleted = 0
        async with self._store.reconcile() as writer:
            for event in fetched.events:
                if event.deleted:
                    deleted += await writer.delete_event(calendar.id, event.external_id)
                    continue
                outcome = await writer.upsert_event(
                    calendar.id,
                    event,
                    kid_id=auto_tag(event.title, tags),
                )
                if outcome == "created":
                    created += 1
                else:
                    updated += 1

            if fetched.full_snapshot:
                present = {event.external_id for event in fetched.events if not event.deleted}
                stored = await writer.list_external_ids(calendar.id)
                for external_id in sorted(stored - present):
                    deleted += await writer.delete_event(calendar.id, external_id)

            await writer.save_sync_state(
                calendar.id,
                sync_token=next_cursor,
                synced_at=self._now(),
            )
        return SyncResult(created=created, updated=updated, deleted=deleted)

    async def sync_all_calendars(self) -> int:
        """Sync every active calendar in turn; return how many succeeded.

        A failing calendar is logged and skipped.
        """
        calendar_ids = await self._store.list_active_calendar_ids()
        synced = 0
        for calendar_id in calendar_ids:
            try:
                await self.sync_calendar(calendar_id)
            except CalendarSyncError as exc:
                logger.error(
                    "Calendar sync failed for %s: %s (%s)",
                    calendar_id,
                    safe_error_message(exc),
                    type(exc).__name__,
                )
                continue
            except Exception:
                logger.exception("Unexpected error while syncing calendar %s", calendar_id)
                continue
            synced += 1
        logger.info("Calendar sync finished: %d/%d calendars synced", synced, len(calendar_ids))
        return synced
