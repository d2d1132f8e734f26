"""Google Calendar v3 adapter (syncToken / nextSyncToken delta flow)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime
from typing import Any
from urllib.parse import quote

import httpx

from hearth.calendar.errors import AuthError, CursorInvalidError, TransientProviderError
from hearth.calendar.models import (
    NO_TITLE,
    Calendar,
    CredentialRotationCallback,
    FetchResult,
    ProviderEvent,
)
from hearth.calendar.oauth import GoogleTokenSource
from hearth.calendar.providers.base import (
    MAX_PAGES_PER_FETCH,
    CalendarProvider,
    FullSyncWindow,
    decode_json_object,
    normalize_optional_text,
    parse_offset_datetime,
    rfc3339,
    safe_provider_error_message,
    send_with_backoff,
    utc_midnight,
    utc_now,
)
from hearth.config import OAuthClientConfig

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_GOOGLE_CALENDAR_ID = "primary"


def _parse_google_boundary(payload: Any) -> tuple[datetime, bool] | None:
    """Return ``(instant, is_date_only)`` for a Google ``start``/``end`` object."""
    if not isinstance(payload, dict):
        return None

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_offset_datetime(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        return utc_midnight(date.fromisoformat(date_value.strip())), True

    return None


def google_event_to_provider_event(payload: dict[str, Any]) -> ProviderEvent | None:
    """Normalize one Google event resource; ``None`` when it cannot be used."""
    event_id = normalize_optional_text(payload.get("id"))
    if event_id is None:
        return None

    status = payload.get("status")
    if isinstance(status, str) and status.strip().lower() == "cancelled":
        return ProviderEvent.tombstone(event_id, raw=payload)

    try:
        start = _parse_google_boundary(payload.get("start"))
        end = _parse_google_boundary(payload.get("end"))
    except ValueError:
        logger.debug("Skipping Google event %s with unparseable start/end", event_id)
        return None
    if start is None or end is None:
        logger.debug("Skipping Google event %s without start/end", event_id)
        return None

    start_at, start_is_date = start
    end_at, _ = end
    if end_at < start_at:
        logger.debug("Skipping Google event %s that ends before it starts", event_id)
        return None

    return ProviderEvent(
        external_id=event_id,
        title=normalize_optional_text(payload.get("summary")) or NO_TITLE,
        description=normalize_optional_text(payload.get("description")),
        location=normalize_optional_text(payload.get("location")),
        start_at=start_at,
        end_at=end_at,
        all_day=start_is_date,
        raw=payload,
    )


class GoogleCalendarProvider(CalendarProvider):
    """Lists events with ``singleEvents=true`` and follows ``pageToken`` paging."""

    def __init__(
        self,
        calendar: Calendar,
        *,
        http_client: httpx.AsyncClient,
        oauth_client: OAuthClientConfig,
        window: FullSyncWindow | None = None,
        page_size: int = 250,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(
            calendar,
            http_client=http_client,
            window=window,
            page_size=page_size,
            now=now,
        )
        self._oauth_client = oauth_client

    @property
    def name(self) -> str:
        return "google"

    def _events_url(self) -> str:
        calendar_id = self._calendar.external_id or DEFAULT_GOOGLE_CALENDAR_ID
        return f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events"

    async def fetch(
        self,
        cursor: str | None,
        *,
        on_credentials_rotated: CredentialRotationCallback,
    ) -> FetchResult:
        # A missing access token is refreshed on first use.
        tokens = GoogleTokenSource(
            client=self._oauth_client,
            credentials=self._calendar.credentials,
            http_client=self._http_client,
            on_rotated=on_credentials_rotated,
        )

        params: dict[str, Any] = {
            "maxResults": self._page_size,
            "singleEvents": "true",
        }
        if cursor is not None:
            params["syncToken"] = cursor
        else:
            time_min, time_max = self._window.bounds(self._now())
            params["timeMin"] = rfc3339(time_min)
            params["timeMax"] = rfc3339(time_max)

        events: list[ProviderEvent] = []
        next_cursor: str | None = None
        page_token: str | None = None

        for _ in range(MAX_PAGES_PER_FETCH):
            page_params = dict(params)
            if page_token is not None:
                page_params["pageToken"] = page_token

            payload = await self._get_page(
                page_params, tokens=tokens, has_cursor=cursor is not None
            )

            items = payload.get("items")
            if isinstance(items, list):
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    event = google_event_to_provider_event(item)
                    if event is not None:
                        events.append(event)

            page_token = normalize_optional_text(payload.get("nextPageToken"))
            if page_token is None:
                # Only the final page carries the cursor for the next sync.
                next_cursor = normalize_optional_text(payload.get("nextSyncToken"))
                break
        else:
            raise TransientProviderError(
                f"Google Calendar paging did not terminate after {MAX_PAGES_PER_FETCH} pages"
            )

        if next_cursor is None:
            logger.warning(
                "Google Calendar sync for calendar %s returned no nextSyncToken",
                self._calendar.id,
            )
        return FetchResult(events=events, next_cursor=next_cursor)

    async def _get_page(
        self,
        params: dict[str, Any],
        *,
        tokens: GoogleTokenSource,
        has_cursor: bool,
    ) -> dict[str, Any]:
        url = self._events_url()

        async def _send(force_refresh: bool) -> httpx.Response:
            access_token = await tokens.get_access_token(force_refresh=force_refresh)
            return await send_with_backoff(
                lambda: self._http_client.get(
                    url,
                    params=params,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                ),
                provider="Google Calendar",
            )

        response = await _send(force_refresh=False)
        if response.status_code == 401:
            response = await _send(force_refresh=True)

        # 410 Gone means the sync token is expired; caller must do a full re-sync.
        if response.status_code == 410 and has_cursor:
            raise CursorInvalidError(
                f"Sync token expired for calendar '{self._calendar.id}'; full re-sync required"
            )
        if response.status_code in (401, 403):
            raise AuthError(
                f"Google Calendar rejected credentials ({response.status_code}): "
                f"{safe_provider_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise TransientProviderError(
                safe_provider_error_message(response),
                status_code=response.status_code,
            )
        return decode_json_object(response, provider="Google Calendar")
