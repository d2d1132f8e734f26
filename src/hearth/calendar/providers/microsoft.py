"""Microsoft Graph adapter (calendarView delta links) for Outlook and Exchange calendars."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx

from hearth.calendar.errors import AuthError, CursorInvalidError, TransientProviderError
from hearth.calendar.models import (
    NO_TITLE,
    Calendar,
    CredentialRotationCallback,
    FetchResult,
    ProviderEvent,
)
from hearth.calendar.oauth import refresh_microsoft_credentials
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
    utc_now,
)
from hearth.config import OAuthClientConfig

logger = logging.getLogger(__name__)

GRAPH_CALENDAR_VIEW_DELTA_URL = "https://graph.microsoft.com/v1.0/me/calendarView/delta"
# An expired or unknown delta link comes back as one of these.
GRAPH_CURSOR_INVALID_STATUS_CODES = {404, 410}


def _parse_graph_boundary(payload: Any) -> datetime | None:
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if not isinstance(date_time, str) or not date_time.strip():
        return None
    # Graph omits the offset; with the UTC Prefer header the value is UTC.
    return parse_offset_datetime(date_time)


def graph_event_to_provider_event(payload: dict[str, Any]) -> ProviderEvent | None:
    """Normalize one Graph event (or ``@removed`` stub); ``None`` when unusable."""
    event_id = normalize_optional_text(payload.get("id"))
    if event_id is None:
        return None

    if payload.get("@removed") is not None:
        return ProviderEvent.tombstone(event_id, raw=payload)

    try:
        start_at = _parse_graph_boundary(payload.get("start"))
        end_at = _parse_graph_boundary(payload.get("end"))
    except ValueError:
        logger.debug("Skipping Graph event %s with unparseable start/end", event_id)
        return None
    if start_at is None or end_at is None or end_at < start_at:
        logger.debug("Skipping Graph event %s without a usable start/end", event_id)
        return None

    location = payload.get("location")
    return ProviderEvent(
        external_id=event_id,
        title=normalize_optional_text(payload.get("subject")) or NO_TITLE,
        description=normalize_optional_text(payload.get("bodyPreview")),
        location=(
            normalize_optional_text(location.get("displayName"))
            if isinstance(location, dict)
            else None
        ),
        start_at=start_at,
        end_at=end_at,
        all_day=payload.get("isAllDay") is True,
        raw=payload,
    )


class MicrosoftGraphProvider(CalendarProvider):
    """The cursor is the ``@odata.deltaLink`` URL of the previous sync."""

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
        return "microsoft"

    async def fetch(
        self,
        cursor: str | None,
        *,
        on_credentials_rotated: CredentialRotationCallback,
    ) -> FetchResult:
        credentials = await refresh_microsoft_credentials(
            self._http_client,
            client=self._oauth_client,
            credentials=self._calendar.credentials,
        )
        await on_credentials_rotated(credentials)
        access_token = credentials.access_token
        assert access_token is not None

        url: str
        params: dict[str, Any] | None
        if cursor is not None:
            url, params = cursor, None
        else:
            start, end = self._window.bounds(self._now())
            url = GRAPH_CALENDAR_VIEW_DELTA_URL
            params = {"startDateTime": rfc3339(start), "endDateTime": rfc3339(end)}

        events: list[ProviderEvent] = []
        next_cursor: str | None = None

        for _ in range(MAX_PAGES_PER_FETCH):
            payload = await self._get_page(
                url, params=params, access_token=access_token, has_cursor=cursor is not None
            )

            values = payload.get("value")
            if isinstance(values, list):
                for item in values:
                    if not isinstance(item, dict):
                        continue
                    event = graph_event_to_provider_event(item)
                    if event is not None:
                        events.append(event)

            next_link = normalize_optional_text(payload.get("@odata.nextLink"))
            if next_link is None:
                next_cursor = normalize_optional_text(payload.get("@odata.deltaLink"))
                break
            # nextLink already embeds the query string
            url, params = next_link, None
        else:
            raise TransientProviderError(
                f"Microsoft Graph paging did not terminate after {MAX_PAGES_PER_FETCH} pages"
            )

        if next_cursor is None:
            logger.warning(
                "Microsoft Graph sync for calendar %s returned no deltaLink", self._calendar.id
            )
        return FetchResult(events=events, next_cursor=next_cursor)

    async def _get_page(
        self,
        url: str,
        *,
        params: dict[str, Any] | None,
        access_token: str,
        has_cursor: bool,
    ) -> dict[str, Any]:
        response = await send_with_backoff(
            lambda: self._http_client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                    "Prefer": f'outlook.timezone="UTC", odata.maxpagesize={self._page_size}',
                },
            ),
            provider="Microsoft Graph",
        )

        if has_cursor and response.status_code in GRAPH_CURSOR_INVALID_STATUS_CODES:
            raise CursorInvalidError(
                f"Delta link expired for calendar '{self._calendar.id}'; full re-sync required"
            )
        if response.status_code in (401, 403):
            raise AuthError(
                f"Microsoft Graph rejected credentials ({response.status_code}): "
                f"{safe_provider_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise TransientProviderError(
                safe_provider_error_message(response),
                status_code=response.status_code,
            )
        return decode_json_object(response, provider="Microsoft Graph")
