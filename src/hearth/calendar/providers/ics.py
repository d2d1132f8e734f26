"""Cursorless ICS feed adapter (Proton Calendar share links and similar)."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any

import icalendar

from hearth.calendar.errors import AuthError, TransientProviderError
from hearth.calendar.models import NO_TITLE, CredentialRotationCallback, FetchResult, ProviderEvent
from hearth.calendar.providers.base import (
    CalendarProvider,
    normalize_optional_text,
    safe_provider_error_message,
    send_with_backoff,
    utc_midnight,
)

logger = logging.getLogger(__name__)


def _to_utc(value: date | datetime) -> datetime:
    if not isinstance(value, datetime):
        return utc_midnight(value)
    # Floating (zone-less) times are taken as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _text(component: icalendar.Event, key: str) -> str | None:
    value = component.get(key)
    if value is None:
        return None
    return normalize_optional_text(str(value))


def ics_component_to_provider_event(component: icalendar.Event) -> ProviderEvent | None:
    """Normalize one VEVENT; ``None`` when it cannot be mirrored."""
    uid = _text(component, "UID")
    if uid is None:
        logger.debug("Skipping ICS VEVENT without UID")
        return None
    if component.get("RECURRENCE-ID") is not None:
        # Overrides of a recurring series are represented by the master event.
        return None

    dtstart = component.get("DTSTART")
    if dtstart is None:
        logger.debug("Skipping ICS event %s without DTSTART", uid)
        return None
    start_value = dtstart.dt
    all_day = not isinstance(start_value, datetime)
    start_at = _to_utc(start_value)

    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    if dtend is not None:
        end_at = _to_utc(dtend.dt)
    elif duration is not None and isinstance(duration.dt, timedelta):
        end_at = start_at + duration.dt
    elif all_day:
        end_at = start_at + timedelta(days=1)
    else:
        end_at = start_at

    if end_at < start_at:
        logger.debug("Skipping ICS event %s that ends before it starts", uid)
        return None

    raw: dict[str, Any] = {"ics": component.to_ical().decode("utf-8", errors="replace")}
    return ProviderEvent(
        external_id=uid,
        title=_text(component, "SUMMARY") or NO_TITLE,
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        raw=raw,
    )


def parse_ics_feed(body: bytes | str) -> list[ProviderEvent]:
    """Parse a whole VCALENDAR document into normalized events, one per UID."""
    try:
        calendar = icalendar.Calendar.from_ical(body)
    except ValueError as exc:
        raise TransientProviderError(f"ICS feed could not be parsed: {exc}") from exc

    by_uid: dict[str, ProviderEvent] = {}
    for component in calendar.walk("VEVENT"):
        status = _text(component, "STATUS")
        if status is not None and status.upper() == "CANCELLED":
            continue
        try:
            event = ics_component_to_provider_event(component)
        except ValueError:
            logger.debug("Skipping ICS event with unparseable start/end")
            continue
        if event is not None:
            by_uid[event.external_id] = event
    return list(by_uid.values())


class IcsFeedProvider(CalendarProvider):
    """Downloads the whole feed on every sync; it has no delta cursor."""

    @property
    def name(self) -> str:
        return "ics"

    @property
    def supports_cursor(self) -> bool:
        return False

    async def fetch(
        self,
        cursor: str | None,
        *,
        on_credentials_rotated: CredentialRotationCallback,
    ) -> FetchResult:
        url = normalize_optional_text(self._calendar.ics_url)
        if url is None:
            raise AuthError("Calendar has no ICS feed URL")

        response = await send_with_backoff(
            lambda: self._http_client.get(
                url,
                headers={"Accept": "text/calendar"},
                follow_redirects=True,
            ),
            provider="ICS feed",
        )
        if response.status_code in (401, 403):
            raise AuthError(f"ICS feed rejected the request ({response.status_code})")
        if response.status_code < 200 or response.status_code >= 300:
            raise TransientProviderError(
                safe_provider_error_message(response),
                status_code=response.status_code,
            )

        events = parse_ics_feed(response.content)
        logger.debug("ICS feed for calendar %s yielded %d events", self._calendar.id, len(events))
        return FetchResult(events=events, next_cursor=None, full_snapshot=True)
