"""Provider adapter registry keyed by :class:`~hearth.calendar.models.ProviderKind`."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import httpx

from hearth.calendar.errors import UnsupportedProviderError
from hearth.calendar.models import Calendar, ProviderKind
from hearth.calendar.providers.base import CalendarProvider, FullSyncWindow, utc_now
from hearth.calendar.providers.google import GoogleCalendarProvider
from hearth.calendar.providers.ics import IcsFeedProvider
from hearth.calendar.providers.microsoft import MicrosoftGraphProvider
from hearth.config import HearthConfig

__all__ = [
    "CalendarProvider",
    "GoogleCalendarProvider",
    "IcsFeedProvider",
    "MicrosoftGraphProvider",
    "build_provider",
]


def build_provider(
    calendar: Calendar,
    *,
    http_client: httpx.AsyncClient,
    config: HearthConfig,
    now: Callable[[], datetime] = utc_now,
) -> CalendarProvider:
    """Instantiate the adapter for *calendar*'s provider kind."""
    window = FullSyncWindow(
        past_days=config.sync.full_sync_past_days,
        future_days=config.sync.full_sync_future_days,
    )
    page_size = config.sync.page_size

    if calendar.provider is ProviderKind.GOOGLE:
        return GoogleCalendarProvider(
            calendar,
            http_client=http_client,
            oauth_client=config.providers.google,
            window=window,
            page_size=page_size,
            now=now,
        )
    if calendar.provider in (ProviderKind.MICROSOFT, ProviderKind.EXCHANGE):
        return MicrosoftGraphProvider(
            calendar,
            http_client=http_client,
            oauth_client=config.providers.microsoft,
            window=window,
            page_size=page_size,
            now=now,
        )
    if calendar.provider is ProviderKind.PROTON_ICS:
        return IcsFeedProvider(
            calendar,
            http_client=http_client,
            window=window,
            page_size=page_size,
            now=now,
        )
    raise UnsupportedProviderError(f"No adapter for provider {calendar.provider!r}")
