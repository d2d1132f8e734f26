"""Provider adapter contract and shared HTTP plumbing."""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx

from hearth.calendar.errors import TransientProviderError
from hearth.calendar.models import Calendar, CredentialRotationCallback, FetchResult

logger = logging.getLogger(__name__)

DEFAULT_FULL_SYNC_PAST_DAYS = 30
DEFAULT_FULL_SYNC_FUTURE_DAYS = 90
DEFAULT_PAGE_SIZE = 250

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Some provider responses are large; cap how many pages one fetch will follow.
MAX_PAGES_PER_FETCH = 1000


@dataclass(frozen=True)
class FullSyncWindow:
    """Absolute time range requested when no cursor is available."""

    past_days: int = DEFAULT_FULL_SYNC_PAST_DAYS
    future_days: int = DEFAULT_FULL_SYNC_FUTURE_DAYS

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        return now - timedelta(days=self.past_days), now + timedelta(days=self.future_days)


def utc_now() -> datetime:
    return datetime.now(UTC)


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_offset_datetime(value: str) -> datetime:
    """Parse an ISO-8601 date-time; a value without an offset is taken as UTC."""
    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def utc_midnight(value: date) -> datetime:
    """All-day boundaries are anchored at UTC midnight of the calendar date."""
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def safe_provider_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


async def send_with_backoff(
    send: Callable[[], Any],
    *,
    provider: str,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> httpx.Response:
    """Run ``send`` and retry rate-limited responses with exponential backoff.

    ``send`` is a zero-argument coroutine function performing one request.
    Transport errors are mapped to :class:`TransientProviderError`.
    """
    try:
        response = await send()
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES
            and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                provider,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await sleep(backoff)
            response = await send()
            retry += 1
    except httpx.HTTPError as exc:
        raise TransientProviderError(f"{provider} request failed: {exc}") from exc
    return response


def decode_json_object(response: httpx.Response, *, provider: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientProviderError(
            f"{provider} returned invalid JSON", status_code=response.status_code
        ) from exc
    if not isinstance(payload, dict):
        raise TransientProviderError(
            f"{provider} returned an unexpected JSON payload shape",
            status_code=response.status_code,
        )
    return payload


class CalendarProvider(abc.ABC):
    """One adapter per external calendar service.

    Adapters are built per sync run for a single calendar and normalize the
    provider's payloads into :class:`~hearth.calendar.models.ProviderEvent`.
    """

    def __init__(
        self,
        calendar: Calendar,
        *,
        http_client: httpx.AsyncClient,
        window: FullSyncWindow | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._calendar = calendar
        self._http_client = http_client
        self._window = window or FullSyncWindow()
        self._page_size = page_size
        self._now = now

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier used in logs."""
        ...

    @property
    def supports_cursor(self) -> bool:
        return True

    @abc.abstractmethod
    async def fetch(
        self,
        cursor: str | None,
        *,
        on_credentials_rotated: CredentialRotationCallback,
    ) -> FetchResult:
        """Fetch changes since ``cursor``, or the full window when it is ``None``.

        Raises:
            CursorInvalidError: the provider no longer accepts ``cursor``.
            AuthError: credentials are missing or rejected.
            TransientProviderError: network failure or unexpected response.
        """
        ...
