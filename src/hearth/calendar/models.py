"""Provider-neutral calendar models shared by adapters, stores and the sync engine."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

NO_TITLE = "(No title)"


class ProviderKind(StrEnum):
    GOOGLE = "GOOGLE"
    MICROSOFT = "MICROSOFT"
    EXCHANGE = "EXCHANGE"
    PROTON_ICS = "PROTON_ICS"


class CalendarCredentials(BaseModel):
    """OAuth token pair stored with a calendar.

    The payload is written by the connect flow; the sync engine only reads it
    and writes back rotated values.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str | None = None
    refresh_token: str | None = None

    @field_validator("access_token", "refresh_token")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


# Awaited by an adapter as soon as it obtains rotated credentials.
CredentialRotationCallback = Callable[[CalendarCredentials], Awaitable[None]]


class Calendar(BaseModel):
    """A connected external calendar."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    user_id: uuid.UUID
    provider: ProviderKind
    external_id: str | None = None
    credentials: CalendarCredentials = Field(default_factory=CalendarCredentials)
    ics_url: str | None = None
    is_active: bool = True
    sync_token: str | None = None
    last_sync_at: datetime | None = None


class KidTag(BaseModel):
    """One entry of a user's tag vocabulary."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    name: str = ""
    keywords: list[str] = Field(default_factory=list)


class ProviderEvent(BaseModel):
    """Canonical event shape emitted by every provider adapter.

    ``deleted`` events carry only ``external_id``; every other event has
    offset-aware UTC ``start_at``/``end_at``.
    """

    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(min_length=1)
    deleted: bool = False
    title: str = NO_TITLE
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("external_id must be a non-empty string")
        return normalized

    @field_validator("start_at", "end_at")
    @classmethod
    def _require_aware(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("event boundaries must be timezone-aware")
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _require_times_unless_deleted(self) -> ProviderEvent:
        if self.deleted:
            return self
        if self.start_at is None or self.end_at is None:
            raise ValueError(f"event '{self.external_id}' is missing start/end")
        if self.end_at < self.start_at:
            raise ValueError(f"event '{self.external_id}' ends before it starts")
        return self

    @classmethod
    def tombstone(cls, external_id: str, raw: dict[str, Any] | None = None) -> ProviderEvent:
        return cls(external_id=external_id, deleted=True, raw=raw or {})


class FetchResult(BaseModel):
    """Outcome of one adapter fetch (all pages)."""

    model_config = ConfigDict(extra="forbid")

    events: list[ProviderEvent] = Field(default_factory=list)
    next_cursor: str | None = None
    # True when ``events`` is the complete current state of the calendar and
    # stored events missing from it must be deleted.
    full_snapshot: bool = False


class SyncResult(BaseModel):
    """Counts reported by one calendar reconciliation."""

    model_config = ConfigDict(extra="forbid")

    created: int = 0
    updated: int = 0
    deleted: int = 0
