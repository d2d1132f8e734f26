"""Refresh-token exchange for the OAuth-backed providers.

Authorization-code exchange belongs to the connect flow; this module only turns
a stored refresh token into a fresh access token and reports the rotation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from hearth.calendar.errors import AuthError, TransientProviderError
from hearth.calendar.models import CalendarCredentials, CredentialRotationCallback
from hearth.config import OAuthClientConfig

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_OAUTH_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_SCOPES = ("Calendars.Read", "offline_access", "User.Read")


def safe_oauth_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        for key in ("error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return " ".join(value.split())[:200]
            if isinstance(value, dict):
                message = value.get("message")
                if isinstance(message, str) and message.strip():
                    return " ".join(message.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


async def exchange_refresh_token(
    http_client: httpx.AsyncClient,
    *,
    token_url: str,
    form: dict[str, str],
    provider: str,
) -> dict[str, Any]:
    """POST a refresh-token grant and return the decoded token payload."""
    try:
        response = await http_client.post(
            token_url,
            data=form,
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        raise TransientProviderError(
            f"{provider} OAuth token refresh request failed: {exc}"
        ) from exc

    # Outages and throttling are retryable; other rejections mean the grant is bad.
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientProviderError(
            f"{provider} OAuth token refresh failed: {safe_oauth_error_message(response)}",
            status_code=response.status_code,
        )
    if response.status_code < 200 or response.status_code >= 300:
        raise AuthError(
            f"{provider} OAuth token refresh failed "
            f"({response.status_code}): {safe_oauth_error_message(response)}"
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise AuthError(f"{provider} OAuth token endpoint returned invalid JSON") from exc

    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not isinstance(access_token, str) or not access_token.strip():
        raise AuthError(f"{provider} OAuth token response is missing a non-empty access_token")
    return payload


def _rotated(current: CalendarCredentials, payload: dict[str, Any]) -> CalendarCredentials:
    refresh_token = payload.get("refresh_token")
    return CalendarCredentials(
        access_token=str(payload["access_token"]).strip(),
        refresh_token=(
            refresh_token.strip()
            if isinstance(refresh_token, str) and refresh_token.strip()
            else current.refresh_token
        ),
    )


class GoogleTokenSource:
    """Hands out the stored Google access token and refreshes it on demand.

    Every refresh is reported through ``on_rotated`` before the new token is
    returned, so a later failure in the same sync cannot lose it.
    """

    def __init__(
        self,
        *,
        client: OAuthClientConfig,
        credentials: CalendarCredentials,
        http_client: httpx.AsyncClient,
        on_rotated: CredentialRotationCallback,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._http_client = http_client
        self._on_rotated = on_rotated
        self._refresh_lock = asyncio.Lock()

    @property
    def credentials(self) -> CalendarCredentials:
        return self._credentials

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._credentials.access_token is not None:
            return self._credentials.access_token

        async with self._refresh_lock:
            if not force_refresh and self._credentials.access_token is not None:
                return self._credentials.access_token
            await self._refresh()

        assert self._credentials.access_token is not None
        return self._credentials.access_token

    async def _refresh(self) -> None:
        if self._credentials.refresh_token is None:
            raise AuthError("Google calendar has no refresh token; reconnect the calendar")
        if not self._client.configured:
            raise AuthError("Google OAuth client is not configured ([providers.google])")

        payload = await exchange_refresh_token(
            self._http_client,
            token_url=GOOGLE_OAUTH_TOKEN_URL,
            form={
                "client_id": self._client.client_id,
                "client_secret": self._client.client_secret,
                "refresh_token": self._credentials.refresh_token,
                "grant_type": "refresh_token",
            },
            provider="Google",
        )
        self._credentials = _rotated(self._credentials, payload)
        logger.debug("Google access token refreshed")
        await self._on_rotated(self._credentials)


async def refresh_microsoft_credentials(
    http_client: httpx.AsyncClient,
    *,
    client: OAuthClientConfig,
    credentials: CalendarCredentials,
) -> CalendarCredentials:
    """Exchange the stored Microsoft refresh token for a new token pair."""
    if credentials.access_token is None or credentials.refresh_token is None:
        raise AuthError("Microsoft calendar has no access/refresh token")
    if not client.configured:
        raise AuthError("Microsoft OAuth client is not configured ([providers.microsoft])")

    payload = await exchange_refresh_token(
        http_client,
        token_url=MICROSOFT_OAUTH_TOKEN_URL,
        form={
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": credentials.refresh_token,
            "scope": " ".join(MICROSOFT_SCOPES),
        },
        provider="Microsoft",
    )
    return _rotated(credentials, payload)
