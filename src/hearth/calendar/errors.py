"""Error taxonomy for calendar synchronization."""

from __future__ import annotations

import re


class CalendarSyncError(RuntimeError):
    """Base error raised by provider adapters and the sync orchestrator."""


class TransientProviderError(CalendarSyncError):
    """Network failure or non-success provider response; safe to retry later."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(message)
        else:
            super().__init__(f"Provider request failed ({status_code}): {message}")


class CursorInvalidError(CalendarSyncError):
    """Raised when the stored sync cursor is expired or unknown to the provider.

    The caller should clear the cursor and retry once with a full sync.
    """


class AuthError(CalendarSyncError):
    """Raised when credentials are missing, invalid, or cannot be refreshed."""


class CalendarNotFoundError(CalendarSyncError):
    """Raised when the requested calendar does not exist."""


class UnsupportedProviderError(CalendarSyncError):
    """Raised when no adapter is registered for a calendar's provider kind."""


def redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message before it is logged or stored."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Authorization headers
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def safe_error_message(exc: BaseException, *, limit: int = 200) -> str:
    """Redacted, whitespace-normalized and truncated rendering of *exc*."""
    return " ".join(redact_credential_values(str(exc)).split())[:limit]
