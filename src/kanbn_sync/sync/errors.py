"""Exception hierarchy shared by the Kanbn and GitHub clients.

Both backends raise the same error types so the orchestrator can decide
what to retry, skip, or abort without caring which service failed.
"""

from __future__ import annotations

from datetime import datetime


class SyncError(Exception):
    """Base exception for all kanbn-sync errors."""


class RateLimitError(SyncError):
    """A remote API rate limit was exceeded."""

    def __init__(
        self,
        message: str,
        service: str = "",
        reset_at: datetime | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.reset_at = reset_at  # Local wall-clock time when the quota resets
        self.retry_after = retry_after  # Seconds to wait, when known


class APIError(SyncError):
    """A remote API returned a non-success response."""

    def __init__(
        self,
        message: str,
        method: str = "",
        url: str = "",
        status_code: int = 0,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.method = method
        self.url = url
        self.status_code = status_code
        self.body = body


class ServerError(APIError):
    """5xx response or transport failure."""


class ClientError(APIError):
    """4xx response other than a rate limit."""


class NotFoundError(ClientError):
    """Requested resource not found (404)."""


class ConfigurationError(SyncError):
    """Required settings are missing or still hold placeholder values."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class CycleInProgressError(SyncError):
    """A sync cycle was requested while another one is still running."""
