"""Error taxonomy for progress synchronisation.

Failures are either recoverable (the API could not be reached, so the write is
queued and retried later) or reported (the API answered with a non-2xx status,
which is surfaced to the caller as an error status with a message).
"""

from typing import Any


class ProgressError(Exception):
    """Base exception class for all progress-related exceptions."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class NetworkUnavailableError(ProgressError):
    """Raised when the progress API cannot be reached at all."""

    recoverable = True


class ProgressApiError(ProgressError):
    """Raised when the progress API rejects a request with a non-2xx status."""

    recoverable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        code: str | None = None,
        payload: Any = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.payload = payload
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether replaying the same write later may succeed."""
        return self.status_code in (404, 429) or self.status_code >= 500


class ProgressNotFoundError(ProgressApiError):
    """Raised when the lesson or module does not exist on the server."""

    def __init__(self, resource_type: str, resource_id: str, *, payload: Any = None) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type} {resource_id} not found"
        super().__init__(message, status_code=404, code=f"{resource_type.upper()}_NOT_FOUND", payload=payload)


class RateLimitedError(ProgressApiError):
    """Raised when the server answers 429 Too Many Requests."""

    def __init__(self, message: str, *, retry_after: float | None = None, payload: Any = None) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=429, code="RATE_LIMIT_EXCEEDED", payload=payload)


class InvalidProgressUpdateError(ProgressError, ValueError):
    """Raised when a local update cannot be accepted (missing ids)."""
