from __future__ import annotations


class TimeledgerError(Exception):
    """Base error for timeledger."""


class RemoteError(TimeledgerError):
    """Remote issue tracker request failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteConfigError(RemoteError):
    """Remote tracker URL or API key missing."""


class RemoteAuthError(RemoteError):
    """Remote tracker rejected the credentials (401/403)."""


class RemoteTransientError(RemoteError):
    """Retryable remote failure: connection reset, timeout, 5xx or throttling."""


class RemoteRequestError(RemoteError):
    """Non-retryable remote failure other than authorization."""


class IntegrationUnavailableError(TimeledgerError):
    """Circuit breaker is open for an integration."""


class ReferentialError(TimeledgerError):
    """Referenced parent record is not present locally."""


class ConfigValidationError(TimeledgerError):
    """Compliance rule configuration update is out of bounds."""

class DatabaseError(TimeledgerError):
    """Local store rejected a write or read."""
