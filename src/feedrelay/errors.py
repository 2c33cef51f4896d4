"""
Error taxonomy for feedrelay.

Only ConfigurationError is fatal. Delivery errors are isolated per endpoint,
cache errors are logged and skipped, cycle errors never stop the schedule.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all feedrelay errors."""


class ConfigurationError(RelayError):
    """Invalid or missing settings. Fatal at startup."""


class TransportError(RelayError):
    """Network failure, timeout or non-2xx response while delivering."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        # Number of HTTP attempts made before this error was surfaced
        self.attempts = 0


class QuotaError(TransportError):
    """Explicit rate rejection (HTTP 429) from an endpoint."""

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after_ms = retry_after_ms


class CacheIOError(RelayError):
    """Persisted state could not be read or written."""


class CycleError(RelayError):
    """Uncaught failure during one polling pass."""

    def __init__(self, message: str, cycle: int = 0) -> None:
        super().__init__(message)
        self.cycle = cycle


class FeedError(RelayError):
    """A single feed could not be fetched or parsed."""

    def __init__(self, message: str, source_key: str = "") -> None:
        super().__init__(message)
        self.source_key = source_key
