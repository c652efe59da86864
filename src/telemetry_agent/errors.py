"""
Custom exceptions for the telemetry agent.

None of these ever reach a producer calling ``enqueue``; they travel between
the dispatcher, the offline store and the flush coordinator.
"""

from __future__ import annotations


class TelemetryError(Exception):
    """Base error for the telemetry agent."""

    pass


class TransientNetworkError(TelemetryError):
    """Network error or non-2xx response; eligible for failover and backoff."""

    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class RateLimited(TelemetryError):
    """Server answered 429. Not retried inline; ``retry_after`` is in seconds."""

    def __init__(self, retry_after: float, *, endpoint: str | None = None):
        super().__init__(f"rate limited, retry after {retry_after:g}s")
        self.retry_after = retry_after
        self.endpoint = endpoint


class DeliveryFailed(TelemetryError):
    """Failover and retry budget exhausted for a batch."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        super().__init__(f"delivery failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class StorageError(TelemetryError):
    """Offline persistence could not be read or written."""

    pass


class InvalidEvent(TelemetryError):
    """Event payload failed validation."""

    pass
