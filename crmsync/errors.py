"""Error taxonomy for the sync and reconciliation engine."""

from __future__ import annotations


class CRMSyncError(Exception):
    """Base class for all sync engine errors."""


class TransientNetworkError(CRMSyncError):
    """Timeout or connection failure talking to upstream. Retried with backoff."""


class UpstreamCorruptRecord(CRMSyncError):
    """Upstream failed to serve a page (5xx), usually because of one bad record."""

    def __init__(self, message: str, *, cursor: str | None = None, size: int | None = None,
                 status_code: int | None = None) -> None:
        super().__init__(message)
        self.cursor = cursor
        self.size = size
        self.status_code = status_code


class RateLimited(CRMSyncError):
    """Upstream answered 429. Resume at the same cursor after backing off."""

    def __init__(self, message: str = "rate limited", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamRejected(CRMSyncError):
    """Non-retryable upstream response (4xx other than 429)."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(CRMSyncError):
    """A field value could not be accepted and falls back to its default."""

    def __init__(self, field: str, value: object, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.value = value
        self.reason = reason


class DuplicateConflict(CRMSyncError):
    """Two local records claim the same identity. Resolved by the dedup tie-break."""


class SyncAlreadyRunning(CRMSyncError):
    """Another bulk run holds the lease for this upstream source."""

    def __init__(self, source: str) -> None:
        super().__init__(f"A bulk sync is already running for source {source!r}")
        self.source = source
