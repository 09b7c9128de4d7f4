"""
Sync error taxonomy.

Every failure that crosses a sync, job or HTTP boundary is expressed as a
SyncError subclass. `category` is what lands on SyncRun.error_category and
`retryable` is what the queue consults before rescheduling a job.
"""

import httpx


class SyncError(Exception):
    category = "unknown"
    retryable = True

    def __init__(self, message: str = "", *, provider: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.provider = provider


class AuthExpiredError(SyncError):
    """Token expired or revoked. The connection needs re-authentication."""
    category = "auth_expired"
    retryable = False


class RateLimitedError(SyncError):
    """Request or job ceiling hit. Retry after backoff."""
    category = "rate_limited"
    retryable = True

    def __init__(self, message: str = "", *, provider: str | None = None, retry_after: float | None = None):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class LimiterRejectedError(RateLimitedError):
    """
    Turned away by the local limiter before the request or job ran.
    The queue defers the job without spending an attempt.
    """


class TransientError(SyncError):
    category = "transient"
    retryable = True


class PayloadValidationError(SyncError):
    """Malformed upstream payload. Retrying will not fix it."""
    category = "validation"
    retryable = False


class UnknownSyncError(SyncError):
    category = "unknown"
    retryable = True


def classify_exception(exc: BaseException) -> SyncError:
    """Wrap a foreign exception into the taxonomy; SyncErrors pass through."""
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return TransientError(f"Network error: {exc}")
    return UnknownSyncError(f"{type(exc).__name__}: {exc}")
