"""
Rate Limiter Service
Sliding-window request ceilings keyed by (provider, ad account) plus a
per-provider concurrency gate.

Three independent ceilings:
- requests per minute per (provider, account)
- requests per hour per (provider, account)
- concurrent sync jobs per provider

A window admits at most `limit` requests in any `period` seconds, so a
minute never sees more than the per-minute ceiling however the requests
are spread. All bookkeeping happens synchronously between awaits, so updates
are atomic within the event loop. Rejections raise LimiterRejectedError so
the queue can defer the job.
"""

import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional

from adpulse.config import Settings, get_settings
from adpulse.errors import LimiterRejectedError

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    """At most `limit` events in any `period` seconds. limit=None disables it."""

    def __init__(self, limit: Optional[int], period: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.period = period
        self._clock = clock
        self._events: deque[float] = deque()

    def _prune(self, now: float):
        while self._events and now - self._events[0] >= self.period:
            self._events.popleft()

    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        self._prune(self._clock())
        return max(0, self.limit - len(self._events))

    def wait_time(self) -> float:
        """Seconds until one more event fits (0 if it fits now)."""
        if self.limit is None:
            return 0.0
        now = self._clock()
        self._prune(now)
        if len(self._events) < self.limit:
            return 0.0
        return self.period - (now - self._events[len(self._events) - self.limit])

    def record(self):
        if self.limit is not None:
            self._events.append(self._clock())


@dataclass
class Permit:
    """Concurrency slot held by one running sync job."""
    provider: str
    account: str
    acquired_at: float
    released: bool = field(default=False)


class RateLimiter:
    """Process-wide limiter shared by every upstream client and sync job."""

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.monotonic):
        self.settings = settings or get_settings()
        self._clock = clock
        self._minute_windows: dict[str, SlidingWindowLimiter] = {}
        self._hour_windows: dict[str, SlidingWindowLimiter] = {}
        self._in_flight: dict[str, int] = {}

    @staticmethod
    def _key(provider: str, account: str | None) -> str:
        return f"{provider}:{account}" if account else provider

    def _windows(self, provider: str, account: str | None) -> tuple[SlidingWindowLimiter, SlidingWindowLimiter]:
        key = self._key(provider, account)
        if key not in self._minute_windows:
            per_minute = self.settings.requests_per_minute(provider)
            per_hour = self.settings.requests_per_hour(provider)
            self._minute_windows[key] = SlidingWindowLimiter(per_minute, 60.0, self._clock)
            self._hour_windows[key] = SlidingWindowLimiter(per_hour, 3600.0, self._clock)
            logger.info(f"Created rate limit windows for {key} ({per_minute}/min, {per_hour}/h)")
        return self._minute_windows[key], self._hour_windows[key]

    # ── Request ceilings ──────────────────────────────────────────────

    def consume_request(self, provider: str, account: str | None = None):
        """Count one request against both windows or raise LimiterRejectedError."""
        minute, hour = self._windows(provider, account)
        wait = max(minute.wait_time(), hour.wait_time())
        if wait > 0:
            key = self._key(provider, account)
            logger.warning(f"Rate limit reached for {key}; retry in {wait:.1f}s")
            raise LimiterRejectedError(
                f"Request ceiling reached for {key}",
                provider=provider,
                retry_after=wait,
            )
        minute.record()
        hour.record()

    # ── Concurrency ceiling ───────────────────────────────────────────

    def in_flight(self, provider: str) -> int:
        return self._in_flight.get(provider, 0)

    def acquire(self, provider: str, account: str | None = None) -> Permit:
        """
        Take a concurrency slot for a sync job on `provider`.
        Requests are counted separately, by the upstream client, per page.
        """
        limit = self.settings.max_concurrent_jobs_per_provider
        if self.in_flight(provider) >= limit:
            raise LimiterRejectedError(
                f"{limit} {provider} sync jobs already running",
                provider=provider,
                retry_after=self.settings.concurrency_retry_seconds,
            )
        self._in_flight[provider] = self.in_flight(provider) + 1
        return Permit(provider=provider, account=account or "", acquired_at=self._clock())

    def release(self, permit: Permit):
        if permit.released:
            return
        permit.released = True
        self._in_flight[permit.provider] = max(0, self.in_flight(permit.provider) - 1)

    @asynccontextmanager
    async def permit(self, provider: str, account: str | None = None):
        """`async with limiter.permit(...)`: slot is released even if the body raises."""
        held = self.acquire(provider, account)
        try:
            yield held
        finally:
            self.release(held)

    def status(self, provider: str, account: str | None = None) -> dict:
        minute, hour = self._windows(provider, account)
        return {
            "provider": provider,
            "account": account,
            "minute_remaining": minute.remaining(),
            "hour_remaining": hour.remaining(),
            "in_flight_jobs": self.in_flight(provider),
            "next_request_wait_seconds": round(max(minute.wait_time(), hour.wait_time()), 2),
        }


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
