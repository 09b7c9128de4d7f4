"""
Upstream Fetcher: base client for paginated ad-platform APIs.

Provider clients implement `fetch_page` and `classify_error`; this base
class handles the HTTP call, request-rate gating, error classification and
exhaustive cursor traversal.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx

from adpulse.config import Settings, get_settings
from adpulse.errors import (
    PayloadValidationError,
    SyncError,
    TransientError,
)
from adpulse.services.rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)


@dataclass
class Page:
    items: list[dict] = field(default_factory=list)
    next_cursor: Optional[str] = None


class UpstreamClient:
    """
    One instance per connection (one access token).
    Owns an httpx.AsyncClient unless one is injected (tests use MockTransport).
    """

    provider = "upstream"

    def __init__(
        self,
        access_token: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        settings: Optional[Settings] = None,
    ):
        self.access_token = access_token
        self.settings = settings or get_settings()
        self.limiter = limiter or get_rate_limiter()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.settings.upstream_timeout_seconds)

    async def aclose(self):
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    # ── Provider hooks ────────────────────────────────────────────────

    async def fetch_page(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        cursor: Optional[str] = None,
        account: Optional[str] = None,
    ) -> Page:
        raise NotImplementedError

    def classify_error(self, status_code: int, body: Any) -> SyncError:
        raise NotImplementedError

    def has_error(self, status_code: int, body: Any) -> bool:
        """Provider-reported errors can arrive with a 200 status."""
        return status_code >= 400 or (isinstance(body, dict) and "error" in body)

    # ── HTTP ──────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        *,
        account: Optional[str] = None,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Make one rate-gated request and return the decoded JSON body."""
        self.limiter.consume_request(self.provider, account)

        try:
            response = await self._http.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientError(f"{self.provider} request timed out: {e}", provider=self.provider) from e
        except httpx.TransportError as e:
            raise TransientError(f"{self.provider} network error: {e}", provider=self.provider) from e

        try:
            body = response.json()
        except ValueError:
            if response.status_code >= 500:
                raise TransientError(
                    f"{self.provider} returned HTTP {response.status_code}", provider=self.provider
                )
            if response.status_code >= 400:
                raise self.classify_error(response.status_code, {})
            raise PayloadValidationError(
                f"{self.provider} returned a non-JSON body (HTTP {response.status_code})",
                provider=self.provider,
            )

        if self.has_error(response.status_code, body):
            error = self.classify_error(response.status_code, body)
            logger.warning(f"{self.provider} API error ({error.category}): {error.message}")
            raise error
        return body

    # ── Pagination ────────────────────────────────────────────────────

    async def paginate(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        *,
        account: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[Page]:
        """
        Yield pages until the cursor is exhausted.
        Exceeding max_pages raises TransientError instead of truncating silently.
        """
        limit = max_pages or self.settings.upstream_max_pages
        cursor = None
        pages = 0
        while True:
            page = await self.fetch_page(endpoint, params, cursor, account)
            pages += 1
            yield page
            if not page.next_cursor:
                break
            if pages >= limit:
                raise TransientError(
                    f"{self.provider} pagination for {endpoint} exceeded {limit} pages",
                    provider=self.provider,
                )
            cursor = page.next_cursor

    async def fetch_all(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        *,
        account: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> list[dict]:
        items: list[dict] = []
        pages = 0
        async for page in self.paginate(endpoint, params, account=account, max_pages=max_pages):
            items.extend(page.items)
            pages += 1
        logger.info(f"{self.provider} fetch_all({endpoint}) complete: {len(items)} items in {pages} page(s)")
        return items
