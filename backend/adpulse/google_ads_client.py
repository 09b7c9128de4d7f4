"""
Google Ads API Client (REST googleAds:search with GAQL).
Paginated by nextPageToken. Rows come back in camelCase JSON; money is in micros.
"""

import logging
from datetime import date
from typing import Any, Optional

import httpx

from adpulse.config import Settings
from adpulse.errors import (
    AuthExpiredError,
    PayloadValidationError,
    RateLimitedError,
    SyncError,
    TransientError,
    UnknownSyncError,
)
from adpulse.services.rate_limiter import RateLimiter
from adpulse.upstream import Page, UpstreamClient

logger = logging.getLogger(__name__)

GOOGLE_ADS_URL = "https://googleads.googleapis.com"
MICROS = 1_000_000

CUSTOMER_QUERY = """
    SELECT customer.id, customer.descriptive_name, customer.currency_code,
           customer.time_zone, customer.status
    FROM customer
"""

CAMPAIGN_QUERY = """
    SELECT campaign.id, campaign.name, campaign.status,
           campaign.advertising_channel_type, campaign.bidding_strategy_type,
           campaign.start_date, campaign.end_date, campaign_budget.amount_micros
    FROM campaign
    WHERE campaign.status IN ('ENABLED', 'PAUSED')
"""

AD_GROUP_QUERY = """
    SELECT ad_group.id, ad_group.name, ad_group.status, ad_group.type,
           ad_group.cpc_bid_micros, campaign.id, campaign.advertising_channel_type
    FROM ad_group
    WHERE ad_group.status IN ('ENABLED', 'PAUSED')
"""

AD_QUERY = """
    SELECT ad_group_ad.ad.id, ad_group_ad.ad.name, ad_group_ad.status,
           ad_group_ad.ad.type, ad_group_ad.ad.final_urls,
           ad_group_ad.ad.responsive_search_ad.headlines,
           ad_group_ad.ad.responsive_search_ad.descriptions,
           ad_group.id, campaign.advertising_channel_type
    FROM ad_group_ad
    WHERE ad_group_ad.status IN ('ENABLED', 'PAUSED')
"""

METRIC_FIELDS = (
    "metrics.impressions, metrics.clicks, metrics.cost_micros, metrics.ctr, "
    "metrics.average_cpc, metrics.average_cpm, metrics.conversions, metrics.video_views, "
    "metrics.video_quartile_p25_rate, metrics.video_quartile_p50_rate, "
    "metrics.video_quartile_p75_rate, metrics.video_quartile_p100_rate, segments.date"
)

# GAQL resource and id field per insights level
INSIGHT_RESOURCES = {
    "account": ("customer", "customer.id"),
    "campaign": ("campaign", "campaign.id"),
    "adset": ("ad_group", "ad_group.id"),
    "ad": ("ad_group_ad", "ad_group_ad.ad.id"),
}


def classify_google_error(status_code: int, body: Any) -> SyncError:
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(body, list) and body and isinstance(body[0], dict):
        error = body[0].get("error")
    if not isinstance(error, dict):
        error = {}
    status = str(error.get("status") or "")
    message = str(error.get("message") or f"HTTP {status_code}")

    if status == "UNAUTHENTICATED" or status_code == 401:
        return AuthExpiredError(message, provider="google")
    if status == "RESOURCE_EXHAUSTED" or status_code == 429:
        return RateLimitedError(message, provider="google", retry_after=60.0)
    if status in ("UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED") or status_code >= 500:
        return TransientError(message, provider="google")
    return UnknownSyncError(f"Google Ads error {status or status_code}: {message}", provider="google")


def micros_to_units(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value) / MICROS
    except (TypeError, ValueError):
        return None


class GoogleAdsClient(UpstreamClient):
    provider = "google"

    def __init__(self, access_token: str, **kwargs):
        super().__init__(access_token, **kwargs)
        if not self.settings.google_ads_developer_token:
            raise RuntimeError("GOOGLE_ADS_DEVELOPER_TOKEN is not configured")
        self.base_url = f"{GOOGLE_ADS_URL}/{self.settings.google_ads_api_version}"

    @property
    def headers(self) -> dict[str, str]:
        h = {
            "Authorization": f"Bearer {self.access_token}",
            "developer-token": self.settings.google_ads_developer_token,
        }
        if self.settings.google_login_customer_id:
            h["login-customer-id"] = self.settings.google_login_customer_id.replace("-", "")
        return h

    def classify_error(self, status_code: int, body: Any) -> SyncError:
        return classify_google_error(status_code, body)

    async def fetch_page(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        cursor: Optional[str] = None,
        account: Optional[str] = None,
    ) -> Page:
        """`endpoint` is the customer id; `params` carries the GAQL `query`."""
        customer_id = endpoint.replace("-", "")
        payload = {"query": (params or {}).get("query", "")}
        if cursor:
            payload["pageToken"] = cursor
        body = await self.request(
            "POST",
            f"{self.base_url}/customers/{customer_id}/googleAds:search",
            account=account or customer_id,
            json=payload,
            headers=self.headers,
        )
        if not isinstance(body, dict):
            raise PayloadValidationError("Google Ads search returned a non-object body", provider="google")
        results = body.get("results", [])
        if not isinstance(results, list):
            raise PayloadValidationError("Google Ads results is not a list", provider="google")
        return Page(items=results, next_cursor=body.get("nextPageToken") or None)

    async def search(self, customer_id: str, query: str) -> list[dict]:
        return await self.fetch_all(customer_id, {"query": query}, account=customer_id.replace("-", ""))

    # ── Convenience Methods ──────────────────────────────────────────

    async def list_accessible_customers(self) -> list[str]:
        body = await self.request(
            "GET", f"{self.base_url}/customers:listAccessibleCustomers", headers=self.headers
        )
        names = body.get("resourceNames", []) if isinstance(body, dict) else []
        return [name.split("/")[-1] for name in names]

    async def get_customer(self, customer_id: str) -> dict:
        rows = await self.search(customer_id, CUSTOMER_QUERY)
        if not rows:
            raise PayloadValidationError(f"Google customer {customer_id} not found", provider="google")
        return rows[0]

    async def get_campaigns(self, customer_id: str) -> list[dict]:
        return await self.search(customer_id, CAMPAIGN_QUERY)

    async def get_ad_groups(self, customer_id: str) -> list[dict]:
        return await self.search(customer_id, AD_GROUP_QUERY)

    async def get_ads(self, customer_id: str) -> list[dict]:
        return await self.search(customer_id, AD_QUERY)

    async def get_insights(self, customer_id: str, level: str, since: date, until: date) -> list[dict]:
        if level not in INSIGHT_RESOURCES:
            raise ValueError(f"Unsupported insights level: {level}")
        resource, id_field = INSIGHT_RESOURCES[level]
        query = (
            f"SELECT {id_field}, {METRIC_FIELDS} FROM {resource} "
            f"WHERE segments.date BETWEEN '{since.isoformat()}' AND '{until.isoformat()}'"
        )
        return await self.search(customer_id, query)


def create_google_ads_client(
    access_token: str,
    http_client: Optional[httpx.AsyncClient] = None,
    limiter: Optional[RateLimiter] = None,
    settings: Optional[Settings] = None,
) -> GoogleAdsClient:
    """Factory function to create a Google Ads client instance."""
    return GoogleAdsClient(access_token, http_client=http_client, limiter=limiter, settings=settings)
