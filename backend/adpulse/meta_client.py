"""
Meta Graph API Client
Cursor-paginated reads of ad accounts, campaigns, ad sets, ads and daily insights.
Responses are either {data: [...], paging: {next}} or {error: {message, code, error_subcode}}.
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

# ── Field lists ───────────────────────────────────────────────────────
AD_ACCOUNT_FIELDS = "id,account_id,name,currency,timezone_name,account_status"
CAMPAIGN_FIELDS = "id,name,status,effective_status,objective,daily_budget,lifetime_budget,created_time,updated_time"
AD_SET_FIELDS = (
    "id,name,status,effective_status,campaign_id,daily_budget,lifetime_budget,"
    "targeting,optimization_goal,billing_event,created_time,updated_time"
)
AD_FIELDS = (
    "id,name,status,effective_status,adset_id,campaign_id,"
    "creative{id,name,title,body,image_url,image_hash,thumbnail_url,video_id,"
    "object_story_spec,asset_feed_spec,call_to_action_type}"
)
INSIGHT_FIELDS = (
    "account_id,campaign_id,adset_id,ad_id,date_start,date_stop,"
    "impressions,clicks,spend,cpc,cpm,ctr,reach,frequency,actions,"
    "video_p25_watched_actions,video_p50_watched_actions,"
    "video_p75_watched_actions,video_p100_watched_actions,"
    "quality_ranking,engagement_rate_ranking,conversion_rate_ranking,account_currency"
)
INSIGHT_LEVELS = ("account", "campaign", "adset", "ad")

# ── Error codes ───────────────────────────────────────────────────────
TOKEN_EXPIRED_CODE = 190
TOKEN_EXPIRED_SUBCODES = {463, 467}
TOKEN_EXPIRED_MESSAGES = ("Session has expired", "Error validating access token")
RATE_LIMIT_CODES = {4, 17, 32, 613} | set(range(80000, 80015))
TRANSIENT_CODES = {1, 2}


def act_id(ad_account_id: str) -> str:
    """Graph API addresses ad accounts as act_<id>."""
    ad_account_id = str(ad_account_id)
    return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"


def classify_meta_error(status_code: int, body: Any) -> SyncError:
    """
    Map a Graph API error to the sync taxonomy.
    Token expiry is detected from code/subcode/message, never from HTTP status alone.
    """
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    message = str(error.get("message") or f"HTTP {status_code}")
    code = error.get("code")
    subcode = error.get("error_subcode")

    if (
        code == TOKEN_EXPIRED_CODE
        or subcode in TOKEN_EXPIRED_SUBCODES
        or any(m in message for m in TOKEN_EXPIRED_MESSAGES)
    ):
        return AuthExpiredError(message, provider="meta")
    if code in RATE_LIMIT_CODES or status_code == 429:
        return RateLimitedError(message, provider="meta", retry_after=60.0)
    if code in TRANSIENT_CODES or status_code >= 500 or error.get("is_transient"):
        return TransientError(message, provider="meta")
    return UnknownSyncError(f"Meta API error {code}/{subcode}: {message}", provider="meta")


class MetaGraphClient(UpstreamClient):
    provider = "meta"

    def __init__(self, access_token: str, **kwargs):
        super().__init__(access_token, **kwargs)
        self.base_url = f"{self.settings.meta_graph_url.rstrip('/')}/{self.settings.meta_api_version}"

    def classify_error(self, status_code: int, body: Any) -> SyncError:
        return classify_meta_error(status_code, body)

    async def fetch_page(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        cursor: Optional[str] = None,
        account: Optional[str] = None,
    ) -> Page:
        # paging.next is an absolute URL that already carries every query parameter
        if cursor:
            body = await self.request("GET", cursor, account=account)
        else:
            query = {"limit": self.settings.meta_page_limit, **(params or {})}
            query["access_token"] = self.access_token
            body = await self.request("GET", f"{self.base_url}/{endpoint.lstrip('/')}", account=account, params=query)

        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise PayloadValidationError(f"Meta response for {endpoint} has no data list", provider="meta")
        paging = body.get("paging") or {}
        return Page(items=body["data"], next_cursor=paging.get("next") or None)

    async def get_object(self, object_id: str, fields: str, account: Optional[str] = None) -> dict:
        body = await self.request(
            "GET",
            f"{self.base_url}/{object_id}",
            account=account,
            params={"fields": fields, "access_token": self.access_token},
        )
        if not isinstance(body, dict) or "id" not in body:
            raise PayloadValidationError(f"Meta object {object_id} has no id", provider="meta")
        return body

    # ── Convenience Methods ──────────────────────────────────────────

    async def test_connection(self) -> dict:
        me = await self.request(
            "GET", f"{self.base_url}/me", params={"fields": "id,name", "access_token": self.access_token}
        )
        return {"status": "connected", "user_id": me.get("id"), "name": me.get("name")}

    async def get_ad_accounts(self) -> list[dict]:
        """Ad accounts visible to the token's user."""
        return await self.fetch_all("me/adaccounts", {"fields": AD_ACCOUNT_FIELDS})

    async def get_ad_account(self, ad_account_id: str) -> dict:
        act = act_id(ad_account_id)
        return await self.get_object(act, AD_ACCOUNT_FIELDS, account=act)

    async def get_campaigns(self, ad_account_id: str) -> list[dict]:
        act = act_id(ad_account_id)
        return await self.fetch_all(f"{act}/campaigns", {"fields": CAMPAIGN_FIELDS}, account=act)

    async def get_ad_sets(self, ad_account_id: str) -> list[dict]:
        act = act_id(ad_account_id)
        return await self.fetch_all(f"{act}/adsets", {"fields": AD_SET_FIELDS}, account=act)

    async def get_ads(self, ad_account_id: str) -> list[dict]:
        act = act_id(ad_account_id)
        return await self.fetch_all(f"{act}/ads", {"fields": AD_FIELDS}, account=act)

    async def get_insights(self, ad_account_id: str, level: str, since: date, until: date) -> list[dict]:
        """Daily insight rows (time_increment=1) for one level over an inclusive range."""
        if level not in INSIGHT_LEVELS:
            raise ValueError(f"Unsupported insights level: {level}")
        act = act_id(ad_account_id)
        params = {
            "fields": INSIGHT_FIELDS,
            "level": level,
            "time_increment": "1",
            "time_range": f'{{"since":"{since.isoformat()}","until":"{until.isoformat()}"}}',
        }
        return await self.fetch_all(f"{act}/insights", params, account=act)


def create_meta_client(
    access_token: str,
    http_client: Optional[httpx.AsyncClient] = None,
    limiter: Optional[RateLimiter] = None,
    settings: Optional[Settings] = None,
) -> MetaGraphClient:
    """Factory function to create a Meta Graph client instance."""
    return MetaGraphClient(access_token, http_client=http_client, limiter=limiter, settings=settings)
