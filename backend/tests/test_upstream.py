"""
Tests for the upstream fetcher and the Meta / Google Ads clients (httpx MockTransport).
"""

from datetime import date

import httpx
import pytest

from adpulse.config import Settings
from adpulse.errors import (
    AuthExpiredError,
    PayloadValidationError,
    RateLimitedError,
    TransientError,
    UnknownSyncError,
)
from adpulse.google_ads_client import classify_google_error, create_google_ads_client, micros_to_units
from adpulse.meta_client import act_id, classify_meta_error, create_meta_client
from adpulse.services.rate_limiter import RateLimiter


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        meta_requests_per_minute=1000,
        meta_requests_per_hour=10000,
        google_requests_per_minute=1000,
        google_requests_per_hour=10000,
        google_ads_developer_token="dev-token",
        upstream_max_pages=5,
    )


def _meta(handler, settings):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return create_meta_client("tok", http_client=http, limiter=RateLimiter(settings), settings=settings)


@pytest.mark.anyio
async def test_meta_fetch_all_follows_next_links(settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        if "after=c2" in str(request.url):
            return httpx.Response(200, json={"data": [{"id": "3"}], "paging": {}})
        if "after=c1" in str(request.url):
            return httpx.Response(200, json={
                "data": [{"id": "2"}],
                "paging": {"next": "https://graph.facebook.com/v21.0/act_1/campaigns?after=c2"},
            })
        return httpx.Response(200, json={
            "data": [{"id": "1"}],
            "paging": {"next": "https://graph.facebook.com/v21.0/act_1/campaigns?after=c1"},
        })

    client = _meta(handler, settings)
    campaigns = await client.get_campaigns("1")
    assert [c["id"] for c in campaigns] == ["1", "2", "3"]
    assert len(calls) == 3
    assert "/act_1/campaigns" in calls[0]
    assert "access_token=tok" in calls[0]


@pytest.mark.anyio
async def test_meta_pagination_cap_raises_transient(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "data": [{"id": "x"}],
            "paging": {"next": "https://graph.facebook.com/v21.0/act_1/ads?after=again"},
        })

    client = _meta(handler, settings)
    with pytest.raises(TransientError, match="exceeded 5 pages"):
        await client.get_ads("act_1")


@pytest.mark.anyio
async def test_meta_expired_token_maps_to_auth_expired(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={
            "error": {"message": "Error validating access token: Session has expired", "code": 190, "error_subcode": 463},
        })

    client = _meta(handler, settings)
    with pytest.raises(AuthExpiredError) as exc_info:
        await client.get_ad_accounts()
    assert exc_info.value.retryable is False


@pytest.mark.anyio
async def test_meta_missing_data_list_is_validation_error(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": "not-a-list"})

    client = _meta(handler, settings)
    with pytest.raises(PayloadValidationError):
        await client.get_campaigns("1")


@pytest.mark.anyio
async def test_network_error_is_transient(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    client = _meta(handler, settings)
    with pytest.raises(TransientError):
        await client.get_campaigns("1")


@pytest.mark.anyio
async def test_requests_consume_the_account_bucket(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": []})

    tight = settings.model_copy(update={"meta_requests_per_minute": 1})
    client = _meta(handler, tight)
    await client.get_campaigns("1")
    with pytest.raises(RateLimitedError):
        await client.get_campaigns("1")


@pytest.mark.anyio
async def test_meta_insights_request_shape(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json={"data": [{"campaign_id": "9", "date_start": "2024-01-01"}]})

    client = _meta(handler, settings)
    rows = await client.get_insights("1", "campaign", date(2024, 1, 1), date(2024, 1, 7))
    assert rows[0]["campaign_id"] == "9"
    assert seen["level"] == "campaign"
    assert seen["time_increment"] == "1"
    assert '"since":"2024-01-01"' in seen["time_range"]

    with pytest.raises(ValueError):
        await client.get_insights("1", "keyword", date(2024, 1, 1), date(2024, 1, 7))


def test_classify_meta_error_codes():
    assert isinstance(classify_meta_error(400, {"error": {"code": 17, "message": "User request limit reached"}}), RateLimitedError)
    assert isinstance(classify_meta_error(429, {}), RateLimitedError)
    assert isinstance(classify_meta_error(500, {"error": {"code": 2}}), TransientError)
    assert isinstance(classify_meta_error(400, {"error": {"code": 100, "message": "Invalid parameter"}}), UnknownSyncError)


def test_act_id_is_idempotent():
    assert act_id("123") == "act_123"
    assert act_id("act_123") == "act_123"


@pytest.mark.anyio
async def test_google_search_paginates_with_page_token(settings):
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        import json
        payload = json.loads(request.content)
        bodies.append(payload)
        assert request.headers["developer-token"] == "dev-token"
        assert request.url.path.endswith("/customers/1234567890/googleAds:search")
        if payload.get("pageToken") == "p2":
            return httpx.Response(200, json={"results": [{"campaign": {"id": "2"}}]})
        return httpx.Response(200, json={"results": [{"campaign": {"id": "1"}}], "nextPageToken": "p2"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = create_google_ads_client("tok", http_client=http, limiter=RateLimiter(settings), settings=settings)
    rows = await client.get_campaigns("123-456-7890")
    assert [r["campaign"]["id"] for r in rows] == ["1", "2"]
    assert "pageToken" not in bodies[0]


def test_google_client_requires_developer_token():
    with pytest.raises(RuntimeError, match="GOOGLE_ADS_DEVELOPER_TOKEN"):
        create_google_ads_client("tok", settings=Settings(google_ads_developer_token=""))


def test_classify_google_error_statuses():
    assert isinstance(classify_google_error(401, {"error": {"status": "UNAUTHENTICATED"}}), AuthExpiredError)
    assert isinstance(classify_google_error(429, [{"error": {"status": "RESOURCE_EXHAUSTED"}}]), RateLimitedError)
    assert isinstance(classify_google_error(503, {}), TransientError)
    assert isinstance(classify_google_error(400, {"error": {"status": "INVALID_ARGUMENT"}}), UnknownSyncError)


def test_micros_to_units():
    assert micros_to_units("2500000") == 2.5
    assert micros_to_units(None) is None
    assert micros_to_units("abc") is None
