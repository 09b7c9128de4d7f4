"""
Normalization Service: provider payloads → typed EntityPayload.

Every raw upstream entity passes through here before it reaches the
reconciler. A payload that is not an object, or lacks an id or a name,
raises PayloadValidationError so the caller can skip just that entity.
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from adpulse.errors import PayloadValidationError
from adpulse.google_ads_client import micros_to_units
from adpulse.services.channel_service import (
    classify_ad_set_channel,
    classify_google_channel,
    classify_meta_ad_channel,
    classify_meta_campaign_channel,
)

logger = logging.getLogger(__name__)

META_ACCOUNT_STATUS = {
    1: "active",
    2: "disabled",
    3: "unsettled",
    7: "pending",
    8: "pending",
    9: "pending",
    100: "closed",
    101: "closed",
}

GOOGLE_CUSTOMER_STATUS = {
    "ENABLED": "active",
    "SUSPENDED": "disabled",
    "CANCELED": "closed",
    "CLOSED": "closed",
}


class EntityPayload(BaseModel):
    """One upstream entity, provider-neutral. `raw` keeps the untouched payload."""
    model_config = ConfigDict(extra="ignore")

    level: str
    provider: str
    external_id: str = Field(min_length=1)
    parent_external_id: Optional[str] = None
    name: str = Field(min_length=1)
    status: Optional[str] = None
    objective: Optional[str] = None
    channel: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    budget_amount: Optional[float] = None  # native currency, major units
    targeting: Optional[dict] = None
    creative: Optional[dict] = None
    raw: dict = Field(default_factory=dict)

    @field_validator("status", "objective")
    @classmethod
    def _lower(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if isinstance(v, str) else v

    @field_validator("currency")
    @classmethod
    def _upper(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if isinstance(v, str) else v


def _build(level: str, provider: str, raw: Any, **fields) -> EntityPayload:
    try:
        return EntityPayload(level=level, provider=provider, raw=raw, **fields)
    except ValidationError as e:
        ext = fields.get("external_id") or "<no id>"
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise PayloadValidationError(f"Invalid {provider} {level} {ext}: {problems}", provider=provider) from e


def _require_dict(raw: Any, level: str, provider: str) -> dict:
    if not isinstance(raw, dict):
        raise PayloadValidationError(
            f"{provider} {level} payload is {type(raw).__name__}, expected object", provider=provider
        )
    return raw


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def _meta_budget(raw: dict) -> Optional[float]:
    """Meta budgets are strings in minor units (cents)."""
    value = raw.get("daily_budget") or raw.get("lifetime_budget")
    if value in (None, "", "0"):
        return None
    try:
        return float(value) / 100
    except (TypeError, ValueError):
        raise PayloadValidationError(f"Meta budget {value!r} is not numeric", provider="meta")


# ══════════════════════════════════════════════════════════════════════
#  META
# ══════════════════════════════════════════════════════════════════════

def strip_act_prefix(ad_account_id: Any) -> str:
    value = str(ad_account_id or "")
    return value[4:] if value.startswith("act_") else value


def normalize_meta_ad_account(raw: Any) -> EntityPayload:
    raw = _require_dict(raw, "account", "meta")
    try:
        status_code = int(raw.get("account_status"))
    except (TypeError, ValueError):
        status_code = None
    return _build(
        "account", "meta", raw,
        external_id=strip_act_prefix(raw.get("account_id") or raw.get("id")),
        name=raw.get("name") or "",
        status=META_ACCOUNT_STATUS.get(status_code, "unknown"),
        currency=raw.get("currency"),
        timezone=raw.get("timezone_name"),
    )


def normalize_meta_campaign(raw: Any, ad_account_external_id: str) -> EntityPayload:
    raw = _require_dict(raw, "campaign", "meta")
    return _build(
        "campaign", "meta", raw,
        external_id=_str_or_none(raw.get("id")) or "",
        parent_external_id=ad_account_external_id,
        name=raw.get("name") or "",
        status=raw.get("status"),
        objective=raw.get("objective"),
        channel=classify_meta_campaign_channel(raw),
        budget_amount=_meta_budget(raw),
    )


def normalize_meta_ad_set(raw: Any) -> EntityPayload:
    raw = _require_dict(raw, "ad_group", "meta")
    targeting = raw.get("targeting") if isinstance(raw.get("targeting"), dict) else None
    return _build(
        "ad_group", "meta", raw,
        external_id=_str_or_none(raw.get("id")) or "",
        parent_external_id=_str_or_none(raw.get("campaign_id")),
        name=raw.get("name") or "",
        status=raw.get("status"),
        channel=classify_ad_set_channel(targeting),
        budget_amount=_meta_budget(raw),
        targeting=targeting,
    )


def normalize_meta_ad(raw: Any, parent_targeting: Optional[dict] = None) -> EntityPayload:
    raw = _require_dict(raw, "ad", "meta")
    creative = raw.get("creative") if isinstance(raw.get("creative"), dict) else None
    return _build(
        "ad", "meta", raw,
        external_id=_str_or_none(raw.get("id")) or "",
        parent_external_id=_str_or_none(raw.get("adset_id")),
        name=raw.get("name") or "",
        status=raw.get("status"),
        channel=classify_meta_ad_channel(creative, parent_targeting),
        creative=creative,
    )


# ══════════════════════════════════════════════════════════════════════
#  GOOGLE (REST rows, camelCase)
# ══════════════════════════════════════════════════════════════════════

def _section(row: dict, key: str) -> dict:
    value = row.get(key)
    return value if isinstance(value, dict) else {}


def normalize_google_customer(raw: Any) -> EntityPayload:
    raw = _require_dict(raw, "account", "google")
    customer = _section(raw, "customer")
    return _build(
        "account", "google", raw,
        external_id=_str_or_none(customer.get("id")) or "",
        name=customer.get("descriptiveName") or "",
        status=GOOGLE_CUSTOMER_STATUS.get(str(customer.get("status") or "").upper(), "unknown"),
        currency=customer.get("currencyCode"),
        timezone=customer.get("timeZone"),
    )


def normalize_google_campaign(raw: Any, customer_id: str) -> EntityPayload:
    raw = _require_dict(raw, "campaign", "google")
    campaign = _section(raw, "campaign")
    return _build(
        "campaign", "google", raw,
        external_id=_str_or_none(campaign.get("id")) or "",
        parent_external_id=customer_id,
        name=campaign.get("name") or "",
        status=campaign.get("status"),
        objective=campaign.get("advertisingChannelType"),
        channel=classify_google_channel(campaign.get("advertisingChannelType"), campaign.get("name")),
        budget_amount=micros_to_units(_section(raw, "campaignBudget").get("amountMicros")),
    )


def normalize_google_ad_group(raw: Any) -> EntityPayload:
    raw = _require_dict(raw, "ad_group", "google")
    ad_group = _section(raw, "adGroup")
    campaign = _section(raw, "campaign")
    return _build(
        "ad_group", "google", raw,
        external_id=_str_or_none(ad_group.get("id")) or "",
        parent_external_id=_str_or_none(campaign.get("id")),
        name=ad_group.get("name") or "",
        status=ad_group.get("status"),
        channel=classify_google_channel(campaign.get("advertisingChannelType")),
        budget_amount=None,
        targeting={"type": ad_group.get("type"), "cpc_bid": micros_to_units(ad_group.get("cpcBidMicros"))},
    )


def normalize_google_ad(raw: Any) -> EntityPayload:
    raw = _require_dict(raw, "ad", "google")
    ad_group_ad = _section(raw, "adGroupAd")
    ad = _section(ad_group_ad, "ad")
    ad_id = _str_or_none(ad.get("id")) or ""
    rsa = _section(ad, "responsiveSearchAd")
    creative = {
        "type": ad.get("type"),
        "final_urls": ad.get("finalUrls") or [],
        "headlines": [h.get("text") for h in rsa.get("headlines") or [] if isinstance(h, dict)],
        "descriptions": [d.get("text") for d in rsa.get("descriptions") or [] if isinstance(d, dict)],
    }
    # Most Google ad formats have no name of their own
    name = ad.get("name") or (f"{ad.get('type', 'Ad').title()} {ad_id}" if ad_id else "")
    return _build(
        "ad", "google", raw,
        external_id=ad_id,
        parent_external_id=_str_or_none(_section(raw, "adGroup").get("id")),
        name=name,
        status=ad_group_ad.get("status"),
        channel=classify_google_channel(_section(raw, "campaign").get("advertisingChannelType")),
        creative=creative,
    )
