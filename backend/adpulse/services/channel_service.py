"""
Channel classification: which sub-platform an entity effectively targets.

Pure functions over the raw upstream payload; the same input always yields
the same channel.
"""

from typing import Any

# Highest priority first
AD_CHANNEL_PRIORITY = ("instagram", "facebook", "messenger", "threads", "whatsapp")

GOOGLE_CHANNEL_TYPES = {
    "SEARCH": "google_search",
    "DISPLAY": "google_display",
    "SHOPPING": "google_shopping",
    "VIDEO": "youtube",
    "PERFORMANCE_MAX": "performance_max",
}

CHANNEL_DISPLAY_NAMES = {
    "facebook": "Facebook",
    "instagram": "Instagram",
    "messenger": "Messenger",
    "threads": "Threads",
    "whatsapp": "WhatsApp",
    "google_search": "Google Search",
    "google_display": "Google Display",
    "google_shopping": "Google Shopping",
    "youtube": "YouTube",
    "performance_max": "Performance Max",
}


def _platforms(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(p).lower() for p in value if p]


def publisher_platforms(targeting: Any) -> list[str]:
    if not isinstance(targeting, dict):
        return []
    return _platforms(targeting.get("publisher_platforms"))


def _creative_platforms(creative: Any) -> list[str]:
    """Platforms hinted by an ad creative's story spec or asset feed."""
    if not isinstance(creative, dict):
        return []
    found: list[str] = []

    story = creative.get("object_story_spec")
    if isinstance(story, dict):
        if story.get("instagram_actor_id") or story.get("instagram_user_id"):
            found.append("instagram")
        link_data = story.get("link_data")
        if isinstance(link_data, dict):
            found.extend(_platforms(link_data.get("publisher_platforms")))
            cta = link_data.get("call_to_action")
            if isinstance(cta, dict):
                cta_type = str(cta.get("type") or "").upper()
                if "MESSENGER" in cta_type or cta_type == "MESSAGE_PAGE":
                    found.append("messenger")
                elif "WHATSAPP" in cta_type:
                    found.append("whatsapp")
        if story.get("page_id"):
            found.append("facebook")

    feed = creative.get("asset_feed_spec")
    if isinstance(feed, dict):
        found.extend(_platforms(feed.get("publisher_platforms")))
        for rule in feed.get("asset_customization_rules") or []:
            spec = rule.get("customization_spec") if isinstance(rule, dict) else None
            if isinstance(spec, dict):
                found.extend(_platforms(spec.get("publisher_platforms")))

    return found


def classify_ad_set_channel(targeting: Any) -> str:
    platforms = publisher_platforms(targeting)
    if platforms == ["instagram"]:
        return "instagram"
    if "facebook" in platforms and "instagram" in platforms:
        return "facebook"
    if "messenger" in platforms:
        return "messenger"
    if len(platforms) == 1 and platforms[0] in AD_CHANNEL_PRIORITY:
        return platforms[0]
    return "facebook"


def classify_meta_ad_channel(creative: Any, targeting: Any = None) -> str:
    """Highest-priority platform found in the creative, then the parent ad set's targeting."""
    platforms = set(_creative_platforms(creative)) or set(publisher_platforms(targeting))
    for channel in AD_CHANNEL_PRIORITY:
        if channel in platforms:
            return channel
    return "facebook"


def classify_meta_campaign_channel(raw: dict) -> str:
    platforms = publisher_platforms(raw.get("targeting"))
    if platforms:
        return classify_ad_set_channel(raw.get("targeting"))
    if "INSTAGRAM" in str(raw.get("objective") or "").upper():
        return "instagram"
    return "facebook"


def classify_google_channel(channel_type: Any, name: Any = None) -> str:
    mapped = GOOGLE_CHANNEL_TYPES.get(str(channel_type or "").upper())
    if mapped:
        return mapped
    lowered = str(name or "").lower()
    if "youtube" in lowered or "video" in lowered:
        return "youtube"
    if "shopping" in lowered:
        return "google_shopping"
    if "display" in lowered:
        return "google_display"
    return "google_search"


def platform_for_channel(channel: str) -> str:
    if channel in GOOGLE_CHANNEL_TYPES.values():
        return "google"
    if channel in AD_CHANNEL_PRIORITY:
        return "meta"
    return channel
