"""
Plan catalog configuration.

Single source of truth for tiers: which track a tier belongs to, which
capabilities it grants, its monthly limits and its provider price id.
-1 means unlimited for a limit.
"""
from typing import Dict, FrozenSet, List, Optional

from app.core import config

INTERVIEW_TRACK = "interview"
RESUME_TRACK = "resume"
TRACKS: List[str] = [INTERVIEW_TRACK, RESUME_TRACK]

# Capabilities
INTERVIEWS = "interviews"
RESUME = "resume"
UNLIMITED_INTERVIEWS = "unlimited_interviews"

FREE_TIER = "free"

TIER_TABLE: Dict[str, Dict] = {
    "free": {
        "track": INTERVIEW_TRACK,
        "display_name": "Free",
        "capabilities": frozenset({INTERVIEWS}),
        "standard_interviews": 1,
        "advanced_interviews": 1,
        "max_resumes": 1,
        "base": True,
    },
    "bronze": {
        "track": INTERVIEW_TRACK,
        "display_name": "Bronze",
        "capabilities": frozenset({INTERVIEWS}),
        "standard_interviews": 1,
        "advanced_interviews": 1,
        "max_resumes": 3,
        "base": True,
    },
    "gold": {
        "track": INTERVIEW_TRACK,
        "display_name": "Gold",
        "capabilities": frozenset({INTERVIEWS, RESUME}),
        "standard_interviews": 30,
        "advanced_interviews": 21,
        "max_resumes": 15,
        "base": False,
    },
    "diamond": {
        "track": INTERVIEW_TRACK,
        "display_name": "Diamond",
        "capabilities": frozenset({INTERVIEWS, RESUME, UNLIMITED_INTERVIEWS}),
        "standard_interviews": -1,
        "advanced_interviews": -1,
        "max_resumes": 50,
        "base": False,
    },
    "megastar": {
        "track": INTERVIEW_TRACK,
        "display_name": "Megastar",
        "capabilities": frozenset({INTERVIEWS, RESUME, UNLIMITED_INTERVIEWS}),
        "standard_interviews": -1,
        "advanced_interviews": -1,
        "max_resumes": -1,
        "base": False,
    },
    "resume_basic": {
        "track": RESUME_TRACK,
        "display_name": "Resume Basic",
        "capabilities": frozenset({RESUME}),
        "standard_interviews": 0,
        "advanced_interviews": 0,
        "max_resumes": 15,
        "base": False,
    },
    "resume_premium": {
        "track": RESUME_TRACK,
        "display_name": "Resume Premium",
        "capabilities": frozenset({RESUME}),
        "standard_interviews": 0,
        "advanced_interviews": 0,
        "max_resumes": 50,
        "base": False,
    },
}

PRICE_IDS: Dict[str, Optional[str]] = {
    "bronze": config.STRIPE_PRICE_ID_BRONZE,
    "gold": config.STRIPE_PRICE_ID_GOLD,
    "diamond": config.STRIPE_PRICE_ID_DIAMOND,
    "megastar": config.STRIPE_PRICE_ID_MEGASTAR,
    "resume_basic": config.STRIPE_PRICE_ID_RESUME_BASIC,
    "resume_premium": config.STRIPE_PRICE_ID_RESUME_PREMIUM,
}


def _normalize(tier: Optional[str]) -> str:
    return (tier or FREE_TIER).lower()


def is_known_tier(tier: Optional[str]) -> bool:
    return _normalize(tier) in TIER_TABLE


def get_capabilities(tier: Optional[str]) -> FrozenSet[str]:
    """Capability set for a tier; unknown tiers grant nothing."""
    entry = TIER_TABLE.get(_normalize(tier))
    return entry["capabilities"] if entry else frozenset()


def has_capability(tier: Optional[str], capability: str) -> bool:
    return capability in get_capabilities(tier)


def is_free_tier(tier: Optional[str]) -> bool:
    """Free and base tiers never count as a paid entitlement."""
    entry = TIER_TABLE.get(_normalize(tier))
    return entry is None or entry["base"]


def bundled_tiers() -> FrozenSet[str]:
    """Interview-track tiers whose feature set already includes resume capability."""
    return frozenset(
        tier for tier, entry in TIER_TABLE.items()
        if entry["track"] == INTERVIEW_TRACK and RESUME in entry["capabilities"]
    )


def is_bundled_tier(tier: Optional[str]) -> bool:
    return _normalize(tier) in bundled_tiers()


def track_for_tier(tier: str) -> Optional[str]:
    entry = TIER_TABLE.get(_normalize(tier))
    return entry["track"] if entry else None


def display_name(tier: Optional[str]) -> str:
    entry = TIER_TABLE.get(_normalize(tier))
    return entry["display_name"] if entry else _normalize(tier).replace("_", " ").title()


def get_tier_limits(tier: Optional[str]) -> Dict[str, int]:
    """Monthly limits for a tier, falling back to the free tier."""
    entry = TIER_TABLE.get(_normalize(tier), TIER_TABLE[FREE_TIER])
    return {
        "standard_interviews": entry["standard_interviews"],
        "advanced_interviews": entry["advanced_interviews"],
        "max_resumes": entry["max_resumes"],
    }


def get_price_id(tier: str) -> Optional[str]:
    """
    Get the provider price id for a tier.

    Returns None for unknown tiers, unpriced tiers and placeholder values.
    """
    price_id = PRICE_IDS.get(_normalize(tier))
    if not price_id or price_id.startswith("price_your_"):
        return None
    return price_id


def get_tier_from_price_id(price_id: Optional[str]) -> Optional[str]:
    if not price_id:
        return None
    for tier, candidate in PRICE_IDS.items():
        if candidate and candidate == price_id:
            return tier
    return None
