"""Static tier bundles and provider entitlement mapping."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional, Tuple

from .models import (
    CustomerInfo,
    EntitlementInfo,
    Entitlements,
    SubscriptionStatusSummary,
    SubscriptionTier,
    TIER_NAMES,
)


@dataclass(frozen=True)
class TierBundle:
    """Describes the features unlocked by a tier, including lower tiers."""

    tier: SubscriptionTier
    display_name: str
    features: FrozenSet[str]
    entitlement_ids: Tuple[str, ...] = ()

    def includes(self, feature_key: str) -> bool:
        return feature_key in self.features


FREE_FEATURES: FrozenSet[str] = frozenset(
    {
        "prayer_times",
        "qibla_compass",
        "quran_reader",
        "basic_notifications",
    }
)

IHSAN_FEATURES: FrozenSet[str] = FREE_FEATURES | {
    "adhan_player",
    "ar_qibla",
    "dua_library",
    "islamic_calendar",
    "mosque_finder",
    "prayer_stats",
    "custom_notifications",
}

IMAN_FEATURES: FrozenSet[str] = IHSAN_FEATURES | {
    "verse_of_day",
    "daily_hadith",
    "ai_chatbot",
    "sadaqah_tracker",
    "tasbih_counter",
    "quran_memorization",
    "night_reading",
}


def _names_for(tier: SubscriptionTier) -> Tuple[str, ...]:
    return tuple(name for name, named in TIER_NAMES.items() if named is tier)


TIER_BUNDLES: Dict[SubscriptionTier, TierBundle] = {
    SubscriptionTier.FREE: TierBundle(
        tier=SubscriptionTier.FREE,
        display_name="Basic",
        features=FREE_FEATURES,
    ),
    SubscriptionTier.IHSAN: TierBundle(
        tier=SubscriptionTier.IHSAN,
        display_name="Ihsan - Excellence",
        features=IHSAN_FEATURES,
        entitlement_ids=_names_for(SubscriptionTier.IHSAN),
    ),
    SubscriptionTier.IMAN: TierBundle(
        tier=SubscriptionTier.IMAN,
        display_name="Iman - Faith",
        features=IMAN_FEATURES,
        entitlement_ids=_names_for(SubscriptionTier.IMAN),
    ),
}

ENTITLEMENT_TIERS: Dict[str, SubscriptionTier] = {
    entitlement_id: bundle.tier
    for bundle in TIER_BUNDLES.values()
    for entitlement_id in bundle.entitlement_ids
}


def get_tier_bundle(tier: SubscriptionTier) -> TierBundle:
    """Return the bundle for a tier, raising if unsupported."""

    try:
        return TIER_BUNDLES[tier]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown tier: {tier}") from exc


def tier_for_entitlement(entitlement_id: str) -> Optional[SubscriptionTier]:
    return ENTITLEMENT_TIERS.get(entitlement_id.strip().lower())


def _highest_entitlement(customer_info: CustomerInfo) -> Optional[Tuple[SubscriptionTier, EntitlementInfo]]:
    best: Optional[Tuple[SubscriptionTier, EntitlementInfo]] = None
    for identifier, entitlement in customer_info.active_entitlements.items():
        tier = tier_for_entitlement(identifier)
        if tier is None:
            continue
        if best is None or tier.rank > best[0].rank:
            best = (tier, entitlement)
    return best


def resolve_entitlements(customer_info: CustomerInfo) -> Entitlements:
    """Derive entitlements from the highest recognized active entitlement.

    Unrecognized entitlement identifiers are ignored, so a snapshot that only
    carries unknown identifiers resolves to the free tier.
    """

    best = _highest_entitlement(customer_info)
    if best is None:
        return Entitlements(tier_name=SubscriptionTier.FREE, features=FREE_FEATURES)

    tier, entitlement = best
    return Entitlements(
        tier_name=tier,
        features=get_tier_bundle(tier).features,
        expires_at=entitlement.expires_date,
        is_lifetime=entitlement.is_lifetime,
    )


def summarize_customer_info(
    customer_info: CustomerInfo,
    *,
    now: Optional[datetime] = None,
) -> SubscriptionStatusSummary:
    """Summarize a provider snapshot for display purposes."""

    reference = now or datetime.now(timezone.utc)
    best = _highest_entitlement(customer_info)
    if best is None:
        return SubscriptionStatusSummary(tier=SubscriptionTier.FREE, is_active=False)

    tier, entitlement = best
    return SubscriptionStatusSummary(
        tier=tier,
        is_active=True,
        expires_at=entitlement.expires_date,
        will_renew=any(e.will_renew for e in customer_info.active_entitlements.values()),
        is_lifetime=entitlement.is_lifetime,
        in_grace_period=entitlement.in_grace_period(reference),
        has_billing_issue=customer_info.has_billing_issue,
    )
