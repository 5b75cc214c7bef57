"""API schemas for subscription entitlement endpoints."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import (
    EntitlementSnapshot,
    FeatureDefinition,
    StoreState,
    SubscriptionTier,
    TierDefinition,
    UserSubscriptionRecord,
)


class EntitlementsResponse(BaseModel):
    tier_name: SubscriptionTier = Field(alias="tierName")
    features: List[str]

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionStateResponse(BaseModel):
    user_id: str = Field(alias="userId")
    current_tier: SubscriptionTier = Field(alias="currentTier")
    state: StoreState
    loading: bool
    subscription: Optional[UserSubscriptionRecord] = None
    tiers: List[TierDefinition] = Field(default_factory=list)
    features: List[FeatureDefinition] = Field(default_factory=list)
    entitlements: Optional[EntitlementsResponse] = None
    active_entitlement_ids: List[str] = Field(alias="activeEntitlementIds", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_snapshot(
        cls,
        user_id: str,
        snapshot: EntitlementSnapshot,
        *,
        state: Optional[StoreState] = None,
    ) -> "SubscriptionStateResponse":
        entitlements = None
        if snapshot.entitlements is not None:
            entitlements = EntitlementsResponse(
                tier_name=snapshot.entitlements.tier_name,
                features=sorted(snapshot.entitlements.features),
            )
        active_ids: List[str] = []
        if snapshot.customer_info is not None:
            active_ids = sorted(snapshot.customer_info.active_entitlements)
        return cls(
            user_id=user_id,
            current_tier=snapshot.current_tier,
            state=state or snapshot.state,
            loading=snapshot.loading,
            subscription=snapshot.subscription,
            tiers=list(snapshot.tiers),
            features=list(snapshot.features),
            entitlements=entitlements,
            active_entitlement_ids=active_ids,
        )


class FeatureAccessResponse(BaseModel):
    feature_key: str = Field(alias="featureKey")
    allowed: bool
    current_tier: SubscriptionTier = Field(alias="currentTier")
    required_tier: Optional[SubscriptionTier] = Field(alias="requiredTier", default=None)

    model_config = ConfigDict(populate_by_name=True)


class RevenueCatWebhookPayload(BaseModel):
    api_version: Optional[str] = None
    event: Dict[str, Any]

    model_config = ConfigDict(populate_by_name=True)


class RegistryHealthResponse(BaseModel):
    status: str = "ok"
    stores: int
