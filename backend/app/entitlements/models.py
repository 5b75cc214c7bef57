"""Domain models for subscription tiers, provider snapshots and entitlements."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)


class SubscriptionTier(str, Enum):
    """Canonical subscription tiers, declared in ascending rank."""

    FREE = "free"
    IHSAN = "ihsan"
    IMAN = "iman"

    @property
    def rank(self) -> int:
        return _ORDERED_TIERS.index(self)

    @classmethod
    def lookup(cls, value: object) -> Optional["SubscriptionTier"]:
        """Return the tier named by ``value`` or ``None`` when unrecognized.

        Matching is case-insensitive and accepts the legacy names in
        :data:`TIER_NAMES`.
        """

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return TIER_NAMES.get(value.strip().lower())
        return None

    @classmethod
    def highest(cls) -> "SubscriptionTier":
        return _ORDERED_TIERS[-1]


_ORDERED_TIERS: Tuple[SubscriptionTier, ...] = tuple(SubscriptionTier)

# Canonical and legacy tier names, also used as provider entitlement ids.
TIER_NAMES: Dict[str, SubscriptionTier] = {
    "free": SubscriptionTier.FREE,
    "ihsan": SubscriptionTier.IHSAN,
    "premium": SubscriptionTier.IHSAN,
    "iman": SubscriptionTier.IMAN,
    "ultra": SubscriptionTier.IMAN,
    "super_ultra": SubscriptionTier.IMAN,
    "iman_lifetime": SubscriptionTier.IMAN,
}


def _coerce_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp, returning ``None`` when absent."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _coerce_utc(value)
    if isinstance(value, str):
        try:
            return _coerce_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


class TierDefinition(BaseModel):
    """Catalog row describing a purchasable tier."""

    id: str
    name: SubscriptionTier
    display_name: str
    description: str = ""
    price_monthly: Optional[float] = None
    price_yearly: Optional[float] = None
    price_lifetime: Optional[float] = None
    features: Tuple[str, ...] = Field(default_factory=tuple)
    sort_order: int = 0
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> str:
        return str(value)

    @field_validator("name", mode="before")
    @classmethod
    def _resolve_name(cls, value: object) -> object:
        return SubscriptionTier.lookup(value) or value

    @field_validator("features", mode="before")
    @classmethod
    def _default_features(cls, value: object) -> object:
        return () if value is None else value


class FeatureDefinition(BaseModel):
    """Catalog row describing a gated feature."""

    feature_key: str
    feature_name: str
    description: str = ""
    category: str = "general"
    is_premium: bool = False
    required_tier: SubscriptionTier = Field(default=None, validate_default=True)

    model_config = ConfigDict(frozen=True)

    @field_validator("feature_key")
    @classmethod
    def _validate_feature_key(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("feature_key must not be empty")
        return value

    @field_validator("required_tier", mode="before")
    @classmethod
    def _resolve_required_tier(cls, value: object, info: ValidationInfo) -> SubscriptionTier:
        tier = SubscriptionTier.lookup(value)
        if tier is not None:
            return tier
        if not info.data.get("is_premium", False):
            return SubscriptionTier.FREE
        # Premium rows never become free; an unknown tier locks to the top tier.
        logger.warning(
            "Unknown required_tier %r for premium feature %s; requiring %s",
            value,
            info.data.get("feature_key"),
            SubscriptionTier.highest().value,
        )
        return SubscriptionTier.highest()


class UserSubscriptionRecord(BaseModel):
    """Display-only record of the user's subscription row."""

    id: str
    user_id: str
    tier_id: str
    status: str
    billing_cycle: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    auto_renew: bool = False

    model_config = ConfigDict(frozen=True)

    @field_validator("id", "user_id", "tier_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: object) -> str:
        return str(value)


class EntitlementInfo(BaseModel):
    """A single entitlement as reported by the billing provider."""

    identifier: str
    product_identifier: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expires_date: Optional[datetime] = None
    grace_period_expires_date: Optional[datetime] = None
    period_type: str = "normal"
    store: Optional[str] = None
    is_sandbox: bool = False
    will_renew: bool = False
    billing_issue_detected_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator(
        "purchase_date",
        "expires_date",
        "grace_period_expires_date",
        "billing_issue_detected_at",
        mode="before",
    )
    @classmethod
    def _parse_dates(cls, value: object) -> Optional[datetime]:
        return parse_timestamp(value)

    @property
    def is_lifetime(self) -> bool:
        return self.expires_date is None

    @property
    def is_trial(self) -> bool:
        return self.period_type.lower() == "trial"

    def in_grace_period(self, now: datetime) -> bool:
        if self.grace_period_expires_date is None or self.expires_date is None:
            return False
        return self.expires_date <= now < self.grace_period_expires_date

    def is_active(self, now: datetime) -> bool:
        if self.expires_date is None or self.expires_date > now:
            return True
        return self.in_grace_period(now)


class CustomerInfo(BaseModel):
    """Provider-owned snapshot of what the user has paid for."""

    app_user_id: str
    active_entitlements: Dict[str, EntitlementInfo] = Field(default_factory=dict)
    all_entitlement_ids: Tuple[str, ...] = Field(default_factory=tuple)
    request_date: Optional[datetime] = None
    management_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def empty(cls, app_user_id: str = "") -> "CustomerInfo":
        return cls(app_user_id=app_user_id, request_date=datetime.now(timezone.utc))

    @classmethod
    def from_subscriber_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        app_user_id: str,
        now: Optional[datetime] = None,
    ) -> "CustomerInfo":
        """Build a snapshot from a ``GET /subscribers/{id}`` response body."""

        subscriber = payload.get("subscriber")
        if not isinstance(subscriber, Mapping):
            raise ValueError("Subscriber payload is missing the 'subscriber' object")

        request_date = parse_timestamp(payload.get("request_date"))
        reference = _coerce_utc(now) or request_date or datetime.now(timezone.utc)
        subscriptions = subscriber.get("subscriptions") or {}
        raw_entitlements = subscriber.get("entitlements") or {}

        active: Dict[str, EntitlementInfo] = {}
        for identifier, raw in raw_entitlements.items():
            raw = raw or {}
            product_id = raw.get("product_identifier")
            subscription = subscriptions.get(product_id) or {}
            expires_date = raw.get("expires_date")
            billing_issue = subscription.get("billing_issues_detected_at")
            info = EntitlementInfo(
                identifier=identifier,
                product_identifier=product_id,
                purchase_date=raw.get("purchase_date"),
                expires_date=expires_date,
                grace_period_expires_date=raw.get("grace_period_expires_date"),
                period_type=subscription.get("period_type") or "normal",
                store=subscription.get("store"),
                is_sandbox=bool(subscription.get("is_sandbox", False)),
                will_renew=(
                    expires_date is not None
                    and subscription.get("unsubscribe_detected_at") is None
                    and billing_issue is None
                ),
                billing_issue_detected_at=billing_issue,
            )
            if info.is_active(reference):
                active[identifier] = info

        return cls(
            app_user_id=str(subscriber.get("original_app_user_id") or app_user_id),
            active_entitlements=active,
            all_entitlement_ids=tuple(raw_entitlements.keys()),
            request_date=request_date,
            management_url=subscriber.get("management_url"),
        )

    @property
    def has_billing_issue(self) -> bool:
        return any(
            entitlement.billing_issue_detected_at is not None
            for entitlement in self.active_entitlements.values()
        )


class Entitlements(BaseModel):
    """Capabilities derived from the latest customer info snapshot."""

    tier_name: SubscriptionTier
    features: FrozenSet[str] = Field(default_factory=frozenset)
    expires_at: Optional[datetime] = None
    is_lifetime: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def has_access(self) -> bool:
        return self.tier_name != SubscriptionTier.FREE


class SubscriptionStatusSummary(BaseModel):
    """Display-oriented summary of the provider state."""

    tier: SubscriptionTier
    is_active: bool
    expires_at: Optional[datetime] = None
    will_renew: bool = False
    is_lifetime: bool = False
    in_grace_period: bool = False
    has_billing_issue: bool = False

    model_config = ConfigDict(frozen=True)


class StoreState(str, Enum):
    """Lifecycle of an entitlement store."""

    UNINIT = "uninit"
    LOADING = "loading"
    READY = "ready"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Immutable view of everything consumers may read from the store."""

    current_tier: SubscriptionTier = SubscriptionTier.FREE
    entitlements: Optional[Entitlements] = None
    customer_info: Optional[CustomerInfo] = None
    subscription: Optional[UserSubscriptionRecord] = None
    tiers: Tuple[TierDefinition, ...] = field(default_factory=tuple)
    features: Tuple[FeatureDefinition, ...] = field(default_factory=tuple)
    loading: bool = True
    state: StoreState = StoreState.UNINIT
