"""Convenience wrapper around entitlement snapshots for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..entitlements.models import (
    EntitlementSnapshot,
    FeatureDefinition,
    SubscriptionTier,
)
from .enforcement import find_feature, has_feature, require_feature


@dataclass(frozen=True)
class EntitlementContext:
    """Facade exposing gating-centric helpers for a user's snapshot."""

    snapshot: EntitlementSnapshot

    @property
    def tier(self) -> SubscriptionTier:
        return self.snapshot.current_tier

    def has(self, feature_key: str) -> bool:
        """Return whether the snapshot grants the feature."""

        return has_feature(self.snapshot, feature_key)

    def require(self, feature_key: str, *, error_code: str = "feature_locked") -> None:
        """Ensure a feature is granted, raising :class:`FeatureGateError` otherwise."""

        require_feature(self.snapshot, feature_key, error_code=error_code)

    def feature(self, feature_key: str) -> Optional[FeatureDefinition]:
        return find_feature(self.snapshot.features, feature_key)
