"""Feature gate decisions over an entitlement snapshot."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..entitlements.models import EntitlementSnapshot, FeatureDefinition
from .exceptions import FeatureGateError

logger = logging.getLogger(__name__)


def find_feature(features: Iterable[FeatureDefinition], feature_key: str) -> Optional[FeatureDefinition]:
    """Return the catalog definition for ``feature_key`` if one is loaded."""

    for feature in features:
        if feature.feature_key == feature_key:
            return feature
    return None


def has_feature(snapshot: EntitlementSnapshot, feature_key: str) -> bool:
    """Decide whether the snapshot grants ``feature_key``.

    Provider-confirmed features win first. Keys missing from the catalog are
    allowed (fail-open), free features are always allowed, and premium
    features compare the current tier rank against the required tier rank.
    """

    entitlements = snapshot.entitlements
    if entitlements is not None and feature_key in entitlements.features:
        return True

    feature = find_feature(snapshot.features, feature_key)
    if feature is None:
        logger.debug("Feature %s not in catalog; allowing", feature_key)
        return True

    if not feature.is_premium:
        return True

    return snapshot.current_tier.rank >= feature.required_tier.rank


def require_feature(
    snapshot: EntitlementSnapshot,
    feature_key: str,
    *,
    error_code: str = "feature_locked",
    message: str | None = None,
) -> None:
    """Ensure the snapshot grants a feature before proceeding.

    Parameters
    ----------
    snapshot:
        The entitlement snapshot read from :class:`EntitlementStore`.
    feature_key:
        The catalog key of the gated feature.
    error_code:
        Optional override for the surfaced error code. Defaults to
        ``"feature_locked"``.
    message:
        Optional human-friendly message. If omitted, a default message
        mentioning the feature is used.
    """

    if has_feature(snapshot, feature_key):
        return

    feature = find_feature(snapshot.features, feature_key)
    # has_feature only denies premium features present in the catalog.
    assert feature is not None
    raise FeatureGateError(
        feature_key=feature_key,
        current_tier=snapshot.current_tier,
        required_tier=feature.required_tier,
        code=error_code,
        message=message,
    )
