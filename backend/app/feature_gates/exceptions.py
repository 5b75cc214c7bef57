"""Errors raised when a tier does not unlock a gated feature."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status

from ..entitlements.models import SubscriptionTier


@dataclass
class FeatureGateError(Exception):
    """The current tier ranks below the tier a premium feature requires."""

    feature_key: str
    current_tier: SubscriptionTier
    required_tier: SubscriptionTier
    code: str = "feature_locked"
    message: Optional[str] = None
    status_code: int = status.HTTP_403_FORBIDDEN

    def __post_init__(self) -> None:
        if self.message is None:
            self.message = (
                f"Feature '{self.feature_key}' requires the {self.required_tier.value} tier "
                f"(current tier: {self.current_tier.value})."
            )
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "missing_feature": self.feature_key,
            "current_tier": self.current_tier.value,
            "required_tier": self.required_tier.value,
        }
        return payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))
