"""API routes exposing per-user subscription entitlements."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import ValidationError

from ..entitlements.models import SubscriptionStatusSummary
from ..feature_gates import EntitlementContext, FeatureGateError
from ..schemas.subscription import (
    FeatureAccessResponse,
    RegistryHealthResponse,
    RevenueCatWebhookPayload,
    SubscriptionStateResponse,
)
from ..services.subscription import EntitlementStoreRegistry

logger = logging.getLogger("entitlements")

router = APIRouter(prefix="/api", tags=["subscription"])


def get_registry(request: Request) -> EntitlementStoreRegistry:
    registry = getattr(request.app.state, "entitlement_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription services are not ready",
        )
    return registry


def _state_response(store) -> SubscriptionStateResponse:
    return SubscriptionStateResponse.from_snapshot(store.user_id, store.snapshot, state=store.state)


@router.get("/users/{user_id}/subscription", response_model=SubscriptionStateResponse)
async def get_subscription(
    user_id: str,
    *,
    registry: EntitlementStoreRegistry = Depends(get_registry),
) -> SubscriptionStateResponse:
    store = await registry.get(user_id)
    return _state_response(store)


@router.post("/users/{user_id}/subscription/refresh", response_model=SubscriptionStateResponse)
async def refresh_subscription(
    user_id: str,
    *,
    registry: EntitlementStoreRegistry = Depends(get_registry),
) -> SubscriptionStateResponse:
    store = await registry.get(user_id)
    await store.refresh_subscription()
    return _state_response(store)


@router.post(
    "/users/{user_id}/subscription/entitlements/refresh",
    response_model=SubscriptionStateResponse,
)
async def refresh_entitlements(
    user_id: str,
    *,
    registry: EntitlementStoreRegistry = Depends(get_registry),
) -> SubscriptionStateResponse:
    store = await registry.get(user_id)
    await store.refresh_entitlements()
    return _state_response(store)


@router.get(
    "/users/{user_id}/subscription/features/{feature_key}",
    response_model=FeatureAccessResponse,
)
async def check_feature(
    user_id: str,
    feature_key: str,
    *,
    enforce: bool = False,
    registry: EntitlementStoreRegistry = Depends(get_registry),
) -> FeatureAccessResponse:
    """Report the gate decision; with ``enforce`` a denial becomes a 403."""

    store = await registry.get(user_id)
    context = EntitlementContext(store.snapshot)
    if enforce:
        try:
            context.require(feature_key)
        except FeatureGateError as exc:
            logger.info(
                "Feature gate denied %s",
                feature_key,
                extra={"user_id": user_id, "required_tier": exc.required_tier.value},
            )
            raise exc.to_http_exception() from exc
    feature = context.feature(feature_key)
    return FeatureAccessResponse(
        feature_key=feature_key,
        allowed=context.has(feature_key),
        current_tier=context.tier,
        required_tier=feature.required_tier if feature is not None and feature.is_premium else None,
    )


@router.get("/users/{user_id}/subscription/status", response_model=SubscriptionStatusSummary)
async def get_subscription_status(
    user_id: str,
    *,
    registry: EntitlementStoreRegistry = Depends(get_registry),
) -> SubscriptionStatusSummary:
    store = await registry.get(user_id)
    return store.status


@router.delete("/users/{user_id}/subscription/session", status_code=status.HTTP_204_NO_CONTENT)
async def end_subscription_session(
    user_id: str,
    *,
    registry: EntitlementStoreRegistry = Depends(get_registry),
) -> Response:
    if not await registry.logout(user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription session")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/subscription/webhook", status_code=status.HTTP_204_NO_CONTENT)
async def receive_webhook(
    request: Request,
    authorization: Optional[str] = Header(None),
    *,
    registry: EntitlementStoreRegistry = Depends(get_registry),
) -> Response:
    if not registry.verify_webhook_authorization(authorization):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook authorization")

    try:
        payload = RevenueCatWebhookPayload.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc

    delivered = await registry.handle_webhook_event(payload.event)
    logger.info(
        "Processed subscription webhook",
        extra={"event_type": payload.event.get("type"), "delivered": delivered},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/subscription/health", response_model=RegistryHealthResponse)
def health(registry: EntitlementStoreRegistry = Depends(get_registry)) -> RegistryHealthResponse:
    return RegistryHealthResponse(stores=len(registry))
