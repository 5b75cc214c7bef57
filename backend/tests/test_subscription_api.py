from __future__ import annotations

from typing import Dict, List

import httpx
import pytest
from fastapi import FastAPI

from backend.app.entitlements import (
    EntitlementConfig,
    InMemoryCatalogRepository,
    InMemoryKeyValueStore,
    RevenueCatClient,
    TierCatalogLoader,
)
from backend.app.routes.subscription import router
from backend.app.services.subscription import EntitlementStoreRegistry
from backend.tests.factories import FEATURE_ROWS, TIER_ROWS

WEBHOOK_TOKEN = "Bearer hook-secret"


def _subscriber(*entitlement_ids: str) -> Dict[str, object]:
    return {
        "request_date": "2024-05-01T12:00:00Z",
        "subscriber": {
            "entitlements": {
                identifier: {"product_identifier": f"{identifier}_monthly", "expires_date": None}
                for identifier in entitlement_ids
            },
            "subscriptions": {},
        },
    }


class RevenueCatStub:
    def __init__(self) -> None:
        self.entitlements: Dict[str, List[str]] = {}
        self.calls: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        user_id = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(user_id)
        return httpx.Response(200, json=_subscriber(*self.entitlements.get(user_id, [])))


@pytest.fixture
def revenuecat() -> RevenueCatStub:
    return RevenueCatStub()


@pytest.fixture
async def registry(revenuecat):
    config = EntitlementConfig(
        revenuecat_api_key="sk_test",
        revenuecat_webhook_token=WEBHOOK_TOKEN,
        retry_delay_seconds=0.0,
    )
    provider_client = httpx.AsyncClient(transport=httpx.MockTransport(revenuecat))
    registry = EntitlementStoreRegistry(
        config=config,
        catalog_loader=TierCatalogLoader(InMemoryCatalogRepository(tiers=TIER_ROWS, features=FEATURE_ROWS)),
        key_value_store=InMemoryKeyValueStore(),
        provider_factory=lambda: RevenueCatClient.from_config(config, http_client=provider_client),
    )
    yield registry
    await registry.close()
    await provider_client.aclose()


@pytest.fixture
async def api(registry):
    app = FastAPI()
    app.include_router(router)
    app.state.entitlement_registry = registry
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def test_get_subscription_starts_store_once(api, registry, revenuecat) -> None:
    revenuecat.entitlements["user-1"] = ["premium"]

    first = await api.get("/api/users/user-1/subscription")
    second = await api.get("/api/users/user-1/subscription")

    assert first.status_code == 200
    body = second.json()
    assert body["currentTier"] == "ihsan"
    assert body["state"] == "ready"
    assert body["loading"] is False
    assert body["activeEntitlementIds"] == ["premium"]
    assert "adhan_player" in body["entitlements"]["features"]
    assert [tier["name"] for tier in body["tiers"]] == ["free", "ihsan", "iman"]
    assert revenuecat.calls == ["user-1"]
    assert len(registry) == 1


async def test_feature_check_and_refresh(api, revenuecat) -> None:
    locked = await api.get("/api/users/user-1/subscription/features/ai_chatbot")
    assert locked.json() == {
        "featureKey": "ai_chatbot",
        "allowed": False,
        "currentTier": "free",
        "requiredTier": "iman",
    }

    revenuecat.entitlements["user-1"] = ["iman"]
    refreshed = await api.post("/api/users/user-1/subscription/entitlements/refresh")
    assert refreshed.json()["currentTier"] == "iman"

    unlocked = await api.get("/api/users/user-1/subscription/features/ai_chatbot")
    assert unlocked.json()["allowed"] is True

    unknown = await api.get("/api/users/user-1/subscription/features/brand_new")
    assert unknown.json()["allowed"] is True
    assert unknown.json()["requiredTier"] is None


async def test_enforced_feature_check_returns_403_when_locked(api, revenuecat) -> None:
    revenuecat.entitlements["user-1"] = ["premium"]

    allowed = await api.get("/api/users/user-1/subscription/features/adhan_player", params={"enforce": "true"})
    denied = await api.get("/api/users/user-1/subscription/features/ai_chatbot", params={"enforce": "true"})

    assert allowed.status_code == 200
    assert allowed.json()["allowed"] is True
    assert denied.status_code == 403
    detail = denied.json()["detail"]
    assert detail["error"] == "feature_locked"
    assert detail["missing_feature"] == "ai_chatbot"
    assert detail["current_tier"] == "ihsan"
    assert detail["required_tier"] == "iman"


async def test_full_refresh_and_status(api, revenuecat) -> None:
    await api.get("/api/users/user-1/subscription")
    revenuecat.entitlements["user-1"] = ["ultra"]

    refreshed = await api.post("/api/users/user-1/subscription/refresh")
    status = await api.get("/api/users/user-1/subscription/status")

    assert refreshed.json()["currentTier"] == "iman"
    assert status.json()["tier"] == "iman"
    assert status.json()["is_active"] is True
    assert status.json()["is_lifetime"] is True


async def test_webhook_requires_authorization(api) -> None:
    response = await api.post(
        "/api/subscription/webhook",
        json={"event": {"type": "RENEWAL", "app_user_id": "user-1"}},
        headers={"Authorization": "Bearer wrong"},
    )

    assert response.status_code == 401


async def test_webhook_rejects_invalid_payload(api) -> None:
    response = await api.post(
        "/api/subscription/webhook",
        content=b"not json",
        headers={"Authorization": WEBHOOK_TOKEN, "Content-Type": "application/json"},
    )

    assert response.status_code == 400


async def test_webhook_refreshes_active_store(api, registry, revenuecat) -> None:
    await api.get("/api/users/user-1/subscription")
    revenuecat.entitlements["user-1"] = ["premium"]

    response = await api.post(
        "/api/subscription/webhook",
        json={"api_version": "1.0", "event": {"type": "INITIAL_PURCHASE", "app_user_id": "user-1"}},
        headers={"Authorization": WEBHOOK_TOKEN},
    )

    assert response.status_code == 204
    assert registry.lookup("user-1").current_tier.value == "ihsan"
    assert revenuecat.calls == ["user-1", "user-1"]


async def test_logout_releases_session(api, registry) -> None:
    await api.get("/api/users/user-1/subscription")
    store = registry.lookup("user-1")

    response = await api.delete("/api/users/user-1/subscription/session")
    missing = await api.delete("/api/users/user-1/subscription/session")
    health = await api.get("/api/subscription/health")

    assert response.status_code == 204
    assert missing.status_code == 404
    assert store.disposed is True
    assert store.current_tier.value == "free"
    assert health.json() == {"status": "ok", "stores": 0}


async def test_routes_unavailable_before_startup() -> None:
    app = FastAPI()
    app.include_router(router)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/subscription/health")

    assert response.status_code == 503
