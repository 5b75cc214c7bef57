from __future__ import annotations

from typing import List

import httpx
import pytest

from backend.app.entitlements import (
    CustomerInfo,
    ProviderFetchError,
    ProviderInitError,
    RevenueCatClient,
)
from backend.app.entitlements.provider import verify_webhook_authorization, webhook_user_ids

SUBSCRIBER_BODY = {
    "request_date": "2024-05-01T12:00:00Z",
    "subscriber": {
        "original_app_user_id": "user 1",
        "entitlements": {
            "premium": {
                "product_identifier": "ihsan_monthly",
                "purchase_date": "2024-04-20T12:00:00Z",
                "expires_date": "2099-05-20T12:00:00Z",
            }
        },
        "subscriptions": {"ihsan_monthly": {"store": "play_store", "period_type": "normal"}},
    },
}


def _client(handler, **kwargs) -> RevenueCatClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    options = dict(api_key="sk_test", base_url="https://rc.example.test/v1/")
    options.update(kwargs)
    return RevenueCatClient(http_client=http_client, **options)


async def test_fetch_customer_info_parses_subscriber() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=SUBSCRIBER_BODY)

    client = _client(handler)
    await client.initialize_for_user("user 1")
    info = await client.fetch_customer_info()

    assert str(requests[0].url) == "https://rc.example.test/v1/subscribers/user%201"
    assert requests[0].headers["Authorization"] == "Bearer sk_test"
    assert list(info.active_entitlements) == ["premium"]
    assert info.active_entitlements["premium"].store == "play_store"


async def test_http_errors_become_fetch_errors() -> None:
    client = _client(lambda request: httpx.Response(503, json={"message": "down"}))
    await client.initialize_for_user("user-1")

    with pytest.raises(ProviderFetchError) as exc:
        await client.fetch_customer_info()

    assert exc.value.retryable is True
    assert exc.value.detail["status_code"] == 503


async def test_transport_and_payload_errors_become_fetch_errors() -> None:
    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    client = _client(offline)
    await client.initialize_for_user("user-1")
    with pytest.raises(ProviderFetchError):
        await client.fetch_customer_info()

    malformed = _client(lambda request: httpx.Response(200, json={"unexpected": True}))
    await malformed.initialize_for_user("user-1")
    with pytest.raises(ProviderFetchError):
        await malformed.fetch_customer_info()


async def test_fetch_requires_initialization() -> None:
    client = _client(lambda request: httpx.Response(200, json=SUBSCRIBER_BODY))

    with pytest.raises(ProviderFetchError):
        await client.fetch_customer_info()
    with pytest.raises(ProviderInitError):
        await client.initialize_for_user("   ")


async def test_unconfigured_client_returns_empty_customer_info() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(handler, api_key=None)
    await client.initialize_for_user("user-1")

    info = await client.fetch_customer_info()

    assert client.supported is False
    assert info.active_entitlements == {}
    assert info.app_user_id == "user-1"


async def test_dispatched_updates_reach_listeners_until_removed() -> None:
    client = _client(lambda request: httpx.Response(200, json=SUBSCRIBER_BODY))
    await client.initialize_for_user("user 1")
    received: List[CustomerInfo] = []
    subscription = client.subscribe_to_updates(received.append)

    client.dispatch_update(await client.fetch_customer_info())
    subscription.remove()
    subscription.remove()
    client.dispatch_update(CustomerInfo.empty("user 1"))

    assert len(received) == 1
    assert list(received[0].active_entitlements) == ["premium"]
    assert subscription.active is False
    assert client.listener_count == 0


async def test_logout_unbinds_user() -> None:
    client = _client(lambda request: httpx.Response(200, json=SUBSCRIBER_BODY))
    await client.initialize_for_user("user-1")

    await client.logout()

    assert client.app_user_id is None
    with pytest.raises(ProviderFetchError):
        await client.fetch_customer_info()


def test_webhook_authorization() -> None:
    assert verify_webhook_authorization("hook-secret", "hook-secret") is True
    assert verify_webhook_authorization("hook-secret", "wrong") is False
    assert verify_webhook_authorization("hook-secret", None) is False
    assert verify_webhook_authorization(None, "anything") is False


def test_webhook_user_ids_include_aliases() -> None:
    event = {
        "type": "RENEWAL",
        "app_user_id": "$RCAnonymousID:abc",
        "original_app_user_id": "user-1",
        "aliases": ["user-1", "legacy-id", None],
    }

    assert webhook_user_ids(event) == {"$RCAnonymousID:abc", "user-1", "legacy-id"}
    assert webhook_user_ids({"type": "TEST"}) == set()
