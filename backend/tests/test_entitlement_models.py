from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.app.entitlements import (
    CustomerInfo,
    SubscriptionTier,
    resolve_entitlements,
    summarize_customer_info,
    tier_for_entitlement,
)
from backend.app.entitlements.catalog import FREE_FEATURES, IMAN_FEATURES

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _payload(entitlements, subscriptions=None):
    return {
        "request_date": _iso(NOW),
        "subscriber": {
            "original_app_user_id": "user-1",
            "management_url": "https://apps.apple.com/account/subscriptions",
            "entitlements": entitlements,
            "subscriptions": subscriptions or {},
        },
    }


def test_tier_ranks_are_ordered() -> None:
    assert SubscriptionTier.FREE.rank < SubscriptionTier.IHSAN.rank < SubscriptionTier.IMAN.rank
    assert SubscriptionTier.lookup(" IMAN ") == SubscriptionTier.IMAN
    assert SubscriptionTier.lookup("Ultra") == SubscriptionTier.IMAN
    assert SubscriptionTier.lookup("iman_lifetime") == SubscriptionTier.IMAN
    assert SubscriptionTier.lookup("premium") == SubscriptionTier.IHSAN
    assert SubscriptionTier.lookup("gold") is None
    assert SubscriptionTier.lookup(None) is None
    assert SubscriptionTier.highest() == SubscriptionTier.IMAN


def test_subscriber_payload_keeps_only_active_entitlements() -> None:
    payload = _payload(
        {
            "premium": {
                "product_identifier": "ihsan_monthly",
                "purchase_date": _iso(NOW - timedelta(days=10)),
                "expires_date": _iso(NOW + timedelta(days=20)),
            },
            "ultra": {
                "product_identifier": "iman_monthly",
                "purchase_date": _iso(NOW - timedelta(days=60)),
                "expires_date": _iso(NOW - timedelta(days=30)),
            },
        },
        {
            "ihsan_monthly": {"period_type": "trial", "store": "app_store", "is_sandbox": True},
            "iman_monthly": {"period_type": "normal", "store": "app_store"},
        },
    )

    info = CustomerInfo.from_subscriber_payload(payload, app_user_id="ignored", now=NOW)

    assert info.app_user_id == "user-1"
    assert list(info.active_entitlements) == ["premium"]
    assert set(info.all_entitlement_ids) == {"premium", "ultra"}
    premium = info.active_entitlements["premium"]
    assert premium.is_trial is True
    assert premium.is_sandbox is True
    assert premium.will_renew is True
    assert resolve_entitlements(info).tier_name == SubscriptionTier.IHSAN


def test_grace_period_keeps_entitlement_active() -> None:
    payload = _payload(
        {
            "iman": {
                "product_identifier": "iman_yearly",
                "expires_date": _iso(NOW - timedelta(days=1)),
                "grace_period_expires_date": _iso(NOW + timedelta(days=5)),
            }
        },
        {"iman_yearly": {"billing_issues_detected_at": _iso(NOW - timedelta(days=1))}},
    )

    info = CustomerInfo.from_subscriber_payload(payload, app_user_id="user-1", now=NOW)
    summary = summarize_customer_info(info, now=NOW)

    assert summary.tier == SubscriptionTier.IMAN
    assert summary.in_grace_period is True
    assert summary.has_billing_issue is True
    assert summary.will_renew is False


def test_missing_subscriber_object_is_rejected() -> None:
    with pytest.raises(ValueError):
        CustomerInfo.from_subscriber_payload({"request_date": _iso(NOW)}, app_user_id="user-1")


def test_highest_recognized_entitlement_wins() -> None:
    payload = _payload(
        {
            "premium": {"product_identifier": "a", "expires_date": None},
            "super_ultra": {"product_identifier": "b", "expires_date": _iso(NOW + timedelta(days=3))},
            "legacy_beta": {"product_identifier": "c", "expires_date": None},
        }
    )
    info = CustomerInfo.from_subscriber_payload(payload, app_user_id="user-1", now=NOW)

    entitlements = resolve_entitlements(info)

    assert entitlements.tier_name == SubscriptionTier.IMAN
    assert entitlements.features == IMAN_FEATURES
    assert entitlements.is_lifetime is False
    assert entitlements.expires_at == NOW + timedelta(days=3)


def test_unrecognized_entitlements_resolve_to_free() -> None:
    info = CustomerInfo.from_subscriber_payload(
        _payload({"legacy_beta": {"product_identifier": "c", "expires_date": None}}),
        app_user_id="user-1",
        now=NOW,
    )

    entitlements = resolve_entitlements(info)

    assert entitlements.tier_name == SubscriptionTier.FREE
    assert entitlements.features == FREE_FEATURES
    assert entitlements.has_access is False
    assert tier_for_entitlement("legacy_beta") is None
    assert tier_for_entitlement(" Premium ") == SubscriptionTier.IHSAN
