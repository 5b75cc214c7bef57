from __future__ import annotations

import pytest

from backend.app.entitlements import load_entitlement_config
from backend.app.entitlements.config import DEFAULT_REVENUECAT_BASE_URL


def test_defaults_without_environment() -> None:
    config = load_entitlement_config({})

    assert config.revenuecat_api_key is None
    assert config.provider_configured is False
    assert config.revenuecat_base_url == DEFAULT_REVENUECAT_BASE_URL
    assert config.retry_delay_seconds == 2.0
    assert config.catalog_enabled is True
    assert config.db_config["port"] == 5432
    assert config.max_stores == 1000
    assert config.cache_max_entries == 10000


def test_environment_overrides() -> None:
    config = load_entitlement_config(
        {
            "REVENUECAT_API_KEY": "  sk_live  ",
            "REVENUECAT_BASE_URL": "https://rc.example.test/v1/",
            "REVENUECAT_WEBHOOK_TOKEN": "hook-secret",
            "ENTITLEMENT_RETRY_DELAY": "-3",
            "ENTITLEMENT_CACHE_PATH": "/tmp/tiers.json",
            "CATALOG_ENABLED": "off",
            "DB_PORT": "6543",
            "ENTITLEMENT_MAX_STORES": "0",
            "ENTITLEMENT_CACHE_MAX_ENTRIES": "250",
        }
    )

    assert config.revenuecat_api_key == "sk_live"
    assert config.provider_configured is True
    assert config.revenuecat_base_url == "https://rc.example.test/v1"
    assert config.revenuecat_webhook_token == "hook-secret"
    assert config.retry_delay_seconds == 0.0
    assert config.cache_path == "/tmp/tiers.json"
    assert config.catalog_enabled is False
    assert config.db_config["port"] == 6543
    assert config.max_stores == 1
    assert config.cache_max_entries == 250


def test_invalid_number_is_rejected() -> None:
    with pytest.raises(ValueError):
        load_entitlement_config({"REVENUECAT_TIMEOUT": "soon"})
