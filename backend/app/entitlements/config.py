"""Entitlement engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
import os

DEFAULT_REVENUECAT_BASE_URL = "https://api.revenuecat.com/v1"
DEFAULT_RETRY_DELAY_SECONDS = 2.0


@dataclass(frozen=True)
class EntitlementConfig:
    """Configuration for the provider, catalog and local cache."""

    revenuecat_api_key: Optional[str] = None
    revenuecat_base_url: str = DEFAULT_REVENUECAT_BASE_URL
    revenuecat_webhook_token: Optional[str] = None
    request_timeout_seconds: float = 10.0
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    cache_path: str = ".entitlements/cache.json"
    tier_cache_key: str = "subscription_tier"
    cache_max_entries: int = 10000
    max_stores: int = 1000
    catalog_enabled: bool = True
    db_config: Dict[str, Any] = field(default_factory=dict)
    db_connect_timeout: float = 5.0

    @property
    def provider_configured(self) -> bool:
        return bool(self.revenuecat_api_key)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_entitlement_config(env: Optional[Mapping[str, str]] = None) -> EntitlementConfig:
    """Load :class:`EntitlementConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    api_key = (env_mapping.get("REVENUECAT_API_KEY") or "").strip() or None
    base_url = env_mapping.get("REVENUECAT_BASE_URL") or DEFAULT_REVENUECAT_BASE_URL
    webhook_token = env_mapping.get("REVENUECAT_WEBHOOK_TOKEN") or None

    timeout = max(0.1, _to_float(env_mapping.get("REVENUECAT_TIMEOUT"), default=10.0))
    retry_delay = max(
        0.0,
        _to_float(env_mapping.get("ENTITLEMENT_RETRY_DELAY"), default=DEFAULT_RETRY_DELAY_SECONDS),
    )

    db_config: Dict[str, Any] = {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": _to_int(env_mapping.get("DB_PORT"), default=5432),
        "database": env_mapping.get("DB_NAME", "entitlements_db"),
        "user": env_mapping.get("DB_USER", "entitlements_user"),
        "password": env_mapping.get("DB_PASSWORD", "entitlements_pass"),
    }

    return EntitlementConfig(
        revenuecat_api_key=api_key,
        revenuecat_base_url=base_url.rstrip("/"),
        revenuecat_webhook_token=webhook_token,
        request_timeout_seconds=timeout,
        retry_delay_seconds=retry_delay,
        cache_path=env_mapping.get("ENTITLEMENT_CACHE_PATH", ".entitlements/cache.json"),
        tier_cache_key=env_mapping.get("ENTITLEMENT_CACHE_KEY", "subscription_tier"),
        cache_max_entries=max(1, _to_int(env_mapping.get("ENTITLEMENT_CACHE_MAX_ENTRIES"), default=10000)),
        max_stores=max(1, _to_int(env_mapping.get("ENTITLEMENT_MAX_STORES"), default=1000)),
        catalog_enabled=_to_bool(env_mapping.get("CATALOG_ENABLED"), default=True),
        db_config=db_config,
        db_connect_timeout=max(0.1, _to_float(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5.0)),
    )
