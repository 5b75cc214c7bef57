"""Entitlement resolution: models, provider, catalog, cache and store."""

from .cache import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore, TierCache
from .catalog import (
    TIER_BUNDLES,
    TierBundle,
    get_tier_bundle,
    resolve_entitlements,
    summarize_customer_info,
    tier_for_entitlement,
)
from .catalog_loader import (
    AsyncpgCatalogRepository,
    Catalog,
    CatalogRepository,
    InMemoryCatalogRepository,
    TierCatalogLoader,
    create_catalog_pool,
)
from .config import EntitlementConfig, load_entitlement_config
from .errors import (
    CatalogLoadError,
    EntitlementError,
    PersistenceError,
    ProviderFetchError,
    ProviderInitError,
)
from .models import (
    CustomerInfo,
    EntitlementInfo,
    Entitlements,
    EntitlementSnapshot,
    FeatureDefinition,
    StoreState,
    SubscriptionStatusSummary,
    SubscriptionTier,
    TIER_NAMES,
    TierDefinition,
    UserSubscriptionRecord,
)
from .provider import EntitlementProvider, RevenueCatClient, UpdateSubscription
from .store import EntitlementStore

__all__ = [
    "AsyncpgCatalogRepository",
    "Catalog",
    "CatalogLoadError",
    "CatalogRepository",
    "CustomerInfo",
    "EntitlementConfig",
    "EntitlementError",
    "EntitlementInfo",
    "EntitlementProvider",
    "EntitlementSnapshot",
    "EntitlementStore",
    "Entitlements",
    "FeatureDefinition",
    "InMemoryCatalogRepository",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "PersistenceError",
    "ProviderFetchError",
    "ProviderInitError",
    "RevenueCatClient",
    "StoreState",
    "SubscriptionStatusSummary",
    "SubscriptionTier",
    "TIER_BUNDLES",
    "TIER_NAMES",
    "TierBundle",
    "TierCache",
    "TierCatalogLoader",
    "TierDefinition",
    "UpdateSubscription",
    "UserSubscriptionRecord",
    "create_catalog_pool",
    "get_tier_bundle",
    "load_entitlement_config",
    "resolve_entitlements",
    "summarize_customer_info",
    "tier_for_entitlement",
]
