"""Application wiring for per-user entitlement stores."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import asyncpg
import httpx

from ..entitlements import (
    AsyncpgCatalogRepository,
    CatalogLoadError,
    EntitlementConfig,
    EntitlementStore,
    InMemoryCatalogRepository,
    JsonFileKeyValueStore,
    KeyValueStore,
    RevenueCatClient,
    TierCache,
    TierCatalogLoader,
    create_catalog_pool,
)
from ..entitlements.catalog_loader import CatalogRepository
from ..entitlements.provider import verify_webhook_authorization, webhook_user_ids
from ..entitlements.store import Sleep

logger = logging.getLogger("entitlements")

ProviderFactory = Callable[[], RevenueCatClient]


class EntitlementStoreRegistry:
    """Creates, starts and disposes one :class:`EntitlementStore` per user.

    At most ``config.max_stores`` stores stay live; the least recently used
    one is released when a new user pushes the registry past that limit.
    """

    def __init__(
        self,
        *,
        config: EntitlementConfig,
        catalog_loader: TierCatalogLoader,
        key_value_store: KeyValueStore,
        provider_factory: ProviderFactory,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._catalog_loader = catalog_loader
        self._key_value_store = key_value_store
        self._provider_factory = provider_factory
        self._sleep = sleep
        self._stores: "OrderedDict[str, EntitlementStore]" = OrderedDict()
        self._providers: Dict[str, RevenueCatClient] = {}
        self._pending: Dict[str, "asyncio.Future[EntitlementStore]"] = {}
        self._starting: Dict[str, EntitlementStore] = {}

    def __len__(self) -> int:
        return len(self._stores)

    def lookup(self, user_id: str) -> Optional[EntitlementStore]:
        return self._stores.get(user_id)

    async def get(self, user_id: str) -> EntitlementStore:
        """Return the started store for ``user_id``, creating it once."""

        store = self._stores.get(user_id)
        if store is not None:
            self._stores.move_to_end(user_id)
            return store
        pending = self._pending.get(user_id)
        if pending is None:
            pending = asyncio.ensure_future(self._create(user_id))
            self._pending[user_id] = pending
        return await asyncio.shield(pending)

    async def _create(self, user_id: str) -> EntitlementStore:
        try:
            provider = self._provider_factory()
            store = EntitlementStore(
                user_id,
                provider=provider,
                catalog_loader=self._catalog_loader,
                tier_cache=TierCache(
                    self._key_value_store,
                    key=f"{self._config.tier_cache_key}:{user_id}",
                ),
                retry_delay=self._config.retry_delay_seconds,
                sleep=self._sleep,
            )
            self._starting[user_id] = store
            try:
                await store.start()
            finally:
                self._starting.pop(user_id, None)
            self._stores[user_id] = store
            self._providers[user_id] = provider
            logger.info("Entitlement store started", extra={"user_id": user_id, "tier": store.current_tier.value})
            await self._evict_overflow()
            return store
        finally:
            self._pending.pop(user_id, None)

    async def _evict_overflow(self) -> None:
        while len(self._stores) > self._config.max_stores:
            user_id = next(iter(self._stores))
            logger.info("Evicting least recently used entitlement store", extra={"user_id": user_id})
            await self.release(user_id)

    async def release(self, user_id: str) -> bool:
        store = self._stores.pop(user_id, None)
        provider = self._providers.pop(user_id, None)
        if store is None:
            return False
        store.dispose()
        if provider is not None:
            await provider.aclose()
        logger.info("Entitlement store released", extra={"user_id": user_id})
        return True

    async def logout(self, user_id: str) -> bool:
        store = self._stores.get(user_id)
        if store is None:
            return False
        await store.logout()
        return await self.release(user_id)

    def verify_webhook_authorization(self, authorization_header: Optional[str]) -> bool:
        return verify_webhook_authorization(self._config.revenuecat_webhook_token, authorization_header)

    async def handle_webhook_event(self, event: Mapping[str, Any]) -> int:
        """Refresh the live stores a provider webhook refers to.

        The refresh joins any fetch already in flight for that store. Returns
        the number of stores refreshed.
        """

        delivered = 0
        for user_id in webhook_user_ids(event):
            store = self._stores.get(user_id) or self._starting.get(user_id)
            if store is None:
                continue
            logger.info(
                "Webhook triggered entitlement refresh",
                extra={"user_id": user_id, "event_type": event.get("type")},
            )
            await store.refresh_entitlements()
            delivered += 1
        return delivered

    async def close(self) -> None:
        for user_id in list(self._stores):
            await self.release(user_id)


def _build_catalog_repository(pool: Optional[asyncpg.Pool]) -> CatalogRepository:
    if pool is None:
        return InMemoryCatalogRepository()
    return AsyncpgCatalogRepository(pool)


class SubscriptionServices:
    """Owns the resources behind the registry for the application lifespan."""

    def __init__(
        self,
        registry: EntitlementStoreRegistry,
        *,
        http_client: httpx.AsyncClient,
        pool: Optional[asyncpg.Pool] = None,
    ) -> None:
        self.registry = registry
        self._http_client = http_client
        self._pool = pool

    async def aclose(self) -> None:
        await self.registry.close()
        await self._http_client.aclose()
        if self._pool is not None:
            await self._pool.close()


async def build_subscription_services(config: EntitlementConfig) -> SubscriptionServices:
    """Construct the registry and its shared HTTP client, pool and cache."""

    pool: Optional[asyncpg.Pool] = None
    try:
        pool = await create_catalog_pool(config)
    except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as exc:
        error = CatalogLoadError(f"Catalog database unavailable: {exc}")
        logger.warning("Starting without catalog database: %s", exc, extra=error.to_log_extra())

    http_client = httpx.AsyncClient(timeout=config.request_timeout_seconds)
    registry = EntitlementStoreRegistry(
        config=config,
        catalog_loader=TierCatalogLoader(_build_catalog_repository(pool)),
        key_value_store=JsonFileKeyValueStore(Path(config.cache_path), max_entries=config.cache_max_entries),
        provider_factory=lambda: RevenueCatClient.from_config(config, http_client=http_client),
    )
    if not config.provider_configured:
        logger.warning("REVENUECAT_API_KEY is not set; every user resolves to the free tier")
    return SubscriptionServices(registry, http_client=http_client, pool=pool)


__all__ = [
    "EntitlementStoreRegistry",
    "SubscriptionServices",
    "build_subscription_services",
]
