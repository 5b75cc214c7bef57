from __future__ import annotations

from typing import List

import pytest

from backend.app.entitlements import (
    EntitlementStore,
    InMemoryCatalogRepository,
    InMemoryKeyValueStore,
    TierCache,
    TierCatalogLoader,
)
from backend.tests.factories import FEATURE_ROWS, TIER_ROWS, FakeProvider


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def repository() -> InMemoryCatalogRepository:
    return InMemoryCatalogRepository(tiers=TIER_ROWS, features=FEATURE_ROWS)


@pytest.fixture
def key_value_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_store(provider, repository, key_value_store, sleeps):
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(**overrides) -> EntitlementStore:
        options = dict(
            provider=provider,
            catalog_loader=TierCatalogLoader(repository),
            tier_cache=TierCache(key_value_store),
            retry_delay=2.0,
            sleep=fake_sleep,
        )
        options.update(overrides)
        return EntitlementStore("user-1", **options)

    return factory
