"""Loads tier and feature definitions from the backend catalog."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Type, TypeVar

import asyncpg
from pydantic import BaseModel, ValidationError

from .config import EntitlementConfig
from .errors import CatalogLoadError
from .models import FeatureDefinition, TierDefinition, UserSubscriptionRecord

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)

SELECT_TIERS_SQL = """
    SELECT id, name, display_name, description, price_monthly, price_yearly,
           price_lifetime, features, sort_order, is_active
    FROM subscription_tiers
    WHERE is_active = TRUE
    ORDER BY sort_order
"""

SELECT_FEATURES_SQL = """
    SELECT feature_key, feature_name, description, category, is_premium, required_tier
    FROM subscription_features
"""

SELECT_USER_SUBSCRIPTION_SQL = """
    SELECT id, user_id, tier_id, status, billing_cycle, start_date, end_date, auto_renew
    FROM user_subscriptions
    WHERE user_id::text = $1
      AND status = 'active'
    ORDER BY start_date DESC NULLS LAST
    LIMIT 1
"""


class CatalogRepository(Protocol):
    """Read-only access to the relational tier catalog."""

    async def fetch_tiers(self) -> Sequence[Mapping[str, Any]]:
        ...

    async def fetch_features(self) -> Sequence[Mapping[str, Any]]:
        ...

    async def fetch_user_subscription(self, user_id: str) -> Optional[Mapping[str, Any]]:
        ...


async def create_catalog_pool(config: EntitlementConfig) -> Optional[asyncpg.Pool]:
    if not config.catalog_enabled:
        return None
    return await asyncpg.create_pool(
        min_size=1,
        max_size=5,
        command_timeout=10,
        timeout=config.db_connect_timeout,
        **config.db_config,
    )


class AsyncpgCatalogRepository:
    """Catalog repository backed by an ``asyncpg`` connection pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def fetch_tiers(self) -> Sequence[Mapping[str, Any]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(SELECT_TIERS_SQL)
        return [dict(row) for row in rows]

    async def fetch_features(self) -> Sequence[Mapping[str, Any]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(SELECT_FEATURES_SQL)
        return [dict(row) for row in rows]

    async def fetch_user_subscription(self, user_id: str) -> Optional[Mapping[str, Any]]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(SELECT_USER_SUBSCRIPTION_SQL, user_id)
        return dict(row) if row else None


class InMemoryCatalogRepository:
    """Repository serving static rows, used for tests and local development."""

    def __init__(
        self,
        *,
        tiers: Iterable[Mapping[str, Any]] = (),
        features: Iterable[Mapping[str, Any]] = (),
        subscriptions: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> None:
        self.tiers: List[Mapping[str, Any]] = list(tiers)
        self.features: List[Mapping[str, Any]] = list(features)
        self.subscriptions: Dict[str, Mapping[str, Any]] = dict(subscriptions or {})

    async def fetch_tiers(self) -> Sequence[Mapping[str, Any]]:
        return list(self.tiers)

    async def fetch_features(self) -> Sequence[Mapping[str, Any]]:
        return list(self.features)

    async def fetch_user_subscription(self, user_id: str) -> Optional[Mapping[str, Any]]:
        return self.subscriptions.get(user_id)


@dataclass(frozen=True)
class Catalog:
    """Tier and feature definitions loaded for the session."""

    tiers: Tuple[TierDefinition, ...] = field(default_factory=tuple)
    features: Tuple[FeatureDefinition, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.tiers and not self.features


def _parse_rows(model: Type[_ModelT], rows: Iterable[Mapping[str, Any]]) -> List[_ModelT]:
    parsed: List[_ModelT] = []
    for row in rows:
        values = {key: value for key, value in row.items() if value is not None}
        try:
            parsed.append(model.model_validate(values))
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid %s row",
                model.__name__,
                extra={"row": dict(row), "errors": exc.error_count()},
            )
    return parsed


class TierCatalogLoader:
    """Fetches the tier catalog, keeping the last good copy on failure."""

    def __init__(self, repository: CatalogRepository) -> None:
        self._repository = repository
        self._catalog = Catalog()

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    async def load(self) -> Catalog:
        """Return a fresh catalog, or the previous one if the read fails."""

        tier_rows, feature_rows = await asyncio.gather(
            self._repository.fetch_tiers(),
            self._repository.fetch_features(),
            return_exceptions=True,
        )
        for result in (tier_rows, feature_rows):
            if isinstance(result, BaseException):
                error = result if isinstance(result, CatalogLoadError) else CatalogLoadError(
                    f"Catalog read failed: {result}",
                    detail={"cause": type(result).__name__},
                )
                logger.warning(
                    "Catalog load failed; keeping %d tiers and %d features",
                    len(self._catalog.tiers),
                    len(self._catalog.features),
                    extra=error.to_log_extra(),
                )
                return self._catalog

        tiers = sorted(
            (tier for tier in _parse_rows(TierDefinition, tier_rows) if tier.is_active),
            key=lambda tier: tier.sort_order,
        )
        features: Dict[str, FeatureDefinition] = {}
        for feature in _parse_rows(FeatureDefinition, feature_rows):
            features.setdefault(feature.feature_key, feature)

        self._catalog = Catalog(tiers=tuple(tiers), features=tuple(features.values()))
        logger.info(
            "Catalog loaded",
            extra={"tier_count": len(self._catalog.tiers), "feature_count": len(self._catalog.features)},
        )
        return self._catalog

    async def load_user_subscription(self, user_id: str) -> Optional[UserSubscriptionRecord]:
        """Return the user's active subscription row, if any, for display."""

        try:
            row = await self._repository.fetch_user_subscription(user_id)
        except Exception as exc:
            logger.warning(
                "User subscription lookup failed: %s",
                exc,
                extra={"user_id": user_id, "error_code": CatalogLoadError.code},
            )
            return None
        if row is None:
            return None

        records = _parse_rows(UserSubscriptionRecord, [row])
        return records[0] if records else None
