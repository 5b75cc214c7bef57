"""Stateful coordinator resolving a user's current entitlements.

The store composes the billing provider, the tier catalog and the local tier
cache into one observable :class:`EntitlementSnapshot`. Every asynchronous
branch captures a token when it is dispatched and re-checks it after each
suspension point; results from superseded branches, or from branches that
finish after :meth:`EntitlementStore.dispose`, are discarded without writing
state or touching the cache.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set, Tuple

from ..feature_gates.enforcement import has_feature
from .cache import TierCache
from .catalog import resolve_entitlements, summarize_customer_info
from .catalog_loader import TierCatalogLoader
from .config import DEFAULT_RETRY_DELAY_SECONDS
from .errors import EntitlementError, ProviderFetchError, ProviderInitError
from .models import (
    CustomerInfo,
    EntitlementSnapshot,
    Entitlements,
    FeatureDefinition,
    StoreState,
    SubscriptionStatusSummary,
    SubscriptionTier,
    TierDefinition,
    UserSubscriptionRecord,
)
from .provider import EntitlementProvider, UpdateSubscription

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[EntitlementSnapshot], None]
Sleep = Callable[[float], Awaitable[Any]]


def _as_error(exc: BaseException, error_type: type) -> EntitlementError:
    if isinstance(exc, EntitlementError):
        return exc
    return error_type(str(exc) or type(exc).__name__, detail={"cause": type(exc).__name__})


class EntitlementStore:
    """Owns the entitlement snapshot for one user session."""

    def __init__(
        self,
        user_id: str,
        *,
        provider: EntitlementProvider,
        catalog_loader: TierCatalogLoader,
        tier_cache: TierCache,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._user_id = user_id
        self._provider = provider
        self._catalog_loader = catalog_loader
        self._tier_cache = tier_cache
        self._retry_delay = max(retry_delay, 0.0)
        self._sleep = sleep

        self._snapshot = EntitlementSnapshot()
        self._listeners: List[SnapshotListener] = []
        self._started = False
        self._disposed = False
        self._provider_ready = False
        self._live_result = False

        self._token = 0
        self._catalog_token = 0
        self._active_runs = 0
        self._inflight: Optional["asyncio.Task[None]"] = None
        self._background: Set["asyncio.Task[None]"] = set()
        self._persist_lock = asyncio.Lock()
        self._update_subscription: Optional[UpdateSubscription] = None

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def snapshot(self) -> EntitlementSnapshot:
        return self._snapshot

    @property
    def state(self) -> StoreState:
        return StoreState.DISPOSED if self._disposed else self._snapshot.state

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def current_tier(self) -> SubscriptionTier:
        return self._snapshot.current_tier

    @property
    def entitlements(self) -> Optional[Entitlements]:
        return self._snapshot.entitlements

    @property
    def customer_info(self) -> Optional[CustomerInfo]:
        return self._snapshot.customer_info

    @property
    def subscription(self) -> Optional[UserSubscriptionRecord]:
        return self._snapshot.subscription

    @property
    def tiers(self) -> Tuple[TierDefinition, ...]:
        return self._snapshot.tiers

    @property
    def features(self) -> Tuple[FeatureDefinition, ...]:
        return self._snapshot.features

    @property
    def loading(self) -> bool:
        return self._snapshot.loading

    @property
    def status(self) -> SubscriptionStatusSummary:
        info = self._snapshot.customer_info
        if info is None:
            return SubscriptionStatusSummary(tier=self._snapshot.current_tier, is_active=False)
        return summarize_customer_info(info)

    def has_feature(self, feature_key: str) -> bool:
        return has_feature(self._snapshot, feature_key)

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a callback invoked after every commit."""

        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the catalog and entitlements concurrently, then mark ready."""

        if self._started or self._disposed:
            return
        self._started = True
        self._commit(state=StoreState.LOADING, loading=True)
        self._update_subscription = self._provider.subscribe_to_updates(self.handle_customer_info)
        await self._apply_cached_tier()
        await self._run_branches()

    async def refresh(self) -> None:
        await self._run_branches()

    async def refresh_subscription(self) -> None:
        await self.refresh()

    async def refresh_entitlements(self) -> None:
        try:
            await self._load_entitlements()
        except Exception:
            logger.exception("Entitlement refresh failed", extra={"user_id": self._user_id})

    def handle_customer_info(self, info: CustomerInfo) -> None:
        """Apply a provider push update without a network round trip."""

        if self._disposed:
            return
        token = self._next_token()
        entitlements = resolve_entitlements(info)
        self._live_result = True
        self._commit(
            customer_info=info,
            entitlements=entitlements,
            current_tier=entitlements.tier_name,
        )
        logger.info(
            "Applied pushed customer info",
            extra={"user_id": self._user_id, "tier": entitlements.tier_name.value},
        )
        self._schedule(self._persist(entitlements.tier_name, token))

    async def logout(self) -> None:
        """Unbind the provider session and fall back to the free tier."""

        if self._disposed:
            return
        token = self._next_token()
        try:
            await self._provider.logout()
        except Exception as exc:
            logger.warning("Billing provider logout failed: %s", exc, extra={"user_id": self._user_id})
        self._provider_ready = False
        if not self._is_current(token):
            return
        self._commit(
            current_tier=SubscriptionTier.FREE,
            entitlements=None,
            customer_info=None,
            subscription=None,
        )
        await self._persist(SubscriptionTier.FREE, token)

    def dispose(self) -> None:
        """Stop all state writes; in-flight work completes but is discarded."""

        if self._disposed:
            return
        self._disposed = True
        self._token += 1
        self._catalog_token += 1
        if self._update_subscription is not None:
            self._update_subscription.remove()
            self._update_subscription = None
        for task in list(self._background):
            task.cancel()
        self._listeners.clear()
        logger.debug("Entitlement store disposed", extra={"user_id": self._user_id})

    async def wait_idle(self) -> None:
        """Wait for the in-flight fetch and pending cache writes to settle."""

        while True:
            pending = [task for task in self._background if not task.done()]
            if self._inflight is not None and not self._inflight.done():
                pending.append(self._inflight)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Commit discipline
    # ------------------------------------------------------------------

    def _next_token(self) -> int:
        self._token += 1
        return self._token

    def _is_current(self, token: int) -> bool:
        return not self._disposed and token == self._token

    def _catalog_current(self, token: int) -> bool:
        return not self._disposed and token == self._catalog_token

    def _commit(self, **changes: Any) -> bool:
        if self._disposed:
            return False
        self._snapshot = replace(self._snapshot, **changes)
        snapshot = self._snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Entitlement listener failed", extra={"user_id": self._user_id})
        return True

    def _commit_fallback(self) -> None:
        self._commit(current_tier=SubscriptionTier.FREE, entitlements=None, customer_info=None)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop; skipping tier cache write", extra={"user_id": self._user_id})
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, tier: SubscriptionTier, token: int) -> None:
        async with self._persist_lock:
            if not self._is_current(token):
                return
            await self._tier_cache.write_tier(tier)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _apply_cached_tier(self) -> None:
        token = self._token
        cached = await self._tier_cache.read_tier()
        if cached is None or self._live_result or not self._is_current(token):
            return
        self._commit(current_tier=cached)
        logger.debug("Applied cached tier %s", cached.value, extra={"user_id": self._user_id})

    async def _run_branches(self) -> None:
        if self._disposed:
            return
        self._active_runs += 1
        self._commit(loading=True)
        try:
            results = await asyncio.gather(
                self._load_catalog(),
                self._load_entitlements(),
                return_exceptions=True,
            )
        finally:
            self._active_runs -= 1
        for result in results:
            if isinstance(result, Exception):
                logger.error(
                    "Entitlement branch failed unexpectedly: %r",
                    result,
                    extra={"user_id": self._user_id},
                )
        # Overlapping refreshes: only the last one to finish clears loading.
        if self._active_runs == 0:
            self._commit(loading=False, state=StoreState.READY)

    async def _load_catalog(self) -> None:
        self._catalog_token += 1
        token = self._catalog_token
        catalog = await self._catalog_loader.load()
        if not self._catalog_current(token):
            return
        subscription = await self._catalog_loader.load_user_subscription(self._user_id)
        if not self._catalog_current(token):
            return
        self._commit(tiers=catalog.tiers, features=catalog.features, subscription=subscription)

    async def _load_entitlements(self) -> None:
        if self._disposed:
            return
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._fetch_flight(self._next_token()))
            self._inflight = task
        else:
            logger.debug("Joining in-flight entitlement fetch", extra={"user_id": self._user_id})
        await asyncio.shield(task)

    async def _fetch_flight(self, token: int) -> None:
        try:
            if not await self._ensure_provider(token):
                return
            await self._fetch_with_retry(token)
        finally:
            if self._inflight is asyncio.current_task():
                self._inflight = None

    async def _ensure_provider(self, token: int) -> bool:
        if self._provider_ready:
            return True
        try:
            await self._provider.initialize_for_user(self._user_id)
        except Exception as exc:
            error = _as_error(exc, ProviderInitError)
            logger.warning(
                "Billing provider initialization failed; using free tier: %s",
                error,
                extra={"user_id": self._user_id, **error.to_log_extra()},
            )
            if self._is_current(token):
                self._commit_fallback()
            return False
        self._provider_ready = True
        return self._is_current(token)

    async def _fetch_with_retry(self, token: int) -> None:
        for attempt in (1, 2):
            try:
                info = await self._provider.fetch_customer_info()
            except Exception as exc:
                error = _as_error(exc, ProviderFetchError)
                if not self._is_current(token):
                    return
                if attempt == 1:
                    logger.warning(
                        "Customer info fetch failed; retrying in %.1fs: %s",
                        self._retry_delay,
                        error,
                        extra={"user_id": self._user_id, **error.to_log_extra()},
                    )
                    await self._sleep(self._retry_delay)
                    if not self._is_current(token):
                        return
                    continue
                logger.error(
                    "Customer info fetch failed after retry; using free tier: %s",
                    error,
                    extra={"user_id": self._user_id, **error.to_log_extra()},
                )
                self._commit_fallback()
                return
            await self._commit_customer_info(info, token)
            return

    async def _commit_customer_info(self, info: CustomerInfo, token: int) -> None:
        if not self._is_current(token):
            logger.debug("Discarding stale customer info", extra={"user_id": self._user_id})
            return
        entitlements = resolve_entitlements(info)
        self._live_result = True
        self._commit(
            customer_info=info,
            entitlements=entitlements,
            current_tier=entitlements.tier_name,
        )
        await self._persist(entitlements.tier_name, token)
