"""Billing provider integration for customer entitlement snapshots."""
from __future__ import annotations

import hmac
import logging
from typing import Any, Callable, List, Mapping, Optional, Protocol, Set
from urllib.parse import quote

import httpx

from .config import DEFAULT_REVENUECAT_BASE_URL, EntitlementConfig
from .errors import ProviderFetchError, ProviderInitError
from .models import CustomerInfo

logger = logging.getLogger(__name__)

CustomerInfoListener = Callable[[CustomerInfo], None]


def verify_webhook_authorization(expected_token: Optional[str], authorization_header: Optional[str]) -> bool:
    """Check a webhook Authorization header against the configured token."""

    if not expected_token:
        logger.warning("RevenueCat webhook token not configured")
        return False
    if not authorization_header:
        return False
    return hmac.compare_digest(authorization_header.encode("utf-8"), expected_token.encode("utf-8"))


def webhook_user_ids(event: Mapping[str, Any]) -> Set[str]:
    """App user ids a webhook event refers to, aliases included."""

    candidates = {event.get("app_user_id"), event.get("original_app_user_id")}
    candidates.update(event.get("aliases") or ())
    return {user_id for user_id in candidates if isinstance(user_id, str) and user_id}


class UpdateSubscription:
    """Handle returned by ``subscribe_to_updates``; ``remove`` is idempotent."""

    def __init__(self, remove: Callable[[], None]) -> None:
        self._remove = remove
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def remove(self) -> None:
        if not self._active:
            return
        self._active = False
        self._remove()


class EntitlementProvider(Protocol):
    """Operations the entitlement store needs from the billing provider."""

    async def initialize_for_user(self, user_id: str) -> None:
        ...

    async def fetch_customer_info(self) -> CustomerInfo:
        ...

    def subscribe_to_updates(self, callback: CustomerInfoListener) -> UpdateSubscription:
        ...

    async def logout(self) -> None:
        ...


class RevenueCatClient:
    """RevenueCat REST client bound to a single app user.

    Without an API key the platform is treated as unsupported: initialization
    is a no-op and every fetch returns an empty (free tier) snapshot.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str = DEFAULT_REVENUECAT_BASE_URL,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._app_user_id: Optional[str] = None
        self._listeners: List[CustomerInfoListener] = []

    @classmethod
    def from_config(
        cls,
        config: EntitlementConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "RevenueCatClient":
        return cls(
            api_key=config.revenuecat_api_key,
            base_url=config.revenuecat_base_url,
            timeout=config.request_timeout_seconds,
            http_client=http_client,
        )

    @property
    def supported(self) -> bool:
        return bool(self._api_key)

    @property
    def app_user_id(self) -> Optional[str]:
        return self._app_user_id

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _headers(self) -> Mapping[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    async def initialize_for_user(self, user_id: str) -> None:
        if not user_id or not user_id.strip():
            raise ProviderInitError("Cannot bind billing provider without a user id")
        self._app_user_id = user_id.strip()
        if not self.supported:
            logger.warning(
                "RevenueCat API key not configured; using free tier",
                extra={"app_user_id": self._app_user_id},
            )
            return
        logger.info("RevenueCat session bound", extra={"app_user_id": self._app_user_id})

    async def fetch_customer_info(self) -> CustomerInfo:
        if self._app_user_id is None:
            raise ProviderFetchError("Billing provider has not been initialized for a user")
        if not self.supported:
            return CustomerInfo.empty(self._app_user_id)

        url = f"{self._base_url}/subscribers/{quote(self._app_user_id, safe='')}"
        try:
            response = await self._client.get(url, headers=self._headers())
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderFetchError(
                f"RevenueCat returned status {exc.response.status_code}",
                detail={"status_code": exc.response.status_code, "app_user_id": self._app_user_id},
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderFetchError(
                f"RevenueCat request failed: {exc}",
                detail={"app_user_id": self._app_user_id},
            ) from exc
        except ValueError as exc:
            raise ProviderFetchError("RevenueCat returned a non-JSON body") from exc

        try:
            info = CustomerInfo.from_subscriber_payload(payload, app_user_id=self._app_user_id)
        except (TypeError, ValueError, AttributeError) as exc:
            raise ProviderFetchError(f"Malformed subscriber payload: {exc}") from exc

        logger.debug(
            "Fetched customer info",
            extra={
                "app_user_id": self._app_user_id,
                "active_entitlements": sorted(info.active_entitlements),
            },
        )
        return info

    def subscribe_to_updates(self, callback: CustomerInfoListener) -> UpdateSubscription:
        self._listeners.append(callback)

        def _remove() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return UpdateSubscription(_remove)

    def dispatch_update(self, info: CustomerInfo) -> None:
        """Deliver a push update to every registered listener."""

        for listener in list(self._listeners):
            try:
                listener(info)
            except Exception:
                logger.exception(
                    "Customer info listener failed",
                    extra={"app_user_id": info.app_user_id},
                )

    async def logout(self) -> None:
        logger.info("RevenueCat session unbound", extra={"app_user_id": self._app_user_id})
        self._app_user_id = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
