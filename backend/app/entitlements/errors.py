"""Error taxonomy for entitlement resolution failures."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


class EntitlementError(Exception):
    """Base class for failures raised by entitlement collaborators."""

    code = "entitlement_error"
    retryable = False

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    def to_log_extra(self) -> Dict[str, Any]:
        return {"error_code": self.code, **self.detail}


class ProviderInitError(EntitlementError):
    """The billing provider could not be bound to the user session."""

    code = "provider_init_failed"


class ProviderFetchError(EntitlementError):
    """Transient failure while fetching customer info from the provider."""

    code = "provider_fetch_failed"
    retryable = True


class CatalogLoadError(EntitlementError):
    """The backend tier/feature catalog could not be read."""

    code = "catalog_load_failed"


class PersistenceError(EntitlementError):
    """The local durable cache could not be read or written."""

    code = "persistence_failed"
