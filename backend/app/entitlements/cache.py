"""Durable key/value storage for the last resolved subscription tier."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from .errors import PersistenceError
from .models import SubscriptionTier

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol describing the durable storage used by :class:`TierCache`."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...


class InMemoryKeyValueStore:
    """Simple in-memory store suitable for tests and local development."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._entries: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    async def set(self, key: str, value: str) -> None:
        self._entries[key] = value


class JsonFileKeyValueStore:
    """Store persisting all keys in a single JSON document on disk.

    Keys are kept in write order; with ``max_entries`` set, the least recently
    written keys are dropped once the document grows past the limit.
    """

    def __init__(self, path: Union[str, Path], *, max_entries: Optional[int] = None) -> None:
        self._path = Path(path)
        self._max_entries = max_entries
        self._lock = asyncio.Lock()

    def _read_all(self) -> Dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise PersistenceError(f"Unable to read {self._path}", detail={"path": str(self._path)}) from exc

        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise PersistenceError(f"Corrupt cache file {self._path}", detail={"path": str(self._path)}) from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Unexpected cache document in {self._path}", detail={"path": str(self._path)})
        return {str(key): str(value) for key, value in data.items()}

    def _write_all(self, entries: Dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), prefix=".cache-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(entries, handle)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"Unable to write {self._path}", detail={"path": str(self._path)}) from exc

    async def get(self, key: str) -> Optional[str]:
        entries = await asyncio.to_thread(self._read_all)
        return entries.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            entries = await asyncio.to_thread(self._read_all)
            entries.pop(key, None)
            entries[key] = value
            if self._max_entries is not None and len(entries) > self._max_entries:
                for stale in list(entries)[: len(entries) - self._max_entries]:
                    del entries[stale]
                logger.debug("Trimmed tier cache to %d entries", self._max_entries, extra={"path": str(self._path)})
            await asyncio.to_thread(self._write_all, entries)


class TierCache:
    """Write-through cache of the last resolved tier name.

    Failures are logged and swallowed; the in-memory state stays
    authoritative for the running session.
    """

    def __init__(self, store: KeyValueStore, *, key: str = "subscription_tier") -> None:
        self._store = store
        self._key = key

    async def read_tier(self) -> Optional[SubscriptionTier]:
        try:
            value = await self._store.get(self._key)
        except PersistenceError as exc:
            logger.warning("Tier cache read failed: %s", exc, extra=exc.to_log_extra())
            return None
        except Exception:
            logger.exception("Unexpected tier cache read failure", extra={"cache_key": self._key})
            return None

        if value is None:
            return None
        tier = SubscriptionTier.lookup(value)
        if tier is None:
            logger.warning("Ignoring unrecognized cached tier %r", value)
        return tier

    async def write_tier(self, tier: SubscriptionTier) -> bool:
        try:
            await self._store.set(self._key, tier.value)
        except PersistenceError as exc:
            logger.warning("Tier cache write failed: %s", exc, extra=exc.to_log_extra())
            return False
        except Exception:
            logger.exception("Unexpected tier cache write failure", extra={"cache_key": self._key})
            return False
        logger.debug("Cached subscription tier %s", tier.value)
        return True
