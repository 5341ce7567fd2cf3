"""Cross-tab cache synchronization.

Each tab owns its ``TTLCache``; the shared storage only carries snapshots
keyed by absolute expiry so that other tabs can mirror writes and removals.
The shared copy is a hint, never the source of truth, and any failure to
reach it degrades to single-tab caching.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from client_state.errors import StorageError
from client_state.models import MISSING, CacheStats, PersistedRecord
from client_state.storage import StorageEvent, SyncStorage
from client_state.store import DEFAULT_MAX_SIZE, DEFAULT_TTL, Clock, TTLCache
from watanhub.observability import get_client_metrics

logger = logging.getLogger(__name__)

V = TypeVar("V")

CACHE_PREFIX = "watanhub_cache_"

# Keys wiped by an emergency clear on top of the cache records.
_APP_KEY_MARKERS = ("watanhub", "supabase")
_APP_KEY_PREFIXES = ("sb-",)

# Storage/serialization failures that must never reach the caller.
_SYNC_ERRORS = (StorageError, ValueError, TypeError)


class CrossTabCache(Generic[V]):
    def __init__(
        self,
        storage: SyncStorage,
        *,
        default_ttl: float = DEFAULT_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        prefix: str = CACHE_PREFIX,
        clock: Clock = time.time,
        use_timers: bool = True,
    ) -> None:
        self.store: TTLCache[V] = TTLCache(
            default_ttl, max_size, clock=clock, use_timers=use_timers
        )
        self.prefix = prefix
        self._storage = storage
        self._clock = clock
        self._degraded = False
        self._clear_listeners: list[Callable[[float], None]] = []
        self._metrics = get_client_metrics()

        self.store.add_removal_listener(self._on_store_removal)
        self._unsubscribe: Callable[[], None] | None = storage.subscribe(
            self._on_storage_event
        )
        self.load_from_storage()

    @property
    def default_ttl(self) -> float:
        return self.store.default_ttl

    # --- local-only operations ---

    def set_local(self, key: str, value: V, ttl: float | None = None) -> None:
        self.store.set(key, value, ttl)

    def invalidate_local(self, key: str) -> None:
        self.store.invalidate(key)

    # --- synced operations ---

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        entry = self.store.set(key, value, ttl)
        record = PersistedRecord(
            value=value, expires_at=entry.expires_at, last_accessed=entry.last_accessed
        )
        self._try_storage(
            "sync cache to storage",
            lambda: self._storage.set_item(self.prefix + key, record.model_dump_json()),
        )

    def get(self, key: str, default: Any = MISSING) -> V | Any:
        return self.store.get(key, default)

    def has(self, key: str) -> bool:
        return self.store.has(key)

    def keys(self) -> list[str]:
        return self.store.keys()

    def __len__(self) -> int:
        return len(self.store)

    def invalidate(self, key: str) -> None:
        self.store.invalidate(key)
        self._try_storage(
            "remove cache from storage",
            lambda: self._storage.remove_item(self.prefix + key),
        )

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> list[str]:
        removed = self.store.invalidate_pattern(pattern)
        for key in removed:
            self._try_storage(
                "remove cache from storage",
                lambda key=key: self._storage.remove_item(self.prefix + key),
            )
        return removed

    def clear(self) -> None:
        self.store.clear()
        self._try_storage("clear cache from storage", self._remove_records)

    def cleanup(self) -> int:
        return self.store.cleanup()

    def stats(self) -> CacheStats:
        stats = self.store.stats()
        return CacheStats(
            size=stats.size,
            max_size=stats.max_size,
            expired=stats.expired,
            active_timers=stats.active_timers,
            sync_degraded=self._degraded,
        )

    def emergency_clear(self) -> int:
        """Clear the cache and every app/auth key in shared storage.

        Returns the number of storage keys removed.
        """
        logger.warning("Emergency cache clear initiated")
        self.clear()
        removed = 0

        def remove_app_keys() -> None:
            nonlocal removed
            for key in self._storage.keys():
                if key.startswith(_APP_KEY_PREFIXES) or any(m in key for m in _APP_KEY_MARKERS):
                    self._storage.remove_item(key)
                    removed += 1

        self._try_storage("clear app keys from storage", remove_app_keys)
        logger.info("Emergency clear removed %d storage keys", removed)
        return removed

    def force_refresh_all(self) -> None:
        """Clear everything and tell cache-cleared listeners to refetch."""
        logger.info("Force refreshing all cached data")
        self.clear()
        timestamp = self._clock()
        for listener in list(self._clear_listeners):
            try:
                listener(timestamp)
            except Exception:
                logger.exception("Cache-cleared listener failed")

    def add_clear_listener(self, listener: Callable[[float], None]) -> Callable[[], None]:
        self._clear_listeners.append(listener)

        def remove() -> None:
            if listener in self._clear_listeners:
                self._clear_listeners.remove(listener)

        return remove

    def load_from_storage(self) -> int:
        """Seed the local store from live records; drop expired ones."""
        loaded = 0

        def load() -> None:
            nonlocal loaded
            now = self._clock()
            for storage_key in self._storage.keys():
                if not storage_key.startswith(self.prefix):
                    continue
                raw = self._storage.get_item(storage_key)
                if raw is None:
                    continue
                try:
                    record = PersistedRecord.model_validate_json(raw)
                except ValidationError:
                    logger.warning("Dropping unreadable cache record %s", storage_key)
                    self._storage.remove_item(storage_key)
                    continue
                if record.expires_at > now:
                    self.set_local(storage_key[len(self.prefix):], record.value, record.expires_at - now)
                    loaded += 1
                else:
                    self._storage.remove_item(storage_key)

        self._try_storage("load cache from storage", load)
        if loaded:
            logger.debug("Loaded %d cache entries from storage", loaded)
        return loaded

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.store.clear()
        self._clear_listeners.clear()

    # --- internals ---

    def _on_storage_event(self, event: StorageEvent) -> None:
        if not event.key.startswith(self.prefix):
            return
        key = event.key[len(self.prefix):]
        if event.removed:
            self.invalidate_local(key)
            return
        try:
            record = PersistedRecord.model_validate_json(event.new_value or "")
        except ValidationError as exc:
            logger.warning("Failed to sync cache from storage: %s", exc)
            return
        remaining = record.expires_at - self._clock()
        if remaining > 0:
            self.set_local(key, record.value, remaining)
        else:
            self.invalidate_local(key)

    def _on_store_removal(self, key: str, reason: str) -> None:
        self._metrics.cache_evictions_total.add(1, {"reason": reason})
        self._try_storage(
            "remove cache from storage",
            lambda: self._storage.remove_item(self.prefix + key),
        )

    def _remove_records(self) -> None:
        for storage_key in self._storage.keys():
            if storage_key.startswith(self.prefix):
                self._storage.remove_item(storage_key)

    def _try_storage(self, action: str, operation: Callable[[], None]) -> bool:
        try:
            operation()
        except _SYNC_ERRORS as exc:
            if not self._degraded:
                logger.warning("Cross-tab cache sync degraded to this tab only")
            self._degraded = True
            self._metrics.cache_sync_errors_total.add(1, {"action": action})
            logger.warning("Failed to %s: %s", action, exc)
            return False
        return True
