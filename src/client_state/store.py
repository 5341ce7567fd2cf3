"""In-memory TTL cache with LRU eviction.

Entries expire two ways: an eager ``loop.call_later`` timer when an event
loop is running, and a lazy check on every read. Either one alone keeps the
"never serve past expires_at" guarantee; the timer only bounds memory.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

from client_state.models import MISSING, CacheEntry, CacheStats

logger = logging.getLogger(__name__)

V = TypeVar("V")

Clock = Callable[[], float]
RemovalListener = Callable[[str, str], None]

DEFAULT_TTL = 5 * 60
DEFAULT_MAX_SIZE = 100


class TTLCache(Generic[V]):
    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        *,
        clock: Clock = time.time,
        use_timers: bool = True,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.default_ttl = float(default_ttl)
        self.max_size = int(max_size)
        self._clock = clock
        self._use_timers = use_timers
        self._entries: dict[str, CacheEntry[V]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._removal_listeners: list[RemovalListener] = []

    # --- reads ---

    def get(self, key: str, default: Any = MISSING) -> V | Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        now = self._clock()
        if entry.is_expired(now):
            self._remove(key, reason="expired")
            return default
        entry.last_accessed = now
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def peek(self, key: str) -> CacheEntry[V] | None:
        """Return the raw entry (expired or not) without touching recency."""
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    # --- writes ---

    def set(self, key: str, value: V, ttl: float | None = None) -> CacheEntry[V]:
        ttl = self.default_ttl if ttl is None else float(ttl)
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_oldest()

        now = self._clock()
        self._cancel_timer(key)
        entry = CacheEntry(key=key, value=value, expires_at=now + ttl, last_accessed=now)
        self._entries[key] = entry
        self._schedule_expiry(entry, ttl)
        return entry

    def invalidate(self, key: str) -> bool:
        """Remove ``key``; returns whether anything was removed."""
        self._cancel_timer(key)
        return self._entries.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> list[str]:
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in self._entries if regex.search(key)]
        for key in matched:
            self.invalidate(key)
        return matched

    def clear(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries.clear()

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key, reason="expired")
        logger.debug("Cache cleanup: removed %d expired items", len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        now = self._clock()
        return CacheStats(
            size=len(self._entries),
            max_size=self.max_size,
            expired=sum(1 for entry in self._entries.values() if entry.is_expired(now)),
            active_timers=len(self._timers),
        )

    def add_removal_listener(self, listener: RemovalListener) -> Callable[[], None]:
        """Subscribe to expiry/eviction removals as ``listener(key, reason)``.

        Explicit ``invalidate``/``clear`` calls are not reported.
        """
        self._removal_listeners.append(listener)
        return lambda: self._removal_listeners.remove(listener)

    # --- internals ---

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda entry: entry.last_accessed)
        logger.debug("Cache full (%d); evicting %s", self.max_size, oldest.key)
        self._remove(oldest.key, reason="evicted")

    def _remove(self, key: str, *, reason: str) -> None:
        if not self.invalidate(key):
            return
        for listener in list(self._removal_listeners):
            try:
                listener(key, reason)
            except Exception:
                logger.exception("Cache removal listener failed for %s", key)

    def _schedule_expiry(self, entry: CacheEntry[V], ttl: float) -> None:
        if not self._use_timers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: lazy expiry on read still applies.
            return
        self._timers[entry.key] = loop.call_later(max(ttl, 0.0), self._expire, entry)

    def _expire(self, entry: CacheEntry[V]) -> None:
        self._timers.pop(entry.key, None)
        if self._entries.get(entry.key) is entry:
            self._remove(entry.key, reason="expired")

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
