from __future__ import annotations

import asyncio
import functools
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from client_state.models import MISSING
from watanhub.observability import get_client_metrics, traced_cache_operation

logger = logging.getLogger(__name__)

V = TypeVar("V")


class CacheBackend(Protocol[V]):
    default_ttl: float

    def get(self, key: str, default: Any = MISSING) -> V | Any: ...

    def set(self, key: str, value: V, ttl: float | None = None) -> None: ...

    def invalidate(self, key: str) -> None: ...

    def invalidate_pattern(self, pattern: str | re.Pattern[str]) -> list[str]: ...


def cache_key(endpoint: str, *params: Any, user_id: str | None = None) -> str:
    """Build ``api_<endpoint>[_<param>...][_user_<id>]`` cache keys.

    Keys of this shape are what ``invalidate_endpoint`` and
    ``invalidate_user_cache`` match against.
    """
    parts = [f"api_{endpoint}", *(str(p) for p in params)]
    if user_id is not None:
        parts.append(f"user_{user_id}")
    return "_".join(parts)


@dataclass
class _Flight(Generic[V]):
    task: asyncio.Task[V]
    waiters: int = 0


class ApiCache(Generic[V]):
    """Check-cache-else-fetch wrapper around a cache backend.

    Concurrent misses for one key each run their own fetch unless
    ``single_flight`` is set, in which case they share the first one. The
    shared fetch runs as its own task and is only cancelled once every
    caller waiting on it has been cancelled.
    """

    def __init__(self, cache: CacheBackend[V], *, single_flight: bool = False) -> None:
        self.cache = cache
        self.single_flight = single_flight
        self._inflight: dict[str, _Flight[V]] = {}
        self._metrics = get_client_metrics()

    async def fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[V]],
        ttl: float | None = None,
        *,
        force: bool = False,
    ) -> V:
        async with traced_cache_operation("fetch", key=key, ttl=ttl) as span:
            if not force:
                cached = self.cache.get(key)
                if cached is not MISSING:
                    logger.debug("Cache hit for: %s", key)
                    span.set_attribute("cache.hit", True)
                    self._metrics.cache_lookups_total.add(1, {"outcome": "hit"})
                    return cached

            logger.debug("Cache miss for: %s, fetching...", key)
            span.set_attribute("cache.hit", False)
            self._metrics.cache_lookups_total.add(1, {"outcome": "miss"})

            if self.single_flight:
                return await self._join(key, fetch_fn, ttl)
            return await self._fetch_and_store(key, fetch_fn, ttl)

    async def _fetch_and_store(
        self, key: str, fetch_fn: Callable[[], Awaitable[V]], ttl: float | None
    ) -> V:
        try:
            data = await fetch_fn()
        except Exception as exc:
            logger.error("Fetch failed for: %s (%s)", key, exc)
            raise
        self.cache.set(key, data, ttl)
        return data

    async def _join(
        self, key: str, fetch_fn: Callable[[], Awaitable[V]], ttl: float | None
    ) -> V:
        flight = self._inflight.get(key)
        if flight is None:
            flight = _Flight(asyncio.ensure_future(self._fetch_and_store(key, fetch_fn, ttl)))
            self._inflight[key] = flight
            flight.task.add_done_callback(functools.partial(self._land, key, flight))
        else:
            logger.debug("Joining in-flight fetch for: %s", key)

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                logger.debug("Last caller left; aborting fetch for: %s", key)
                flight.task.cancel()

    def _land(self, key: str, flight: _Flight[V], task: asyncio.Task[V]) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]
        # Callers, if any, observe it; silence "exception never retrieved".
        if not task.cancelled():
            task.exception()

    def invalidate_endpoint(self, endpoint: str) -> list[str]:
        return self.cache.invalidate_pattern(f"^api_{re.escape(endpoint)}")

    def invalidate_user_cache(self, user_id: str) -> list[str]:
        return self.cache.invalidate_pattern(f"_user_{re.escape(user_id)}(?:_|$)")
