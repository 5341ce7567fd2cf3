"""Per-binding data fetching with cache, retry/backoff and cancellation.

A ``DataFetcher`` is what a UI component holds for one piece of remote data.
Each fetch cycle runs as its own task; starting a new cycle or closing the
binding cancels the previous one, and a cancelled cycle never touches the
binding's state or the cache.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

from client_state.api_cache import ApiCache
from client_state.errors import FetchError, SessionExpiredError
from client_state.models import MISSING, FetchOptions, FetchStatus, SessionEvent
from watanhub.observability import get_client_metrics

logger = logging.getLogger(__name__)

V = TypeVar("V")
R = TypeVar("R")

FetchFn = Callable[[], Awaitable[V]]
Sleep = Callable[[float], Awaitable[Any]]
Subscribe = Callable[[Callable[[SessionEvent, Any], None]], Callable[[], None]]

_LOGOUT_EVENTS = frozenset(
    {SessionEvent.SESSION_EXPIRED, SessionEvent.FORCE_LOGOUT, SessionEvent.GLOBAL_LOGOUT}
)


class DataFetcher(Generic[V]):
    def __init__(
        self,
        key: str,
        fetch_fn: FetchFn[V],
        api_cache: ApiCache[V],
        options: FetchOptions | None = None,
        *,
        session_events: Subscribe | None = None,
        cache_cleared_events: Callable[[Callable[[float], None]], Callable[[], None]] | None = None,
        on_close: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.key = key
        self.options = options or FetchOptions()
        self.data: V | None = None
        self.error: Exception | None = None
        self.status = FetchStatus.IDLE
        self.last_fetch: float | None = None

        self._fetch_fn = fetch_fn
        self._api_cache = api_cache
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[V | None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._deps: tuple[Any, ...] = ()
        # Status and error to fall back to when an in-flight cycle is abandoned.
        self._settled: tuple[FetchStatus, Exception | None] = (FetchStatus.IDLE, None)
        self._mounted = False
        self._unsubscribers: list[Callable[[], None]] = []
        self._metrics = get_client_metrics()

        if session_events is not None:
            self._unsubscribers.append(session_events(self._on_session_event))
        if cache_cleared_events is not None:
            self._unsubscribers.append(cache_cleared_events(self._on_cache_cleared))
        if on_close is not None:
            self._unsubscribers.append(on_close)

    @property
    def loading(self) -> bool:
        return self.status is FetchStatus.LOADING

    # --- lifecycle ---

    async def start(self) -> V | None:
        """Mount the binding and run the initial fetch when enabled."""
        self._mounted = True
        if not self.options.enabled:
            return None
        return await self.fetch()

    def close(self) -> None:
        """Unmount: cancel in-flight work and drop event subscriptions."""
        self._mounted = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self.status is FetchStatus.LOADING:
            self.status, self.error = self._settled
        for task in list(self._background):
            task.cancel()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    async def __aenter__(self) -> DataFetcher[V]:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    # --- fetching ---

    async def fetch(self, force_fresh: bool = False, retry_attempt: int = 0) -> V | None:
        """Run one fetch cycle, superseding any cycle still in flight.

        Returns the data, or ``None`` when the cycle was cancelled or failed
        (the failure is available on ``error``).
        """
        if not self.options.enabled or not self._mounted:
            return None

        if self._task is not None:
            self._task.cancel()

        if self.status is not FetchStatus.LOADING:
            self._settled = (self.status, self.error)
        self.status = FetchStatus.LOADING
        self.error = None

        if not force_fresh:
            cached = self._api_cache.cache.get(self.key)
            if cached is not MISSING:
                logger.debug("Using cached data for: %s", self.key)
                self._task = None
                self._succeed(cached)
                return cached

        task = asyncio.create_task(self._run(retry_attempt))
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            logger.debug("Request aborted for: %s", self.key)
            return None
        return task.result()

    async def _run(self, attempt: int) -> V | None:
        max_attempts = self.options.retry_attempts
        calls = 0
        while True:
            calls += 1
            started = time.monotonic()
            try:
                logger.debug("Fetching fresh data for: %s", self.key)
                result = await self._api_cache.fetch(
                    self.key, self._attempt, self.options.cache_ttl, force=True
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._metrics.fetch_duration.record(
                    time.monotonic() - started, {"outcome": "error"}
                )
                logger.error("Fetch error for %s: %s", self.key, exc)
                if attempt < max_attempts and self._mounted:
                    delay = self.options.retry_delay * (2**attempt)
                    attempt += 1
                    logger.debug(
                        "Retrying %s in %.3fs (attempt %d/%d)",
                        self.key,
                        delay,
                        attempt,
                        max_attempts,
                    )
                    self._metrics.fetch_retries_total.add(1)
                    await self._sleep(delay)
                    continue

                self._metrics.fetch_failures_total.add(1)
                error = FetchError(self.key, calls)
                error.__cause__ = exc
                self._fail(error)
                return None

            self._metrics.fetch_duration.record(
                time.monotonic() - started, {"outcome": "success"}
            )
            logger.debug("Successfully fetched data for: %s", self.key)
            self._succeed(result)
            return result

    async def _attempt(self) -> V:
        if self.options.timeout is None:
            return await self._fetch_fn()
        return await asyncio.wait_for(self._fetch_fn(), self.options.timeout)

    def _succeed(self, data: V) -> None:
        self.data = data
        self.error = None
        self.last_fetch = self._clock()
        self.status = FetchStatus.SUCCESS

    def _fail(self, error: Exception) -> None:
        self.error = error
        self.status = FetchStatus.ERROR

    # --- triggers ---

    async def refresh(self) -> V | None:
        return await self.fetch(force_fresh=True)

    async def invalidate(self) -> V | None:
        self._api_cache.cache.invalidate(self.key)
        return await self.fetch(force_fresh=True)

    async def update_deps(self, *deps: Any) -> V | None:
        """Refetch when the binding's dependencies change."""
        if deps == self._deps:
            return None
        self._deps = deps
        return await self.fetch()

    async def handle_focus(self) -> V | None:
        if not self.options.revalidate_on_focus or self.last_fetch is None:
            return None
        if self._clock() - self.last_fetch <= self.options.focus_revalidate_after:
            return None
        logger.debug("Revalidating on focus: %s", self.key)
        return await self.fetch(force_fresh=True)

    async def handle_reconnect(self) -> V | None:
        if not self.options.revalidate_on_reconnect:
            return None
        logger.debug("Revalidating on reconnect: %s", self.key)
        return await self.fetch(force_fresh=True)

    def _on_session_event(self, event: SessionEvent, payload: Any = None) -> None:
        if event in _LOGOUT_EVENTS:
            if self._task is not None:
                self._task.cancel()
                self._task = None
            self._api_cache.cache.invalidate(self.key)
            self.data = None
            self._fail(SessionExpiredError())
        elif event is SessionEvent.TOKEN_REFRESHED:
            self._spawn(self.fetch(force_fresh=True))

    def _on_cache_cleared(self, timestamp: float) -> None:
        self._spawn(self.fetch(force_fresh=True))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        if not self._mounted:
            coro.close()  # type: ignore[attr-defined]
            return
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


class Mutation(Generic[R]):
    """Runs a write and invalidates the cache keys it affects."""

    def __init__(
        self,
        mutation_fn: Callable[[Any], Awaitable[R]],
        api_cache: ApiCache[Any],
        *,
        invalidate_keys: Iterable[str | re.Pattern[str]] = (),
        on_success: Callable[[R, Any], None] | None = None,
        on_error: Callable[[Exception, Any], None] | None = None,
    ) -> None:
        self._mutation_fn = mutation_fn
        self._api_cache = api_cache
        self._invalidate_keys = list(invalidate_keys)
        self._on_success = on_success
        self._on_error = on_error
        self.loading = False
        self.error: Exception | None = None

    async def mutate(self, variables: Any = None) -> R:
        self.loading = True
        self.error = None
        try:
            result = await self._mutation_fn(variables)
        except Exception as exc:
            self.error = exc
            if self._on_error is not None:
                self._on_error(exc, variables)
            raise
        finally:
            self.loading = False

        cache = self._api_cache.cache
        for key in self._invalidate_keys:
            if isinstance(key, re.Pattern):
                cache.invalidate_pattern(key)
            else:
                cache.invalidate(key)

        if self._on_success is not None:
            self._on_success(result, variables)
        return result
