from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx
from dotenv import load_dotenv

from client_state.api_cache import ApiCache
from client_state.backend import AuthBackend, SupabaseAuthClient
from client_state.config import ClientConfig
from client_state.data_fetch import DataFetcher, Mutation
from client_state.models import FetchOptions
from client_state.session import SessionMonitor
from client_state.storage import SharedStorage, StorageHandle
from client_state.sync import CrossTabCache
from watanhub.observability import bind_tab

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    """Services of one tab, plus dispatch of the tab's window events."""

    tab_id: str
    storage: StorageHandle
    cache: CrossTabCache[Any]
    api_cache: ApiCache[Any]
    session: SessionMonitor
    clock: Callable[[], float] = time.time
    fetchers: list[DataFetcher[Any]] = field(default_factory=list)

    def data_fetcher(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        **options: Any,
    ) -> DataFetcher[Any]:
        fetcher: DataFetcher[Any] = DataFetcher(
            key,
            fetch_fn,
            self.api_cache,
            FetchOptions(**options),
            session_events=self.session.add_listener,
            cache_cleared_events=self.cache.add_clear_listener,
            on_close=lambda: self._forget(fetcher),
            clock=self.clock,
        )
        self.fetchers.append(fetcher)
        return fetcher

    def _forget(self, fetcher: DataFetcher[Any]) -> None:
        if fetcher in self.fetchers:
            self.fetchers.remove(fetcher)

    def mutation(
        self,
        mutation_fn: Callable[[Any], Awaitable[Any]],
        *,
        invalidate_keys: list[str | re.Pattern[str]] | None = None,
        on_success: Callable[[Any, Any], None] | None = None,
        on_error: Callable[[Exception, Any], None] | None = None,
    ) -> Mutation[Any]:
        return Mutation(
            mutation_fn,
            self.api_cache,
            invalidate_keys=invalidate_keys or (),
            on_success=on_success,
            on_error=on_error,
        )

    # --- window events ---

    async def focus(self) -> None:
        self.session.set_active(True)
        await self._broadcast(lambda f: f.handle_focus())

    def blur(self) -> None:
        self.session.set_active(False)

    def visibility_changed(self, hidden: bool) -> None:
        self.session.set_active(not hidden)

    async def online(self) -> None:
        await self._broadcast(lambda f: f.handle_reconnect())

    def activity(self, event_type: str) -> None:
        self.session.record_activity(event_type)

    async def _broadcast(self, action: Callable[[DataFetcher[Any]], Awaitable[Any]]) -> None:
        live = [f for f in self.fetchers if f.options.enabled]
        await asyncio.gather(*(action(f) for f in live))

    def close_fetchers(self) -> None:
        for fetcher in list(self.fetchers):
            fetcher.close()
        self.fetchers.clear()


async def cleanup_loop(cache: CrossTabCache[Any], interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            removed = cache.cleanup()
            if removed:
                logger.info("Cache cleanup removed %d expired entries", removed)
        except Exception:
            logger.exception("Cache cleanup failed")


@asynccontextmanager
async def client_lifespan(
    storage: SharedStorage,
    config: ClientConfig | None = None,
    *,
    backend: AuthBackend | None = None,
    navigate: Callable[[str], None] | None = None,
    clock: Callable[[], float] = time.time,
    start_monitor: bool = True,
) -> AsyncIterator[ClientContext]:
    """Create one tab's client state services and dispose them on exit.

    ``backend`` defaults to a ``SupabaseAuthClient`` built from
    ``config.backend`` with its own ``httpx.AsyncClient``.
    """
    if config is None:
        load_dotenv()
        config = ClientConfig().resolve()
    if backend is None and not config.backend.configured:
        raise ValueError(
            "No auth backend: pass one or set WATANHUB_SUPABASE_URL "
            "and WATANHUB_SUPABASE_ANON_KEY"
        )

    tab_id = uuid.uuid4().hex[:8]
    handle = storage.attach()
    cache: CrossTabCache[Any] = CrossTabCache(
        handle,
        default_ttl=config.cache.default_ttl,
        max_size=config.cache.max_size,
        prefix=config.cache.prefix,
        clock=clock,
    )

    async with AsyncExitStack() as stack:
        if backend is None:
            http_client = await stack.enter_async_context(
                httpx.AsyncClient(timeout=config.backend.timeout)
            )
            backend = SupabaseAuthClient(
                http_client,
                config.backend.supabase_url,
                config.backend.anon_key,
                handle,
                storage_key=config.backend.storage_key,
            )

        monitor_kwargs: dict[str, Any] = {"cache": cache, "clock": clock}
        if navigate is not None:
            monitor_kwargs["navigate"] = navigate
        monitor = SessionMonitor(backend, handle, config.session, **monitor_kwargs)

        context = ClientContext(
            tab_id=tab_id,
            storage=handle,
            cache=cache,
            api_cache=ApiCache(cache, single_flight=config.cache.single_flight),
            session=monitor,
            clock=clock,
        )

        # Background tasks copy the current context, so they log under the tab.
        with bind_tab(tab_id):
            cleanup_task = asyncio.create_task(
                cleanup_loop(cache, config.cache.cleanup_interval)
            )
            if start_monitor:
                monitor.start()
            logger.info("Client state ready")

        try:
            yield context
        finally:
            context.close_fetchers()
            cleanup_task.cancel()
            try:
                await cleanup_task
            except asyncio.CancelledError:
                pass
            await monitor.dispose()
            cache.close()
            handle.detach()
            logger.info("Client state disposed (tab %s)", tab_id)
