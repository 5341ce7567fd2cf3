from __future__ import annotations

import time
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import StatusCode

_TRACER_NAME = "watanhub.client_state"


def get_tracer(name: str | None = None) -> trace.Tracer:
    """Return an OTel tracer scoped to the given name (or the default)."""
    return trace.get_tracer(name or _TRACER_NAME)


# ---------------------------------------------------------------------------
# Cache operation tracing (context manager)
# ---------------------------------------------------------------------------


class traced_cache_operation:
    """Context manager that creates an OTel span for cache operations.

    Usage::

        async with traced_cache_operation("fetch", key="api_blogs") as span:
            value = cache.get("api_blogs")
            span.set_attribute("cache.hit", value is not MISSING)
    """

    def __init__(
        self,
        operation: str,
        *,
        key: str | None = None,
        ttl: float | None = None,
    ) -> None:
        self._operation = operation
        self._key = key
        self._ttl = ttl
        self._tracer = get_tracer()
        self._span: trace.Span | None = None
        self._scope: Any = None
        self._start: float = 0.0

    async def __aenter__(self) -> trace.Span:
        self._start = time.monotonic()
        self._span = self._tracer.start_span(f"cache.{self._operation}")
        self._scope = trace.use_span(self._span, end_on_exit=False)
        self._scope.__enter__()

        self._span.set_attribute("cache.operation", self._operation)
        if self._key is not None:
            self._span.set_attribute("cache.key", self._key)
        if self._ttl is not None:
            self._span.set_attribute("cache.ttl_seconds", self._ttl)

        return self._span

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        assert self._span is not None

        elapsed = time.monotonic() - self._start
        self._span.set_attribute("cache.duration_ms", round(elapsed * 1000, 2))
        _finish(self._span, self._scope, exc_type, exc_val, exc_tb)


# ---------------------------------------------------------------------------
# Session validation tracing (context manager)
# ---------------------------------------------------------------------------


class traced_session_check:
    """Context manager that creates an OTel span for a session validation.

    Usage::

        async with traced_session_check(attempt=0, initialized=True) as span:
            session = await backend.get_session()
            span.set_attribute("session.outcome", "valid")
    """

    def __init__(
        self,
        *,
        attempt: int = 0,
        initialized: bool = False,
        user_id: str | None = None,
    ) -> None:
        self._attempt = attempt
        self._initialized = initialized
        self._user_id = user_id
        self._tracer = get_tracer()
        self._span: trace.Span | None = None
        self._scope: Any = None

    async def __aenter__(self) -> trace.Span:
        self._span = self._tracer.start_span("session.validate")
        self._scope = trace.use_span(self._span, end_on_exit=False)
        self._scope.__enter__()

        self._span.set_attribute("session.attempt", self._attempt)
        self._span.set_attribute("session.initialized", self._initialized)
        if self._user_id is not None:
            self._span.set_attribute("enduser.id", self._user_id)

        return self._span

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        assert self._span is not None
        _finish(self._span, self._scope, exc_type, exc_val, exc_tb)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _finish(span: trace.Span, scope: Any, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
    if exc_val is not None:
        span.set_status(StatusCode.ERROR, str(exc_val))
        span.record_exception(exc_val)

    span.end()
    if scope is not None:
        scope.__exit__(exc_type, exc_val, exc_tb)
