from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from opentelemetry import trace

_current_tab: ContextVar[str] = ContextVar("watanhub_tab_id", default="-")


@contextmanager
def bind_tab(tab_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``tab_id``.

    Tasks created inside the block inherit the binding, so background loops
    started by a tab keep logging under that tab.
    """
    token = _current_tab.set(tab_id)
    try:
        yield
    finally:
        _current_tab.reset(token)


def current_tab() -> str:
    return _current_tab.get()


class TraceContextFilter(logging.Filter):
    """Logging filter that injects the tab ID and OTel trace/span IDs.

    Multiple tabs can share one process (tests, embedded clients), so log
    lines carry ``tab_id`` next to ``trace_id``/``span_id`` for correlation.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.tab_id = _current_tab.get()  # type: ignore[attr-defined]
        ctx = trace.get_current_span().get_span_context()
        if ctx and ctx.trace_id:
            record.trace_id = format(ctx.trace_id, "032x")  # type: ignore[attr-defined]
            record.span_id = format(ctx.span_id, "016x")  # type: ignore[attr-defined]
        else:
            record.trace_id = ""  # type: ignore[attr-defined]
            record.span_id = ""  # type: ignore[attr-defined]
        return True


def configure_logging(
    level: str = "INFO",
    *,
    include_trace_context: bool = True,
    stream: object | None = None,
) -> None:
    """Configure Python logging for the client state layer.

    Args:
        level: Logging level name (e.g. ``"INFO"``, ``"DEBUG"``).
        include_trace_context: Whether to add tab and trace/span IDs.
        stream: Output stream (defaults to ``sys.stderr``).
    """
    if stream is None:
        stream = sys.stderr

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if include_trace_context:
        fmt = (
            "%(asctime)s tab=%(tab_id)s [%(trace_id)s/%(span_id)s] "
            "%(name)s %(levelname)s %(message)s"
        )
    else:
        fmt = "%(asctime)s %(name)s %(levelname)s %(message)s"

    handler = logging.StreamHandler(stream)  # type: ignore[arg-type]
    handler.setFormatter(logging.Formatter(fmt))

    if include_trace_context:
        handler.addFilter(TraceContextFilter())

    root.handlers.clear()
    root.addHandler(handler)
