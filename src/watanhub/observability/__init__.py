from __future__ import annotations

from watanhub.observability.config import TelemetryConfig, env_bool
from watanhub.observability.setup import configure_telemetry
from watanhub.observability.tracing import (
    get_tracer,
    traced_cache_operation,
    traced_session_check,
)
from watanhub.observability.logging import (
    configure_logging,
    bind_tab,
    current_tab,
    TraceContextFilter,
)
from watanhub.observability.metrics import (
    create_client_metrics,
    get_client_metrics,
    ClientMetrics,
)

__all__ = [
    "TelemetryConfig",
    "env_bool",
    "configure_telemetry",
    "configure_logging",
    "bind_tab",
    "current_tab",
    "TraceContextFilter",
    "get_tracer",
    "traced_cache_operation",
    "traced_session_check",
    "create_client_metrics",
    "get_client_metrics",
    "ClientMetrics",
]
