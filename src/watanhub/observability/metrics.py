from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from opentelemetry import metrics

_METER_NAME = "watanhub.client_state"


@dataclass(frozen=True)
class ClientMetrics:
    """Container for client state metric instruments.

    Without a configured MeterProvider the OTel API hands out no-op
    instruments, so components can record unconditionally.
    """

    # --- Cache metrics ---
    cache_lookups_total: metrics.Counter = field(repr=False)
    cache_evictions_total: metrics.Counter = field(repr=False)
    cache_sync_errors_total: metrics.Counter = field(repr=False)

    # --- Fetch metrics ---
    fetch_duration: metrics.Histogram = field(repr=False)
    fetch_retries_total: metrics.Counter = field(repr=False)
    fetch_failures_total: metrics.Counter = field(repr=False)

    # --- Session metrics ---
    session_checks_total: metrics.Counter = field(repr=False)
    forced_logouts_total: metrics.Counter = field(repr=False)


def create_client_metrics(meter_name: str | None = None) -> ClientMetrics:
    """Create and return all client state metric instruments.

    Instruments are created once per meter name and are safe to call
    multiple times (OTel de-duplicates by name).
    """
    meter = metrics.get_meter(meter_name or _METER_NAME)

    return ClientMetrics(
        cache_lookups_total=meter.create_counter(
            name="watanhub.cache.lookups.total",
            description="Cache lookups by outcome (hit/miss)",
        ),
        cache_evictions_total=meter.create_counter(
            name="watanhub.cache.evictions.total",
            description="Entries removed by expiry or LRU eviction",
        ),
        cache_sync_errors_total=meter.create_counter(
            name="watanhub.cache.sync.errors.total",
            description="Failed writes/reads against the shared cross-tab storage",
        ),
        fetch_duration=meter.create_histogram(
            name="watanhub.fetch.duration",
            description="Duration of a single fetch attempt",
            unit="s",
        ),
        fetch_retries_total=meter.create_counter(
            name="watanhub.fetch.retries.total",
            description="Fetch retries scheduled after a failed attempt",
        ),
        fetch_failures_total=meter.create_counter(
            name="watanhub.fetch.failures.total",
            description="Fetches that exhausted their retries",
        ),
        session_checks_total=meter.create_counter(
            name="watanhub.session.checks.total",
            description="Session validations by outcome",
        ),
        forced_logouts_total=meter.create_counter(
            name="watanhub.session.forced_logouts.total",
            description="Forced logouts by reason",
        ),
    )


@lru_cache(maxsize=1)
def get_client_metrics() -> ClientMetrics:
    return create_client_metrics()
