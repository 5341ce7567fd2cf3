from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from opentelemetry import trace

from watanhub.observability.config import TelemetryConfig
from watanhub.observability.logging import configure_logging

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)


def configure_telemetry(
    config: TelemetryConfig | None = None,
) -> TracerProvider | None:
    """Set up logging and the OpenTelemetry tracing pipeline.

    Returns the configured ``TracerProvider``, or ``None`` if telemetry is
    disabled, no endpoint is configured, or setup fails (in which case
    tracing degrades to no-ops).
    """
    if config is None:
        config = TelemetryConfig()
    config = config.resolve()

    configure_logging(config.log_level)

    if not config.enabled:
        logger.info("Client telemetry disabled (WATANHUB_OTEL_ENABLED=false)")
        return None

    if config.otlp_endpoint is None:
        logger.info("No OTLP endpoint configured; tracing will be no-op")
        return None

    try:
        provider = _setup_otel(config, config.otlp_endpoint)
        trace.set_tracer_provider(provider)
        _auto_instrument(config, provider)
    except Exception:
        logger.exception(
            "Failed to configure OTel telemetry; tracing will be no-op"
        )
        return None

    return provider


def _setup_otel(config: TelemetryConfig, endpoint: str) -> TracerProvider:
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider as _TracerProvider

    resource = Resource.create({"service.name": config.service_name})
    provider = _TracerProvider(resource=resource)
    provider.add_span_processor(_build_processor(config, endpoint))

    logger.info("Configuring telemetry via OTel SDK (endpoint=%s)", endpoint)
    return provider


def _build_processor(config: TelemetryConfig, endpoint: str):
    from opentelemetry.sdk.trace.export import (
        BatchSpanProcessor,
        SimpleSpanProcessor,
    )

    exporter = _build_exporter(config, endpoint)
    if config.batch:
        return BatchSpanProcessor(exporter)
    return SimpleSpanProcessor(exporter)


def _build_exporter(config: TelemetryConfig, endpoint: str):
    headers = dict(config.otlp_headers) or None

    if config.otlp_protocol == "http/protobuf":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )

        return OTLPSpanExporter(endpoint=endpoint, headers=headers)

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter,
    )

    return OTLPSpanExporter(endpoint=endpoint, headers=headers)


def _auto_instrument(config: TelemetryConfig, provider: TracerProvider) -> None:
    if not config.instrument_httpx:
        return
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

    HTTPXClientInstrumentor().instrument(tracer_provider=provider)
    logger.debug("httpx auto-instrumentation enabled")
