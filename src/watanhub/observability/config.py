from __future__ import annotations

import os

from pydantic import BaseModel, Field


class TelemetryConfig(BaseModel):
    """Configuration for client state telemetry and observability."""

    service_name: str = Field(
        default="watanhub-client",
        description="OTel service name; used as the primary identifier in traces.",
    )
    enabled: bool = Field(
        default=True,
        description="Master switch for OTel instrumentation.",
    )
    otlp_endpoint: str | None = Field(
        default=None,
        description=(
            "OTLP collector endpoint (e.g. http://localhost:4317). "
            "Falls back to OTEL_EXPORTER_OTLP_ENDPOINT env var."
        ),
    )
    otlp_protocol: str = Field(
        default="grpc",
        description="OTLP protocol: 'grpc' or 'http/protobuf'.",
    )
    otlp_headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers for the OTLP exporter (e.g. auth tokens).",
    )
    log_level: str = Field(
        default="INFO",
        description="Python logging level. Falls back to WATANHUB_LOG_LEVEL env var.",
    )
    batch: bool = Field(
        default=True,
        description="Use BatchSpanProcessor (True) or SimpleSpanProcessor (False).",
    )
    instrument_httpx: bool = Field(
        default=True,
        description="Auto-instrument httpx.AsyncClient calls to the auth backend.",
    )

    def resolve(self) -> TelemetryConfig:
        """Return a copy with env-var fallbacks applied."""
        return self.model_copy(
            update={
                "enabled": env_bool("WATANHUB_OTEL_ENABLED", self.enabled),
                "otlp_endpoint": self.otlp_endpoint
                or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
                "otlp_protocol": os.getenv(
                    "OTEL_EXPORTER_OTLP_PROTOCOL", self.otlp_protocol
                ),
                "log_level": os.getenv("WATANHUB_LOG_LEVEL", self.log_level),
                "service_name": os.getenv(
                    "WATANHUB_OTEL_SERVICE_NAME", self.service_name
                ),
            }
        )


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")
