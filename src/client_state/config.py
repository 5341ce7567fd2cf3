from __future__ import annotations

import os
import re

from pydantic import BaseModel, Field

from watanhub.observability import TelemetryConfig, env_bool

_MOBILE_UA = re.compile(r"Android|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)

HOUR = 60 * 60
MINUTE = 60


class CacheSettings(BaseModel):
    default_ttl: float = Field(
        default=5 * MINUTE,
        gt=0,
        description="TTL in seconds for entries stored without an explicit ttl.",
    )
    max_size: int = Field(default=100, ge=1, description="Entries kept before LRU eviction.")
    prefix: str = Field(
        default="watanhub_cache_",
        description="Shared-storage key prefix for mirrored cache records.",
    )
    cleanup_interval: float = Field(
        default=5 * MINUTE,
        gt=0,
        description="Seconds between sweeps of expired entries.",
    )
    single_flight: bool = Field(
        default=False,
        description="Share one in-flight fetch between concurrent misses on a key.",
    )


class SessionSettings(BaseModel):
    inactivity_timeout: float = Field(
        default=2 * HOUR,
        description="Idle seconds (tab active) after which the user is logged out.",
    )
    check_interval: float = Field(
        default=5 * MINUTE,
        gt=0,
        description="Seconds between periodic session checks.",
    )
    safety_buffer: float = Field(
        default=1 * MINUTE,
        ge=0,
        description="Clock-skew buffer subtracted from the session's expires_at.",
    )
    refresh_window: float = Field(
        default=10 * MINUTE,
        description="Refresh the token once it expires within this many seconds.",
    )
    startup_grace: float = Field(
        default=1 * MINUTE,
        ge=0,
        description="A missing session only counts as expired this long after initialization.",
    )
    inactivity_warning_grace: float = Field(
        default=30 * MINUTE,
        ge=0,
        description="Extra idle time during which extended sessions only get a warning.",
    )
    validation_retries: int = Field(
        default=2,
        ge=0,
        description="Retries for session validation failing with a network error.",
    )
    extended_session: bool = Field(
        default=False,
        description="Installed PWA or mobile device: longer timeouts and an inactivity warning.",
    )
    landing_path: str = Field(default="/", description="Route to navigate to after logout.")

    @classmethod
    def for_platform(cls, extended: bool) -> SessionSettings:
        if extended:
            return cls(
                inactivity_timeout=12 * HOUR,
                check_interval=10 * MINUTE,
                extended_session=True,
            )
        return cls()


class BackendSettings(BaseModel):
    supabase_url: str = Field(default="", description="Hosted auth/database base URL.")
    anon_key: str = Field(default="", description="Public anon key sent as the apikey header.")
    storage_key: str = Field(
        default="watanhub-auth",
        description="Shared-storage key holding the current session.",
    )
    timeout: float = Field(default=10.0, gt=0, description="HTTP timeout in seconds.")

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.anon_key)


class ClientConfig(BaseModel):
    """Top-level configuration for one client (tab)."""

    cache: CacheSettings = Field(default_factory=CacheSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    def resolve(self) -> ClientConfig:
        """Return a copy with env-var fallbacks applied."""
        extended = env_bool("WATANHUB_EXTENDED_SESSION", self.session.extended_session)
        session = (
            SessionSettings.for_platform(extended)
            if extended != self.session.extended_session
            else self.session
        )
        return self.model_copy(
            update={
                "cache": self.cache.model_copy(
                    update={
                        "default_ttl": float(
                            os.getenv("WATANHUB_CACHE_TTL_SECONDS", self.cache.default_ttl)
                        ),
                        "max_size": int(
                            os.getenv("WATANHUB_CACHE_MAX_SIZE", self.cache.max_size)
                        ),
                    }
                ),
                "session": session,
                "backend": self.backend.model_copy(
                    update={
                        "supabase_url": self.backend.supabase_url
                        or os.getenv("WATANHUB_SUPABASE_URL", ""),
                        "anon_key": self.backend.anon_key
                        or os.getenv("WATANHUB_SUPABASE_ANON_KEY", ""),
                        "storage_key": os.getenv(
                            "WATANHUB_AUTH_STORAGE_KEY", self.backend.storage_key
                        ),
                        "timeout": float(
                            os.getenv("WATANHUB_API_TIMEOUT", self.backend.timeout)
                        ),
                    }
                ),
                "telemetry": self.telemetry.resolve(),
            }
        )


def is_mobile_user_agent(user_agent: str) -> bool:
    return bool(_MOBILE_UA.search(user_agent))
