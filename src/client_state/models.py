from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

V = TypeVar("V")


class _Missing:
    """Sentinel type for "no cached value"."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


# --- Pydantic models (external boundaries) ---


class PersistedRecord(BaseModel):
    """Cache entry as mirrored into the shared cross-tab storage."""

    value: Any
    expires_at: float
    last_accessed: float


class SessionUser(BaseModel):
    id: str
    email: str | None = None
    role: str | None = None


class Session(BaseModel):
    """Auth session as issued by the hosted auth API."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = 3600
    # Epoch seconds.
    expires_at: float
    user: SessionUser | None = None


class SessionEvent(str, enum.Enum):
    SESSION_VALID = "session_valid"
    SESSION_ERROR = "session_error"
    SESSION_EXPIRED = "session_expired"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    TOKEN_REFRESH_ERROR = "token_refresh_error"
    INACTIVITY_WARNING = "inactivity_warning"
    FORCE_LOGOUT = "force_logout"
    GLOBAL_LOGOUT = "global_logout"


class MonitorState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    VALIDATING = "validating"
    VALID = "valid"
    EXPIRED = "expired"
    ERROR = "error"


class FetchStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class FetchOptions(BaseModel):
    """Per-binding options for a data fetcher."""

    cache_ttl: float = Field(default=300.0, gt=0, description="Seconds a fetched value stays cached.")
    retry_attempts: int = Field(default=3, ge=0, description="Retries after the first failed attempt.")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff delay; doubles per attempt.")
    timeout: float | None = Field(default=10.0, description="Per-attempt timeout in seconds; None disables it.")
    revalidate_on_focus: bool = True
    focus_revalidate_after: float = Field(
        default=30.0,
        description="Focus only triggers a refetch once the data is older than this.",
    )
    revalidate_on_reconnect: bool = True
    enabled: bool = True


# --- Dataclasses (internal state) ---


@dataclass
class CacheEntry(Generic[V]):
    key: str
    value: V
    expires_at: float
    last_accessed: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_size: int
    expired: int
    active_timers: int
    sync_degraded: bool = False


@dataclass(frozen=True)
class SessionInfo:
    last_activity: float
    is_active: bool
    time_since_activity: float
    state: MonitorState
    is_initialized: bool
