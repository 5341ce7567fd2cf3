from __future__ import annotations


class ClientStateError(Exception):
    """Base class for errors raised by the client state layer."""


# --- Shared storage ---


class StorageError(ClientStateError):
    """The shared cross-tab storage rejected an operation."""


class StorageQuotaExceededError(StorageError):
    def __init__(self, key: str, used: int, quota: int) -> None:
        super().__init__(
            f"Writing {key!r} would use {used} bytes of a {quota} byte quota"
        )
        self.key = key
        self.used = used
        self.quota = quota


class StorageUnavailableError(StorageError):
    """Storage is disabled or the tab's handle was detached."""


# --- Fetching ---


class FetchError(ClientStateError):
    """A data fetch failed after exhausting its retries.

    The last underlying exception is chained as ``__cause__``.
    """

    def __init__(self, key: str, attempts: int) -> None:
        super().__init__(f"Fetch for {key!r} failed after {attempts} attempt(s)")
        self.key = key
        self.attempts = attempts


class SessionExpiredError(ClientStateError):
    def __init__(self, reason: str = "Session expired") -> None:
        super().__init__(reason)
        self.reason = reason


# --- Auth backend ---


class AuthBackendError(ClientStateError):
    """The hosted auth backend returned an error or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_network_error(self) -> bool:
        return self.status_code is None
