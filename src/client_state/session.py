"""Session validity monitoring.

The monitor periodically checks the hosted auth session, refreshes tokens
before they lapse, tracks user activity and forces a logout on expiry or
inactivity. A forced logout is announced to other tabs through the shared
storage, which makes them clear their state and leave as well.

Only a definite answer logs the user out: an absent session after startup,
an expiry timestamp in the past, or inactivity. Backend and network errors
are reported to listeners and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from client_state.backend import AuthBackend
from client_state.config import SessionSettings
from client_state.errors import AuthBackendError, StorageError
from client_state.models import MonitorState, Session, SessionEvent, SessionInfo
from client_state.storage import StorageEvent, SyncStorage
from watanhub.observability import get_client_metrics, traced_session_check

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset(
    {"mousedown", "mousemove", "keypress", "scroll", "touchstart", "click"}
)

LOGOUT_SIGNAL_KEY = "watanhub_session_logout"
CONTROLLED_LOGOUT_KEY = "watanhub_controlled_logout"
LAST_ACTIVITY_KEY = "watanhub_last_activity"

_AUTH_KEY_PREFIXES = ("sb-",)
_AUTH_KEY_MARKERS = ("supabase", "watanhub", "auth")

SessionListener = Callable[[SessionEvent, Any], None]


class ClearableCache(Protocol):
    def clear(self) -> None: ...


def _log_navigation(path: str) -> None:
    logger.info("Navigating to %s", path)


class SessionMonitor:
    def __init__(
        self,
        backend: AuthBackend,
        storage: SyncStorage,
        settings: SessionSettings | None = None,
        *,
        cache: ClearableCache | None = None,
        navigate: Callable[[str], None] = _log_navigation,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or SessionSettings()
        self._backend = backend
        self._storage = storage
        self._cache = cache
        self._navigate = navigate
        self._clock = clock
        self._sleep = sleep
        self._metrics = get_client_metrics()

        self.state = MonitorState.UNINITIALIZED
        self.last_activity = clock()
        self.is_active = True
        self.is_initialized = False
        self.is_logging_out = False
        self.init_time = clock()

        self._listeners: list[SessionListener] = []
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = storage.subscribe(
            self._on_storage_event
        )

        logger.info(
            "Session monitor: extended=%s inactivity=%.0fmin interval=%.0fs",
            self.settings.extended_session,
            self.settings.inactivity_timeout / 60,
            self.settings.check_interval,
        )

    # --- lifecycle ---

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def dispose(self) -> None:
        await self.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()

    def reset(self) -> None:
        """Arm the monitor again after a logout, e.g. for a new sign-in."""
        self.is_logging_out = False
        self.is_initialized = False
        self.state = MonitorState.UNINITIALIZED
        self.last_activity = self.init_time = self._clock()
        self._remove(CONTROLLED_LOGOUT_KEY)

    async def _run_loop(self) -> None:
        while True:
            await self._sleep(self.settings.check_interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Periodic session check failed")

    async def tick(self) -> None:
        """One periodic check: validate the session, then inactivity."""
        if self.is_logging_out or not self.is_active:
            return
        await self.validate_session()
        await self.check_inactivity()

    # --- activity ---

    def record_activity(self, event_type: str) -> bool:
        if event_type not in ACTIVITY_EVENTS:
            return False
        self.last_activity = self._clock()
        self._save_activity()
        return True

    def set_active(self, active: bool) -> None:
        """Track tab visibility/focus."""
        if active:
            self.is_active = True
            self.last_activity = self._clock()
            logger.debug("Tab became visible, updating activity")
        else:
            self.is_active = False
            self._save_activity()
            logger.debug("Tab became hidden, saving activity")

    def _save_activity(self) -> None:
        try:
            self._storage.set_item(LAST_ACTIVITY_KEY, repr(self.last_activity))
        except StorageError as exc:
            logger.warning("Failed to save activity to storage: %s", exc)

    # --- validation ---

    async def validate_session(self) -> bool:
        if self.is_logging_out:
            logger.debug("Skipping session validation - logout in progress")
            return False
        if self._read(CONTROLLED_LOGOUT_KEY) is not None:
            logger.info("Controlled logout detected, stopping validation")
            self.is_logging_out = True
            return False

        previous = self.state
        self.state = MonitorState.VALIDATING
        retries = self.settings.validation_retries
        attempt = 0
        while True:
            try:
                session = await self._fetch_session(attempt)
                break
            except AuthBackendError as exc:
                if exc.is_network_error and attempt < retries:
                    attempt += 1
                    logger.info("Retrying session validation (attempt %d)", attempt)
                    await self._sleep(1.0 * attempt)
                    continue
                logger.error("Session validation error: %s", exc)
                return self._validation_failed(exc)
            except Exception as exc:
                logger.exception("Session validation failed")
                return self._validation_failed(exc)

        return await self._evaluate(session, previous)

    async def _fetch_session(self, attempt: int) -> Session | None:
        async with traced_session_check(
            attempt=attempt, initialized=self.is_initialized
        ) as span:
            session = await self._backend.get_session()
            if session is not None and session.user is not None:
                span.set_attribute("enduser.id", session.user.id)
            span.set_attribute("session.present", session is not None)
            return session

    def _validation_failed(self, exc: Exception) -> bool:
        self.state = MonitorState.ERROR
        self._metrics.session_checks_total.add(1, {"outcome": "error"})
        self.notify(SessionEvent.SESSION_ERROR, exc)
        return False

    async def _evaluate(self, session: Session | None, previous: MonitorState) -> bool:
        now = self._clock()
        if session is None:
            logger.info("No active session found")
            self._metrics.session_checks_total.add(1, {"outcome": "absent"})
            since_init = now - self.init_time
            if self.is_initialized and since_init > self.settings.startup_grace:
                logger.info("Session expired after grace period, triggering logout")
                self.state = MonitorState.EXPIRED
                self.notify(SessionEvent.SESSION_EXPIRED)
                await self.force_logout("Session expired")
            else:
                logger.info("No session found but within grace period, not logging out")
                self.state = previous
            return False

        if session.expires_at - self.settings.safety_buffer <= now:
            logger.info("Session expired, forcing logout")
            self._metrics.session_checks_total.add(1, {"outcome": "expired"})
            self.state = MonitorState.EXPIRED
            await self.force_logout("Session expired")
            return False

        if session.expires_at - now < self.settings.refresh_window:
            logger.info("Token expiring soon, attempting refresh")
            await self.refresh_token()

        if not self.is_initialized:
            self.is_initialized = True
            self.init_time = now
            logger.info("Session monitor initialized")

        self.state = MonitorState.VALID
        self._metrics.session_checks_total.add(1, {"outcome": "valid"})
        self.notify(SessionEvent.SESSION_VALID, session)
        return True

    async def refresh_token(self) -> bool:
        try:
            session = await self._backend.refresh_session()
        except AuthBackendError as exc:
            logger.error("Token refresh failed: %s", exc)
            self.notify(SessionEvent.TOKEN_REFRESH_FAILED, exc)
            return False
        except Exception as exc:
            logger.exception("Token refresh error")
            self.notify(SessionEvent.TOKEN_REFRESH_ERROR, exc)
            return False

        logger.info("Token refreshed successfully")
        self.notify(SessionEvent.TOKEN_REFRESHED, session)
        return True

    # --- inactivity ---

    async def check_inactivity(self) -> bool:
        """Force a logout when the user has been idle too long.

        Returns whether a logout was triggered.
        """
        if self.is_logging_out:
            return False
        idle = self._clock() - self.last_activity
        timeout = self.settings.inactivity_timeout
        if not (self.is_initialized and self.is_active and idle > timeout):
            return False

        minutes_inactive = round(idle / 60)
        grace_end = timeout + self.settings.inactivity_warning_grace
        if self.settings.extended_session and idle < grace_end:
            self.notify(
                SessionEvent.INACTIVITY_WARNING,
                {
                    "minutes_inactive": minutes_inactive,
                    "time_until_logout": round((grace_end - idle) / 60),
                },
            )
            return False

        logger.info("User inactive for %d minutes, logging out", minutes_inactive)
        await self.force_logout("Inactive session timeout")
        return True

    # --- logout ---

    async def force_logout(self, reason: str = "Session ended") -> None:
        if self.is_logging_out:
            return
        self.is_logging_out = True
        self.state = MonitorState.EXPIRED
        logger.info(
            "Force logout initiated: %s (idle %.0fs, initialized=%s)",
            reason,
            self._clock() - self.last_activity,
            self.is_initialized,
        )
        self._metrics.forced_logouts_total.add(1, {"reason": reason})

        # Sign out before signalling: other tabs clear the stored session on the signal.
        try:
            await self._backend.sign_out(scope="global")
        except Exception:
            logger.exception("Sign-out during forced logout failed")
        self._write(LOGOUT_SIGNAL_KEY, repr(self._clock()))

        self.clear_all_storage()
        self.notify(SessionEvent.FORCE_LOGOUT, {"reason": reason})
        self._navigate(self.settings.landing_path)

    def handle_global_logout(self) -> None:
        """Another tab logged out: clear local state and leave."""
        if self.is_logging_out:
            return
        logger.info("Logout detected in another tab")
        self.is_logging_out = True
        self.state = MonitorState.EXPIRED
        self.clear_all_storage()
        self.notify(SessionEvent.GLOBAL_LOGOUT)
        self._navigate(self.settings.landing_path)

    def prepare_for_logout(self) -> None:
        """Quiesce before an app-initiated sign-out so checks do not race it."""
        logger.info("Session monitor preparing for logout")
        self.is_logging_out = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._write(CONTROLLED_LOGOUT_KEY, repr(self._clock()))
        self.clear_all_storage()

    def clear_all_storage(self) -> None:
        if self._cache is not None:
            self._cache.clear()
        try:
            keys = [
                key
                for key in self._storage.keys()
                if key.startswith(_AUTH_KEY_PREFIXES)
                or any(marker in key for marker in _AUTH_KEY_MARKERS)
            ]
        except StorageError as exc:
            logger.warning("Failed to list storage for logout: %s", exc)
            return
        for key in keys:
            self._remove(key)

    # --- listeners ---

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def notify(self, event: SessionEvent, data: Any = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception:
                logger.exception("Session listener error")

    def session_info(self) -> SessionInfo:
        return SessionInfo(
            last_activity=self.last_activity,
            is_active=self.is_active,
            time_since_activity=self._clock() - self.last_activity,
            state=self.state,
            is_initialized=self.is_initialized,
        )

    # --- storage ---

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.removed:
            return
        if event.key == LOGOUT_SIGNAL_KEY:
            self.handle_global_logout()
        elif event.key == CONTROLLED_LOGOUT_KEY:
            logger.info("Controlled logout detected, stopping session management")
            self.is_logging_out = True
        elif event.key == LAST_ACTIVITY_KEY:
            try:
                self.last_activity = float(event.new_value or "")
            except ValueError:
                self.last_activity = self._clock()

    def _read(self, key: str) -> str | None:
        try:
            return self._storage.get_item(key)
        except StorageError as exc:
            logger.warning("Failed to read %s from storage: %s", key, exc)
            return None

    def _write(self, key: str, value: str) -> None:
        try:
            self._storage.set_item(key, value)
        except StorageError as exc:
            logger.warning("Failed to write %s to storage: %s", key, exc)

    def _remove(self, key: str) -> None:
        try:
            self._storage.remove_item(key)
        except StorageError as exc:
            logger.warning("Failed to remove %s from storage: %s", key, exc)
