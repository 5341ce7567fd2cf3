"""Shared fixtures for client state tests."""

from __future__ import annotations

import pytest

from client_state.errors import AuthBackendError
from client_state.models import Session, SessionUser
from client_state.storage import SharedStorage

START = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeAuthBackend:
    """Scriptable AuthBackend: hand it sessions or errors to return."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session
        self.get_errors: list[Exception] = []
        self.refresh_error: Exception | None = None
        self.get_calls = 0
        self.refresh_calls = 0
        self.sign_out_calls = 0

    async def get_session(self) -> Session | None:
        self.get_calls += 1
        if self.get_errors:
            raise self.get_errors.pop(0)
        return self.session

    async def refresh_session(self) -> Session:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        if self.session is None:
            raise AuthBackendError("No session to refresh", status_code=401)
        self.session = self.session.model_copy(
            update={"expires_at": self.session.expires_at + 3600}
        )
        return self.session

    async def sign_out(self, scope: str = "global") -> None:
        self.sign_out_calls += 1
        self.session = None


def make_session(expires_at: float, user_id: str = "42") -> Session:
    return Session(
        access_token="access",
        refresh_token="refresh",
        expires_at=expires_at,
        user=SessionUser(id=user_id, email="ana@example.com"),
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def shared() -> SharedStorage:
    return SharedStorage()
