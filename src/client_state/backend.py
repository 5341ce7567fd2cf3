from __future__ import annotations

import logging
import time
from typing import Protocol

import httpx
from pydantic import ValidationError

from client_state.errors import AuthBackendError, StorageError
from client_state.models import Session
from client_state.storage import SyncStorage

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "watanhub-auth"


class AuthBackend(Protocol):
    """Call contract of the hosted auth service used by the session monitor."""

    async def get_session(self) -> Session | None: ...

    async def refresh_session(self) -> Session: ...

    async def sign_out(self, scope: str = "global") -> None: ...


class SupabaseAuthClient:
    """Minimal client for the hosted auth REST API.

    The current session lives in the shared storage under ``storage_key`` so
    that every tab sees the same session and a logout clear removes it.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        anon_key: str,
        storage: SyncStorage,
        *,
        storage_key: str = DEFAULT_STORAGE_KEY,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._storage = storage
        self.storage_key = storage_key

    async def get_session(self) -> Session | None:
        try:
            raw = self._storage.get_item(self.storage_key)
        except StorageError as exc:
            raise AuthBackendError(f"Session storage unavailable: {exc}") from exc
        if raw is None:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable stored session")
            self._forget()
            return None

    def set_session(self, session: Session) -> None:
        try:
            self._storage.set_item(self.storage_key, session.model_dump_json())
        except StorageError as exc:
            raise AuthBackendError(f"Could not persist session: {exc}") from exc

    async def refresh_session(self) -> Session:
        current = await self.get_session()
        if current is None:
            raise AuthBackendError("No session to refresh", status_code=401)

        response = await self._post(
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": current.refresh_token},
        )
        payload = response.json()
        payload.setdefault("expires_at", time.time() + payload.get("expires_in", 3600))
        try:
            session = Session.model_validate(payload)
        except ValidationError as exc:
            raise AuthBackendError(f"Malformed refresh response: {exc}") from exc
        self.set_session(session)
        return session

    async def sign_out(self, scope: str = "global") -> None:
        current = await self.get_session()
        try:
            if current is not None:
                await self._post(
                    "/auth/v1/logout",
                    params={"scope": scope},
                    token=current.access_token,
                )
        except AuthBackendError as exc:
            # The session is already gone server-side.
            if exc.status_code not in (401, 403, 404):
                raise
        finally:
            self._forget()

    async def _post(
        self,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, str] | None = None,
        token: str | None = None,
    ) -> httpx.Response:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {token or self._anon_key}",
            "X-Client-Info": "watanhub-web",
        }
        try:
            response = await self._client.post(
                f"{self._base_url}{path}", params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise AuthBackendError(
                f"Auth request {path} failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise AuthBackendError(f"network error calling {path}: {exc}") from exc
        return response

    def _forget(self) -> None:
        try:
            self._storage.remove_item(self.storage_key)
        except StorageError as exc:
            logger.warning("Failed to remove stored session: %s", exc)
