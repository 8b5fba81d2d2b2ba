"""Identity collaborators producing the session's authenticated signal."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Callable, List, Optional, Protocol

import httpx

LOGGER = logging.getLogger(__name__)

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"
REFRESH_URL = "https://securetoken.googleapis.com/v1/token"
TOKEN_EXPIRY_MARGIN_S = 60.0

AuthCallback = Callable[[bool], None]


@dataclass(frozen=True)
class AuthOutcome:
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class AuthCollaborator(Protocol):
    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        ...

    async def sign_in_anonymously(self) -> AuthOutcome:
        ...


class _ListenerMixin:
    """Listener bookkeeping shared by the auth implementations."""

    _listeners: List[AuthCallback]

    def _add_listener(self, callback: AuthCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self, authenticated: bool) -> None:
        for callback in list(self._listeners):
            callback(authenticated)


class LocalAuth(_ListenerMixin):
    """Auth stand-in for the in-memory backend."""

    def __init__(self, authenticated: bool = True) -> None:
        self._listeners = []
        self._authenticated = authenticated

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        remove = self._add_listener(callback)
        asyncio.get_running_loop().call_soon(self._deliver_initial, callback)
        return remove

    async def sign_in_anonymously(self) -> AuthOutcome:
        self._authenticated = True
        self._notify(True)
        return AuthOutcome()

    def _deliver_initial(self, callback: AuthCallback) -> None:
        if callback in self._listeners:
            callback(self._authenticated)


def _firebase_error(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return f"HTTP {response.status_code}"


class FirebaseAnonymousAuth(_ListenerMixin):
    """Anonymous Firebase identity via the Identity Toolkit REST API.

    The first ``on_auth_change`` registration resolves the initial state: a
    configured refresh token is exchanged for an ID token, otherwise the
    session starts unauthenticated. ``get_token`` refreshes the ID token
    shortly before it expires and is suitable as a channel token provider.
    """

    def __init__(
        self,
        api_key: str,
        refresh_token: Optional[str] = None,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._listeners = []
        self._api_key = api_key
        self._refresh_token = refresh_token
        self._timeout_s = timeout_s
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._id_token: Optional[str] = None
        self._expires_at = 0.0
        self._resolved = False
        self._resolve_task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self._id_token is not None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout_s, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._resolve_task is not None and not self._resolve_task.done():
            self._resolve_task.cancel()
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        remove = self._add_listener(callback)
        loop = asyncio.get_running_loop()
        if self._resolve_task is None:
            self._resolve_task = loop.create_task(self._resolve_initial())
        elif self._resolved:
            loop.call_soon(self._deliver_current, callback)
        return remove

    async def sign_in_anonymously(self) -> AuthOutcome:
        try:
            client = await self._get_client()
            response = await client.post(
                SIGN_UP_URL,
                params={"key": self._api_key},
                json={"returnSecureToken": True},
            )
        except httpx.HTTPError as exc:
            LOGGER.warning("Anonymous sign-in failed: %s", exc)
            return AuthOutcome(error=str(exc) or exc.__class__.__name__)
        if not response.is_success:
            reason = _firebase_error(response)
            LOGGER.warning("Anonymous sign-in rejected: %s", reason)
            return AuthOutcome(error=reason)
        error = self._store_tokens(response, id_key="idToken", refresh_key="refreshToken", expiry_key="expiresIn")
        if error is not None:
            LOGGER.warning("Anonymous sign-in returned %s", error)
            return AuthOutcome(error=error)
        LOGGER.info("Signed in anonymously")
        self._notify(True)
        return AuthOutcome()

    async def get_token(self) -> Optional[str]:
        """Return a valid ID token, refreshing it when close to expiry."""
        async with self._lock:
            if self._id_token is not None and self._clock() < self._expires_at - TOKEN_EXPIRY_MARGIN_S:
                return self._id_token
            if self._refresh_token is None:
                return self._id_token
            outcome = await self._refresh()
            if not outcome.ok:
                LOGGER.warning("Token refresh failed: %s", outcome.error)
            return self._id_token

    # Internal helpers -----------------------------------------------------

    async def _resolve_initial(self) -> None:
        if self._refresh_token is not None:
            outcome = await self._refresh()
            if not outcome.ok:
                LOGGER.warning("Stored session could not be restored: %s", outcome.error)
        self._resolved = True
        self._notify(self.is_authenticated)

    def _deliver_current(self, callback: AuthCallback) -> None:
        if callback in self._listeners:
            callback(self.is_authenticated)

    async def _refresh(self) -> AuthOutcome:
        try:
            client = await self._get_client()
            response = await client.post(
                REFRESH_URL,
                params={"key": self._api_key},
                data={"grant_type": "refresh_token", "refresh_token": self._refresh_token or ""},
            )
        except httpx.HTTPError as exc:
            return AuthOutcome(error=str(exc) or exc.__class__.__name__)
        if not response.is_success:
            self._id_token = None
            return AuthOutcome(error=_firebase_error(response))
        error = self._store_tokens(response, id_key="id_token", refresh_key="refresh_token", expiry_key="expires_in")
        if error is not None:
            self._id_token = None
            return AuthOutcome(error=error)
        return AuthOutcome()

    def _store_tokens(self, response: httpx.Response, id_key: str, refresh_key: str, expiry_key: str) -> Optional[str]:
        """Keep the tokens from a successful reply. Returns an error for a malformed one."""
        try:
            payload = response.json()
            id_token = payload[id_key]
            refresh_token = payload.get(refresh_key)
            expires_in = float(payload.get(expiry_key, 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            return f"malformed token response ({exc.__class__.__name__})"
        if not isinstance(id_token, str) or not id_token:
            return "malformed token response (missing ID token)"
        self._id_token = id_token
        self._refresh_token = str(refresh_token or self._refresh_token or "") or None
        self._expires_at = self._clock() + expires_in
        return None


__all__ = ["AuthCallback", "AuthCollaborator", "AuthOutcome", "FirebaseAnonymousAuth", "LocalAuth"]
