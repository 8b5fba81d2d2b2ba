"""Tests for the anonymous Firebase identity and the local stand-in."""

from __future__ import annotations

import asyncio
from typing import List

import httpx

from conftest import settle
from quail_node.auth import REFRESH_URL, SIGN_UP_URL, FirebaseAnonymousAuth, LocalAuth


class FakeTime:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _auth(handler, refresh_token=None, clock=None) -> FirebaseAnonymousAuth:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FirebaseAnonymousAuth(
        "api-key",
        refresh_token=refresh_token,
        client=client,
        clock=clock or FakeTime(),
    )


def test_initial_state_without_refresh_token_is_unauthenticated(loop: asyncio.AbstractEventLoop) -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("no request expected")

    auth = _auth(handler)
    signals: List[bool] = []

    async def scenario() -> None:
        auth.on_auth_change(signals.append)
        await settle()
        late: List[bool] = []
        auth.on_auth_change(late.append)
        await settle()
        assert late == [False]

    loop.run_until_complete(scenario())
    assert signals == [False]


def test_sign_in_anonymously_stores_token_and_notifies(loop: asyncio.AbstractEventLoop) -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"idToken": "id-1", "refreshToken": "refresh-1", "expiresIn": "3600"})

    auth = _auth(handler)
    signals: List[bool] = []

    async def scenario():
        auth.on_auth_change(signals.append)
        await settle()
        return await auth.sign_in_anonymously()

    outcome = loop.run_until_complete(scenario())

    assert outcome.ok
    assert signals == [False, True]
    assert auth.is_authenticated
    assert auth.refresh_token == "refresh-1"
    assert str(requests[0].url).startswith(SIGN_UP_URL)
    assert requests[0].url.params["key"] == "api-key"
    assert loop.run_until_complete(auth.get_token()) == "id-1"


def test_sign_in_rejection_reports_firebase_message(loop: asyncio.AbstractEventLoop) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"code": 400, "message": "ADMIN_ONLY_OPERATION"}})

    auth = _auth(handler)
    outcome = loop.run_until_complete(auth.sign_in_anonymously())
    assert outcome.error == "ADMIN_ONLY_OPERATION"
    assert not auth.is_authenticated


def test_refresh_token_restores_session_and_renews_before_expiry(loop: asyncio.AbstractEventLoop) -> None:
    clock = FakeTime()
    issued = iter(["id-a", "id-b"])
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"id_token": next(issued), "refresh_token": "refresh-2", "expires_in": "3600"},
        )

    auth = _auth(handler, refresh_token="refresh-1", clock=clock)
    signals: List[bool] = []

    async def scenario() -> tuple:
        auth.on_auth_change(signals.append)
        await settle()
        first = await auth.get_token()
        clock.now += 3600 - 30
        second = await auth.get_token()
        return first, second

    first, second = loop.run_until_complete(scenario())
    assert signals == [True]
    assert (first, second) == ("id-a", "id-b")
    assert len(requests) == 2
    assert str(requests[0].url).startswith(REFRESH_URL)
    assert b"grant_type=refresh_token" in requests[0].content
    assert auth.refresh_token == "refresh-2"


def test_failed_restore_starts_unauthenticated(loop: asyncio.AbstractEventLoop) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "TOKEN_EXPIRED"}})

    auth = _auth(handler, refresh_token="stale")
    signals: List[bool] = []

    async def scenario() -> None:
        auth.on_auth_change(signals.append)
        await settle()

    loop.run_until_complete(scenario())
    assert signals == [False]


def test_local_auth_signals_and_signs_in(loop: asyncio.AbstractEventLoop) -> None:
    auth = LocalAuth(authenticated=False)
    signals: List[bool] = []

    async def scenario() -> None:
        remove = auth.on_auth_change(signals.append)
        await settle()
        await auth.sign_in_anonymously()
        remove()
        await auth.sign_in_anonymously()

    loop.run_until_complete(scenario())
    assert signals == [False, True]
    assert auth.is_authenticated


def test_malformed_success_reply_is_reported_as_error(loop: asyncio.AbstractEventLoop) -> None:
    replies = iter([httpx.Response(200, content=b"<html>captive portal</html>"), httpx.Response(200, json={})])

    def handler(request: httpx.Request) -> httpx.Response:
        return next(replies)

    auth = _auth(handler)
    first = loop.run_until_complete(auth.sign_in_anonymously())
    second = loop.run_until_complete(auth.sign_in_anonymously())

    assert first.error.startswith("malformed token response")
    assert second.error == "malformed token response (KeyError)"
    assert not auth.is_authenticated
