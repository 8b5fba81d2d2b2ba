"""Firebase Realtime Database channel over the REST and streaming APIs.

Streaming responses are server-sent events; the few fields Firebase uses are
parsed directly from the httpx line iterator.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from .channel import Subscription, WriteOutcome, set_path, split_path

LOGGER = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """Group raw server-sent-event lines into ``(event, data)`` pairs."""
    event = "message"
    data: list[str] = []
    async for line in lines:
        if not line:
            if data or event != "message":
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


def apply_put(tree: Any, path: str, data: Any) -> Any:
    """Apply a streaming ``put`` event relative to the subscribed key."""
    return set_path(tree, path, data)


def apply_patch(tree: Any, path: str, data: Any) -> Any:
    """Apply a streaming ``patch`` event: each child of ``data`` is a put."""
    if not isinstance(data, dict):
        return set_path(tree, path, data)
    base = "/".join(split_path(path))
    for key, value in data.items():
        tree = set_path(tree, f"{base}/{key}" if base else key, value)
    return tree


def _error_reason(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"HTTP {response.status_code}"


def _cancel_reason(data: str) -> str:
    try:
        reason = json.loads(data) if data else None
    except ValueError:
        reason = data
    return str(reason) if reason else "cancelled by server"


class FirebaseChannel:
    """Remote store backed by a Firebase Realtime Database instance."""

    def __init__(
        self,
        database_url: str,
        token_provider: Optional[TokenProvider] = None,
        timeout_s: float = 10.0,
        reconnect_delay_s: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = database_url.rstrip("/")
        self._token_provider = token_provider
        self._timeout_s = timeout_s
        self._reconnect_delay_s = reconnect_delay_s
        self._client = client
        self._owns_client = client is None
        self._streams: Dict[Subscription, asyncio.Task[None]] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout_s, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Stop every stream and close the HTTP client if we created it."""
        for subscription in list(self._streams):
            subscription.close()
        if self._client is not None and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def url_for(self, path: str) -> str:
        return f"{self._base_url}/{'/'.join(split_path(path))}.json"

    async def _params(self) -> Dict[str, str]:
        if self._token_provider is None:
            return {}
        token = await self._token_provider()
        return {"auth": token} if token else {}

    async def write(self, path: str, value: Any) -> WriteOutcome:
        try:
            client = await self._get_client()
            response = await client.put(
                self.url_for(path),
                params=await self._params(),
                json=value,
                follow_redirects=True,
            )
        except httpx.TimeoutException:
            LOGGER.warning("Write to %s timed out", path)
            return WriteOutcome.failure("request timed out")
        except httpx.HTTPError as exc:
            LOGGER.warning("Write to %s failed: %s", path, exc)
            return WriteOutcome.failure(str(exc) or exc.__class__.__name__)
        if not response.is_success:
            reason = _error_reason(response)
            LOGGER.warning("Write to %s rejected: %s", path, reason)
            return WriteOutcome.failure(reason)
        LOGGER.debug("Write to %s accepted", path)
        return WriteOutcome.success()

    def subscribe(self, path: str) -> Subscription:
        subscription = Subscription(path, on_close=self._release)
        task = asyncio.get_running_loop().create_task(self._stream(subscription))
        self._streams[subscription] = task
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    # Internal -----------------------------------------------------------------

    def _release(self, subscription: Subscription) -> None:
        task = self._streams.pop(subscription, None)
        if task is not None and not task.done():
            task.cancel()

    async def _stream(self, subscription: Subscription) -> None:
        path = subscription.path
        while subscription.active:
            try:
                await self._consume_stream(subscription)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status in (401, 403):
                    subscription.fail("permission denied")
                    return
                LOGGER.warning("Stream %s rejected with HTTP %s", path, status)
            except httpx.HTTPError as exc:
                LOGGER.warning("Stream %s dropped: %s", path, str(exc) or exc.__class__.__name__)
            if not subscription.active:
                return
            await asyncio.sleep(self._reconnect_delay_s)
            LOGGER.info("Reconnecting stream %s", path)

    async def _consume_stream(self, subscription: Subscription) -> None:
        client = await self._get_client()
        tree: Any = None
        async with client.stream(
            "GET",
            self.url_for(subscription.path),
            params=await self._params(),
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self._timeout_s, read=None),
            follow_redirects=True,
        ) as response:
            response.raise_for_status()
            LOGGER.info("Stream %s connected", subscription.path)
            async for event, data in iter_sse_events(response.aiter_lines()):
                if event in ("put", "patch"):
                    try:
                        payload = json.loads(data)
                        event_path, event_data = payload["path"], payload["data"]
                    except (ValueError, KeyError, TypeError):
                        LOGGER.warning("Ignoring malformed %s event on %s: %s", event, subscription.path, data)
                        continue
                    apply = apply_put if event == "put" else apply_patch
                    tree = apply(tree, event_path, event_data)
                    subscription.push(tree)
                elif event == "keep-alive":
                    continue
                elif event == "cancel":
                    subscription.fail(_cancel_reason(data))
                    return
                elif event == "auth_revoked":
                    LOGGER.info("Credential revoked for stream %s, reconnecting", subscription.path)
                    return
                else:
                    LOGGER.debug("Ignoring stream event %s on %s", event, subscription.path)


__all__ = ["FirebaseChannel", "TokenProvider", "apply_patch", "apply_put", "iter_sse_events"]
