"""Remote key-value store abstraction and an in-process implementation."""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

LOGGER = logging.getLogger(__name__)

_MISSING = object()


class SubscriptionError(RuntimeError):
    """Raised from a subscription the store has cancelled."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


@dataclass(frozen=True)
class WriteOutcome:
    """Result of a remote write. ``error`` is set only on failure."""

    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls) -> "WriteOutcome":
        return cls()

    @classmethod
    def failure(cls, reason: str) -> "WriteOutcome":
        return cls(error=reason or "unknown error")


class Subscription:
    """Lazy stream of whole-value snapshots for one key.

    Only the most recent undelivered snapshot is kept: a consumer that falls
    behind skips straight to the latest value. Iteration ends only after
    ``close()``; a store-side cancellation raises ``SubscriptionError``.
    """

    def __init__(self, path: str, on_close: Optional[Callable[["Subscription"], None]] = None) -> None:
        self.path = path
        self._on_close = on_close
        self._pending: Any = _MISSING
        self._error: Optional[str] = None
        self._closed = False
        self._wakeup = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active(self) -> bool:
        """False once closed or cancelled by the store."""
        return not self._closed and self._error is None

    def push(self, value: Any) -> None:
        """Offer a new snapshot, replacing any undelivered one."""
        if self._closed:
            return
        self._pending = value
        self._wakeup.set()

    def fail(self, reason: str) -> None:
        if self._closed:
            return
        self._error = reason
        self._wakeup.set()

    def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._pending = _MISSING
        self._wakeup.set()
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._error is not None:
                raise SubscriptionError(self.path, self._error)
            if self._pending is not _MISSING:
                value, self._pending = self._pending, _MISSING
                return value
            self._wakeup.clear()
            await self._wakeup.wait()


class RemoteStateChannel(Protocol):
    """Subset of the real-time store API used by the sync layer."""

    def subscribe(self, path: str) -> Subscription:
        ...

    def unsubscribe(self, subscription: Subscription) -> None:
        ...

    async def write(self, path: str, value: Any) -> WriteOutcome:
        ...


def split_path(path: str) -> List[str]:
    return [part for part in path.strip("/").split("/") if part]


def get_path(tree: Any, path: str) -> Any:
    """Return the value stored at ``path`` or None when absent."""
    node = tree
    for part in split_path(path):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def set_path(tree: Any, path: str, value: Any) -> Any:
    """Return a copy of ``tree`` with ``value`` stored at ``path``.

    ``None`` deletes the node and prunes parents left empty, matching the
    store's rule that empty objects do not exist.
    """
    parts = split_path(path)
    if not parts:
        return copy.deepcopy(value)
    root = copy.deepcopy(tree) if isinstance(tree, dict) else {}
    node = root
    parents = []
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        parents.append((node, part))
        node = child
    if value is None:
        node.pop(parts[-1], None)
        for parent, part in reversed(parents):
            if parent[part]:
                break
            del parent[part]
    else:
        node[parts[-1]] = copy.deepcopy(value)
    return root or None


def paths_overlap(left: str, right: str) -> bool:
    a, b = split_path(left), split_path(right)
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


class MemoryChannel:
    """In-process store with the same semantics as the remote one.

    Used by the ``memory`` backend for local runs and by tests. Writes to a
    path registered with ``inject_failure`` are rejected with the given reason.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._tree: Any = copy.deepcopy(initial) if initial else None
        self._subscriptions: List[Subscription] = []
        self._failures: Dict[str, str] = {}
        self.writes: List[tuple] = []

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    def snapshot(self, path: str = "") -> Any:
        return copy.deepcopy(get_path(self._tree, path))

    def inject_failure(self, path: str, reason: str) -> None:
        self._failures[path.strip("/")] = reason

    def clear_failure(self, path: str) -> None:
        self._failures.pop(path.strip("/"), None)

    def subscribe(self, path: str) -> Subscription:
        subscription = Subscription(path, on_close=self._release)
        self._subscriptions.append(subscription)
        subscription.push(self.snapshot(path))
        LOGGER.debug("Memory subscription opened on %s", path)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    async def write(self, path: str, value: Any) -> WriteOutcome:
        reason = self._failures.get(path.strip("/"))
        if reason is not None:
            return WriteOutcome.failure(reason)
        self.writes.append((path, copy.deepcopy(value)))
        self.set(path, value)
        return WriteOutcome.success()

    def set(self, path: str, value: Any) -> None:
        """Store ``value`` and notify overlapping subscriptions.

        Also used to simulate the controller firmware writing to the store.
        """
        self._tree = set_path(self._tree, path, value)
        for subscription in list(self._subscriptions):
            if paths_overlap(subscription.path, path):
                subscription.push(self.snapshot(subscription.path))

    # Internal -----------------------------------------------------------------

    def _release(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            LOGGER.debug("Memory subscription released on %s", subscription.path)


__all__ = [
    "MemoryChannel",
    "RemoteStateChannel",
    "Subscription",
    "SubscriptionError",
    "WriteOutcome",
    "get_path",
    "paths_overlap",
    "set_path",
    "split_path",
]
