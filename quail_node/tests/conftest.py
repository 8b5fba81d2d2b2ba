"""Shared fakes for the sync layer tests."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from quail_node.auth import AuthCallback, AuthOutcome
from quail_node.channel import MemoryChannel, Subscription, WriteOutcome
from quail_node.event_log import EventLog


async def settle(rounds: int = 20) -> None:
    """Let ready tasks run until the loop is quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class VirtualClock:
    """Deterministic replacement for ``asyncio.sleep`` driven by ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = itertools.count()
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []

    async def sleep(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + delay, next(self._seq), future))
        await future

    @property
    def pending(self) -> int:
        return len(self._sleepers)

    async def advance(self, seconds: float) -> None:
        # Tasks created just before must register their sleeps at the current time.
        await settle()
        target = self.now + seconds
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self.now = deadline
            if not future.done():
                future.set_result(None)
            await settle()
        self.now = target
        await settle()


@dataclass
class RecordedWrite:
    path: str
    value: Any
    at: float


class RecordingChannel(MemoryChannel):
    """Memory channel that timestamps every attempted write with a clock."""

    def __init__(self, clock: Optional[VirtualClock] = None, initial: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(initial)
        self._clock = clock
        self.attempts: List[RecordedWrite] = []

    async def write(self, path: str, value: Any) -> WriteOutcome:
        self.attempts.append(RecordedWrite(path, value, self._clock.now if self._clock else 0.0))
        return await super().write(path, value)


@dataclass
class FakeNotifier:
    granted: bool = True
    sent: List[Tuple[str, str]] = field(default_factory=list)

    def is_permission_granted(self) -> bool:
        return self.granted

    def notify(self, title: str, body: str) -> None:
        self.sent.append((title, body))


class ScriptedAuth:
    """Auth collaborator whose signals and sign-in results are set by the test."""

    def __init__(self, sign_in_results: Optional[List[Union[AuthOutcome, Exception]]] = None) -> None:
        self.listeners: List[AuthCallback] = []
        self.sign_in_calls = 0
        self._results = list(sign_in_results or [])

    def on_auth_change(self, callback: AuthCallback) -> Callable[[], None]:
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback) if callback in self.listeners else None

    def emit(self, authenticated: bool) -> None:
        for callback in list(self.listeners):
            callback(authenticated)

    async def sign_in_anonymously(self) -> AuthOutcome:
        self.sign_in_calls += 1
        outcome = self._results.pop(0) if self._results else AuthOutcome()
        if isinstance(outcome, Exception):
            raise outcome
        if outcome.ok:
            self.emit(True)
        return outcome


class CountingChannel(MemoryChannel):
    """Memory channel counting subscribe and unsubscribe calls."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(initial)
        self.subscribed: List[str] = []
        self.unsubscribed: List[str] = []

    def subscribe(self, path: str) -> Subscription:
        self.subscribed.append(path)
        return super().subscribe(path)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.unsubscribed.append(subscription.path)
        super().unsubscribe(subscription)


@pytest.fixture
def loop() -> asyncio.AbstractEventLoop:
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def event_log(notifier: FakeNotifier) -> EventLog:
    return EventLog(notifier=notifier)


@pytest.fixture
def recording_channel(clock: VirtualClock) -> RecordingChannel:
    return RecordingChannel(clock)
