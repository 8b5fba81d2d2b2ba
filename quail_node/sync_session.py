"""Session orchestration: auth lifecycle, subscriptions and live mirrors."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .auth import AuthCollaborator
from .channel import RemoteStateChannel, Subscription, SubscriptionError, WriteOutcome
from .device_controller import DeviceCategoryError, DeviceController, SleepFn
from .event_log import EventLog
from .schedule_manager import ScheduleManager
from .state import (
    ControlState,
    Device,
    LogEntry,
    PayloadError,
    Schedule,
    ScheduleField,
    SensorSnapshot,
    Severity,
    TimeValue,
)

LOGGER = logging.getLogger(__name__)

SENSORS_KEY = "sensors"
CONTROLS_KEY = "controls"
SCHEDULE_KEY = "schedule"
SUBSCRIBED_KEYS = (SENSORS_KEY, CONTROLS_KEY, SCHEDULE_KEY)

ChangeListener = Callable[[str], None]


class SessionState(str, Enum):
    BOOTSTRAPPING = "bootstrapping"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    TERMINATED = "terminated"


class SyncSession:
    """Owns the live mirrors and wires remote deliveries into the controllers.

    Every subscription feeds a single queue drained by one dispatch task; that
    task is the only code that replaces the mirrors. Commands never raise to
    the caller, faults end up in the event log.
    """

    def __init__(
        self,
        channel: RemoteStateChannel,
        auth: AuthCollaborator,
        log: Optional[EventLog] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._channel = channel
        self._auth = auth
        self._log = log or EventLog()
        self._state = SessionState.BOOTSTRAPPING
        self._sensors = SensorSnapshot()
        self._controls = ControlState()
        self._schedule = Schedule()
        self._controller = DeviceController(channel, self._log, sleep=sleep)
        self._schedule_manager = ScheduleManager(channel, self._log, initial=self._schedule)
        self._subscriptions: Dict[str, Subscription] = {}
        self._updates: asyncio.Queue[Tuple[str, Any]] = asyncio.Queue()
        self._tasks: List[asyncio.Task[None]] = []
        self._sign_in_task: Optional[asyncio.Task[None]] = None
        self._unsubscribe_auth: Optional[Callable[[], None]] = None
        self._listeners: List[ChangeListener] = []
        self._active = asyncio.Event()
        self._started = False

    # Read-only surface ------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def sensors(self) -> SensorSnapshot:
        return self._sensors

    @property
    def controls(self) -> ControlState:
        return self._controls

    @property
    def schedule(self) -> Schedule:
        """Last schedule delivered by the store."""
        return self._schedule

    @property
    def schedule_draft(self) -> Schedule:
        """Schedule including local edits that have not been saved yet."""
        return self._schedule_manager.record

    @property
    def logs(self) -> Tuple[LogEntry, ...]:
        return self._log.entries

    @property
    def event_log(self) -> EventLog:
        return self._log

    @property
    def controller(self) -> DeviceController:
        return self._controller

    @property
    def schedule_manager(self) -> ScheduleManager:
        return self._schedule_manager

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener`` with the key of every applied delivery."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # Lifecycle ----------------------------------------------------------------

    async def start(self) -> None:
        """Register for auth changes. Subscriptions open once authenticated."""
        if self._started:
            return
        self._started = True
        self._unsubscribe_auth = self._auth.on_auth_change(self._on_auth_change)
        LOGGER.info("Session bootstrapping")

    async def wait_until_active(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._active.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        """Tear down subscriptions exactly once. Pending pulse reverts keep running."""
        if self._state is SessionState.TERMINATED:
            return
        self._state = SessionState.TERMINATED
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        subscriptions, self._subscriptions = self._subscriptions, {}
        for subscription in subscriptions.values():
            self._channel.unsubscribe(subscription)
        tasks, self._tasks = self._tasks, []
        if self._sign_in_task is not None:
            tasks.append(self._sign_in_task)
            self._sign_in_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        LOGGER.info("Session terminated")

    # Commands -----------------------------------------------------------------

    async def toggle(self, device: Union[Device, str]) -> WriteOutcome:
        resolved = self._resolve_device(device)
        if resolved is None:
            return WriteOutcome.failure(f"unknown device {device!r}")
        try:
            return await self._controller.toggle(resolved)
        except DeviceCategoryError as exc:
            self._log.record(str(exc), Severity.ERROR)
            return WriteOutcome.failure(str(exc))

    async def pulse(self, device: Union[Device, str]) -> WriteOutcome:
        resolved = self._resolve_device(device)
        if resolved is None:
            return WriteOutcome.failure(f"unknown device {device!r}")
        try:
            return await self._controller.pulse(resolved)
        except DeviceCategoryError as exc:
            self._log.record(str(exc), Severity.ERROR)
            return WriteOutcome.failure(str(exc))

    def set_schedule_field(self, field: Union[ScheduleField, str], value: TimeValue) -> bool:
        try:
            self._schedule_manager.set_field(field, value)
        except ValueError as exc:
            self._log.record(f"Invalid schedule value for {field}: {exc}", Severity.ERROR)
            return False
        return True

    async def save_schedule(self) -> WriteOutcome:
        return await self._schedule_manager.save()

    def clear_log(self) -> None:
        self._log.clear()

    # Auth transitions ---------------------------------------------------------

    def _on_auth_change(self, authenticated: bool) -> None:
        if self._state is SessionState.TERMINATED:
            return
        if authenticated:
            if self._state is SessionState.ACTIVE:
                return
            self._activate()
            return
        if self._state is SessionState.ACTIVE:
            LOGGER.warning("Auth signal lost while active; keeping subscriptions")
            return
        self._state = SessionState.AUTHENTICATING
        if self._sign_in_task is None or self._sign_in_task.done():
            self._sign_in_task = asyncio.get_running_loop().create_task(self._sign_in())

    async def _sign_in(self) -> None:
        try:
            outcome = await self._auth.sign_in_anonymously()
        except Exception as exc:
            LOGGER.exception("Anonymous sign-in raised")
            self._log.record(f"Auth error: {str(exc) or exc.__class__.__name__}", Severity.ERROR)
            return
        if not outcome.ok:
            self._log.record(f"Auth error: {outcome.error}", Severity.ERROR)

    def _activate(self) -> None:
        self._state = SessionState.ACTIVE
        self._log.record("User authenticated successfully", Severity.SUCCESS)
        loop = asyncio.get_running_loop()
        for key in SUBSCRIBED_KEYS:
            subscription = self._channel.subscribe(key)
            self._subscriptions[key] = subscription
            self._tasks.append(loop.create_task(self._pump(key, subscription)))
        self._tasks.append(loop.create_task(self._dispatch()))
        self._active.set()
        LOGGER.info("Session active, subscribed to %s", ", ".join(SUBSCRIBED_KEYS))

    # Delivery path ------------------------------------------------------------

    async def _pump(self, key: str, subscription: Subscription) -> None:
        try:
            async for value in subscription:
                await self._updates.put((key, value))
        except SubscriptionError as exc:
            self._log.record(f"Subscription to {key} failed: {exc.reason}", Severity.ERROR)

    async def _dispatch(self) -> None:
        while True:
            key, value = await self._updates.get()
            try:
                self.apply_update(key, value)
            except Exception:
                LOGGER.exception("Failed to apply %s delivery", key)
            finally:
                self._updates.task_done()

    def apply_update(self, key: str, value: Any) -> bool:
        """Replace the mirror for ``key``; malformed or absent payloads are ignored."""
        if value is None:
            LOGGER.debug("Ignoring absent %s payload", key)
            return False
        try:
            if key == SENSORS_KEY:
                self._sensors = SensorSnapshot.from_payload(value)
            elif key == CONTROLS_KEY:
                self._controls = ControlState.from_payload(value)
                self._controller.on_remote_update(self._controls)
            elif key == SCHEDULE_KEY:
                self._schedule = Schedule.from_payload(value)
                self._schedule_manager.on_remote_update(self._schedule)
            else:
                LOGGER.debug("Ignoring delivery for unknown key %s", key)
                return False
        except PayloadError as exc:
            LOGGER.warning("Ignoring malformed %s payload: %s", key, exc)
            return False
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                LOGGER.exception("Change listener failed for %s", key)
        return True

    def _resolve_device(self, device: Union[Device, str]) -> Optional[Device]:
        try:
            return Device(device)
        except ValueError:
            self._log.record(f"Unknown device: {device}", Severity.ERROR)
            return None


__all__ = [
    "CONTROLS_KEY",
    "ChangeListener",
    "SCHEDULE_KEY",
    "SENSORS_KEY",
    "SUBSCRIBED_KEYS",
    "SessionState",
    "SyncSession",
]
