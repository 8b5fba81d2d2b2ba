"""Actuator command logic: persistent toggles and self-reverting pulses."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set

from .channel import RemoteStateChannel, WriteOutcome
from .event_log import EventLog
from .state import ControlState, Device, Severity

LOGGER = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class DeviceCategoryError(ValueError):
    """Raised when a command does not match the device's interaction model."""


class DeviceController:
    """Issues actuator writes and tracks the last remote value per device.

    Local state only changes through ``on_remote_update``; commands request a
    write and report the outcome to the event log. Pulse reverts run as
    independent tasks driven by ``sleep`` and are never cancelled.
    """

    def __init__(self, channel: RemoteStateChannel, log: EventLog, sleep: SleepFn = asyncio.sleep) -> None:
        self._channel = channel
        self._log = log
        self._sleep = sleep
        self._remote: Dict[Device, bool] = {device: False for device in Device}
        self._reverts: Dict[Device, Set[asyncio.Task[None]]] = {device: set() for device in Device}

    def last_known(self, device: Device) -> bool:
        return self._remote[Device(device)]

    @property
    def remote_state(self) -> ControlState:
        return ControlState(**{device.value: value for device, value in self._remote.items()})

    def on_remote_update(self, controls: ControlState) -> None:
        """Replace every last-known value. Pending reverts are left alone."""
        self._remote = controls.as_dict()

    async def toggle(self, device: Device) -> WriteOutcome:
        device = Device(device)
        if device.is_momentary:
            raise DeviceCategoryError(f"{device.label} is a momentary device and cannot be toggled")
        new_state = not self._remote[device]
        outcome = await self._channel.write(device.path, new_state)
        if outcome.ok:
            self._log.record(f"{device.label} turned {'ON' if new_state else 'OFF'}", Severity.INFO)
        else:
            self._log.record(f"Failed to toggle {device.value}: {outcome.error}", Severity.ERROR)
        return outcome

    async def pulse(self, device: Device) -> WriteOutcome:
        device = Device(device)
        duration = device.pulse_seconds
        if duration is None:
            raise DeviceCategoryError(f"{device.label} is a persistent device and cannot be pulsed")
        outcome = await self._channel.write(device.path, True)
        if not outcome.ok:
            self._log.record(f"Failed to trigger {device.value}: {outcome.error}", Severity.ERROR)
            return outcome
        self._log.record(f"Activated {device.label}", Severity.SUCCESS)
        self._schedule_revert(device, duration)
        return outcome

    def pending_reverts(self, device: Optional[Device] = None) -> int:
        if device is not None:
            return len(self._reverts[Device(device)])
        return sum(len(tasks) for tasks in self._reverts.values())

    async def wait_for_reverts(self, timeout: Optional[float] = None) -> bool:
        """Wait until every scheduled revert has fired. Returns False on timeout."""
        tasks = [task for tasks in self._reverts.values() for task in tasks]
        if not tasks:
            return True
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            LOGGER.warning("%d revert(s) still pending after %.1fs", len(pending), timeout or 0.0)
        return not pending

    # Internal helpers -----------------------------------------------------

    def _schedule_revert(self, device: Device, duration: float) -> None:
        task = asyncio.get_running_loop().create_task(self._revert(device, duration))
        tasks = self._reverts[device]
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        LOGGER.debug("Revert for %s scheduled in %.1fs", device.value, duration)

    async def _revert(self, device: Device, duration: float) -> None:
        await self._sleep(duration)
        outcome = await self._channel.write(device.path, False)
        if outcome.ok:
            LOGGER.debug("Reverted %s", device.value)
        else:
            LOGGER.warning("Revert of %s failed: %s", device.value, outcome.error)


__all__ = ["DeviceCategoryError", "DeviceController", "SleepFn"]
