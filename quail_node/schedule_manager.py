"""Editable automation schedule committed as a single record."""

from __future__ import annotations

import logging
from typing import Union

from .channel import RemoteStateChannel, WriteOutcome
from .event_log import EventLog
from .state import Schedule, ScheduleField, Severity, TimeValue

LOGGER = logging.getLogger(__name__)

SCHEDULE_PATH = "schedule"


class ScheduleManager:
    """Holds the schedule draft; remote pushes overwrite unsaved edits."""

    def __init__(self, channel: RemoteStateChannel, log: EventLog, initial: Schedule = Schedule()) -> None:
        self._channel = channel
        self._log = log
        self._record = initial
        self._dirty = False

    @property
    def record(self) -> Schedule:
        return self._record

    @property
    def dirty(self) -> bool:
        """True while local edits have not been saved or overwritten."""
        return self._dirty

    def set_field(self, field: Union[ScheduleField, str], value: TimeValue) -> Schedule:
        """Replace one field. Raises ``ValueError`` for unknown fields or bad times."""
        self._record = self._record.with_field(field, value)
        self._dirty = True
        return self._record

    def on_remote_update(self, record: Schedule) -> None:
        if self._dirty and record != self._record:
            LOGGER.info("Remote schedule update replaced unsaved edits")
        self._record = record
        self._dirty = False

    async def save(self) -> WriteOutcome:
        snapshot = self._record
        outcome = await self._channel.write(SCHEDULE_PATH, snapshot.to_payload())
        if outcome.ok:
            if self._record == snapshot:
                self._dirty = False
            self._log.record("Schedule updated successfully", Severity.SUCCESS)
        else:
            self._log.record(f"Failed to save schedule: {outcome.error}", Severity.ERROR)
        return outcome


__all__ = ["SCHEDULE_PATH", "ScheduleManager"]
