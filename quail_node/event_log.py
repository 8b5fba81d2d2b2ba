"""Bounded newest-first event log with notification side channel."""

from __future__ import annotations

import itertools
import logging
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Tuple

from .notifier import NOTIFICATION_TITLE, Notifier, NullNotifier
from .state import LogEntry, Severity

LOGGER = logging.getLogger(__name__)

MAX_ENTRIES = 50

LogListener = Callable[[LogEntry], None]

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.ERROR: logging.ERROR,
}


class EventLog:
    """In-memory record of system events, newest entry first."""

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        capacity: int = MAX_ENTRIES,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._notifier = notifier or NullNotifier()
        self._capacity = capacity
        self._clock = clock
        self._ids = itertools.count(1)
        self._entries: List[LogEntry] = []
        self._listeners: List[LogListener] = []

    @property
    def entries(self) -> Tuple[LogEntry, ...]:
        return tuple(self._entries)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries)

    def record(self, message: str, severity: Severity = Severity.INFO) -> LogEntry:
        """Prepend a new entry, evict beyond capacity, and notify once."""
        entry = LogEntry(
            id=next(self._ids),
            timestamp=self._clock(),
            message=message,
            severity=Severity(severity),
        )
        self._entries.insert(0, entry)
        del self._entries[self._capacity:]
        LOGGER.log(_LEVELS[entry.severity], "[%s] %s", entry.severity.value, message)
        self._emit_notification(entry)
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                LOGGER.exception("Log listener failed for entry %d", entry.id)
        return entry

    def clear(self) -> None:
        self._entries.clear()
        LOGGER.debug("Event log cleared")

    def add_listener(self, listener: LogListener) -> Callable[[], None]:
        """Call ``listener`` with each recorded entry. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit_notification(self, entry: LogEntry) -> None:
        try:
            if self._notifier.is_permission_granted():
                self._notifier.notify(NOTIFICATION_TITLE, entry.message)
        except Exception as exc:  # pragma: no cover - notifier contract says never raise
            LOGGER.debug("Notification skipped: %s", exc)


__all__ = ["EventLog", "LogListener", "MAX_ENTRIES"]
