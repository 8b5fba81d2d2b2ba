"""Best-effort user notification sinks."""

from __future__ import annotations

import json
import logging
from typing import Optional, Protocol

from pythonosc.udp_client import SimpleUDPClient

LOGGER = logging.getLogger(__name__)

NOTIFICATION_TITLE = "QuailSmart Update"


def _log_event(event: str, **fields: object) -> None:
    LOGGER.debug(json.dumps({"event": event, **fields}))


class Notifier(Protocol):
    """Notification collaborator consumed by the event log."""

    def is_permission_granted(self) -> bool:
        ...

    def notify(self, title: str, body: str) -> None:
        ...


class NullNotifier:
    """Notifier for hosts without a notification surface."""

    def is_permission_granted(self) -> bool:
        return False

    def notify(self, title: str, body: str) -> None:
        return None


class OscNotifier:
    """Sends ``(title, body)`` pairs to an OSC listener over UDP.

    Permission is the ``enabled`` flag from configuration. Sending never
    raises: UDP errors are logged at debug level and dropped.
    """

    def __init__(self, host: str, port: int, address: str = "/quail/notify", enabled: bool = True) -> None:
        self._address = address
        self._enabled = enabled
        self._client: Optional[SimpleUDPClient] = SimpleUDPClient(host, port) if enabled else None
        _log_event("osc_notifier_ready", host=host, port=port, address=address, enabled=enabled)

    def is_permission_granted(self) -> bool:
        return self._enabled and self._client is not None

    def notify(self, title: str, body: str) -> None:
        if self._client is None:
            return
        try:
            self._client.send_message(self._address, [str(title), str(body)])
        except OSError as exc:
            _log_event("osc_notify_error", address=self._address, error=str(exc))


__all__ = ["NOTIFICATION_TITLE", "Notifier", "NullNotifier", "OscNotifier"]
