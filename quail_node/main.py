"""Entrypoint for the headless farm monitoring node."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .auth import FirebaseAnonymousAuth, LocalAuth
from .channel import MemoryChannel
from .configuration import BACKEND_MEMORY, AppConfig, load_config, load_default_config
from .event_log import EventLog
from .firebase import FirebaseChannel
from .notifier import Notifier, NullNotifier, OscNotifier
from .state import ControlState, Device, LogEntry, Schedule, SensorSnapshot
from .sync_session import SENSORS_KEY, SyncSession

LOGGER = logging.getLogger(__name__)

SIMULATED_SENSORS = SensorSnapshot(temperature=37.5, humidity=62.0, ammonia=8.0, feed_level=74)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Monitoring and control node for the quail farm controller.")
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to configuration YAML. Defaults to bundled config.yaml if omitted.",
    )
    parser.add_argument(
        "--toggle",
        action="append",
        default=[],
        choices=[device.value for device in Device if not device.is_momentary],
        help="Toggle a persistent device once the session is active (repeatable).",
    )
    parser.add_argument(
        "--pulse",
        action="append",
        default=[],
        choices=[device.value for device in Device if device.is_momentary],
        help="Pulse a momentary device once the session is active (repeatable).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Exit after issuing commands instead of monitoring until interrupted.",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def simulated_store() -> Dict[str, Any]:
    """Initial tree for the memory backend."""
    return {
        "sensors": SIMULATED_SENSORS.to_payload(),
        "controls": ControlState().to_payload(),
        "schedule": Schedule().to_payload(),
    }


def build_notifier(config: AppConfig) -> Notifier:
    notifications = config.notifications
    if not notifications.enabled:
        return NullNotifier()
    return OscNotifier(notifications.host, notifications.port, notifications.address)


def build_session(config: AppConfig) -> Tuple[SyncSession, List[Any]]:
    """Create the session plus the resources that need closing afterwards."""
    log = EventLog(notifier=build_notifier(config))
    if config.store.backend == BACKEND_MEMORY:
        channel = MemoryChannel(simulated_store())
        return SyncSession(channel, LocalAuth(authenticated=False), log=log), []
    auth = FirebaseAnonymousAuth(
        config.auth.api_key,
        refresh_token=config.auth.refresh_token,
        timeout_s=config.store.timeout_s,
    )
    firebase = FirebaseChannel(
        config.store.database_url,
        token_provider=auth.get_token,
        timeout_s=config.store.timeout_s,
        reconnect_delay_s=config.store.reconnect_delay_s,
    )
    return SyncSession(firebase, auth, log=log), [firebase, auth]


def _print_entry(entry: LogEntry) -> None:
    print(str(entry))


def _report_change(session: SyncSession, key: str) -> None:
    if key != SENSORS_KEY:
        return
    sensors = session.sensors
    LOGGER.info(
        "Sensors: %.1f°C %.1f%% ammonia %.1f ppm (%s) feed %d%% (%s)",
        sensors.temperature,
        sensors.humidity,
        sensors.ammonia,
        sensors.ammonia_status,
        sensors.feed_level,
        sensors.feed_status,
    )


async def run_commands(session: SyncSession, toggles: Iterable[str], pulses: Iterable[str]) -> None:
    for device in toggles:
        await session.toggle(device)
    for device in pulses:
        await session.pulse(device)


async def async_main(args: argparse.Namespace) -> None:
    config = load_config(args.config) if args.config else load_default_config()
    logging.basicConfig(level=getattr(logging, config.logging.level.upper(), logging.INFO))

    session, resources = build_session(config)
    session.event_log.add_listener(_print_entry)
    session.add_listener(lambda key: _report_change(session, key))

    try:
        await session.start()
        if not await session.wait_until_active(config.session.activation_timeout_s):
            LOGGER.error("Session not authenticated after %.0fs", config.session.activation_timeout_s)
            return
        await run_commands(session, args.toggle, args.pulse)
        if not args.once:
            await asyncio.Event().wait()
    finally:
        await session.stop()
        # Reverts already scheduled must still reach the store before exit.
        await session.controller.wait_for_reverts(config.session.revert_grace_s)
        for resource in resources:
            await resource.close()


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(async_main(args))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")


if __name__ == "__main__":
    main()
