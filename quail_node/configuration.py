"""Configuration loading and dataclasses for the farm node."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

BACKEND_FIREBASE = "firebase"
BACKEND_MEMORY = "memory"
BACKENDS = (BACKEND_FIREBASE, BACKEND_MEMORY)


@dataclass(frozen=True)
class StoreConfig:
    backend: str
    database_url: str = ""
    timeout_s: float = 10.0
    reconnect_delay_s: float = 5.0

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(f"store.backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}")
        if self.backend == BACKEND_FIREBASE and not self.database_url:
            raise ValueError("store.database_url is required for the firebase backend")
        if self.timeout_s <= 0:
            raise ValueError("store.timeout_s must be greater than zero")
        if self.reconnect_delay_s < 0:
            raise ValueError("store.reconnect_delay_s must not be negative")


@dataclass(frozen=True)
class AuthConfig:
    api_key: str = ""
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class NotificationConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9001
    address: str = "/quail/notify"

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"notifications.port must be 1-65535, got {self.port}")
        if not self.address.startswith("/"):
            raise ValueError("notifications.address must start with '/'")


@dataclass(frozen=True)
class SessionConfig:
    revert_grace_s: float = 35.0
    activation_timeout_s: float = 30.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str


@dataclass(frozen=True)
class AppConfig:
    store: StoreConfig
    auth: AuthConfig
    notifications: NotificationConfig
    session: SessionConfig
    logging: LoggingConfig


def load_config(path: Path) -> AppConfig:
    """Load configuration from a YAML file."""
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return parse_config(raw)


def parse_config(raw: Any) -> AppConfig:
    if not isinstance(raw, dict):
        raise ValueError("configuration root must be a mapping")
    return AppConfig(
        store=_parse_store(raw.get("store", {})),
        auth=_parse_auth(raw.get("auth", {})),
        notifications=_parse_notifications(raw.get("notifications", {})),
        session=_parse_session(raw.get("session", {})),
        logging=LoggingConfig(level=str((raw.get("logging") or {}).get("level", "INFO"))),
    )


def _section(raw: Any) -> dict:
    return raw if isinstance(raw, dict) else {}


def _parse_store(raw: Any) -> StoreConfig:
    raw = _section(raw)
    return StoreConfig(
        backend=str(raw.get("backend", BACKEND_MEMORY)),
        database_url=str(raw.get("database_url") or ""),
        timeout_s=float(raw.get("timeout_s", 10.0)),
        reconnect_delay_s=float(raw.get("reconnect_delay_s", 5.0)),
    )


def _parse_auth(raw: Any) -> AuthConfig:
    raw = _section(raw)
    refresh_token = raw.get("refresh_token")
    return AuthConfig(
        api_key=str(raw.get("api_key") or ""),
        refresh_token=str(refresh_token) if refresh_token else None,
    )


def _parse_notifications(raw: Any) -> NotificationConfig:
    raw = _section(raw)
    return NotificationConfig(
        enabled=bool(raw.get("enabled", False)),
        host=str(raw.get("host", "127.0.0.1")),
        port=int(raw.get("port", 9001)),
        address=str(raw.get("address", "/quail/notify")),
    )


def _parse_session(raw: Any) -> SessionConfig:
    raw = _section(raw)
    return SessionConfig(
        revert_grace_s=float(raw.get("revert_grace_s", 35.0)),
        activation_timeout_s=float(raw.get("activation_timeout_s", 30.0)),
    )


def load_default_config() -> AppConfig:
    """Load the default config.yaml shipped with the package."""
    path = Path(__file__).resolve().parent / "config.yaml"
    return load_config(path)


__all__ = [
    "AppConfig",
    "AuthConfig",
    "BACKEND_FIREBASE",
    "BACKEND_MEMORY",
    "LoggingConfig",
    "NotificationConfig",
    "SessionConfig",
    "StoreConfig",
    "load_config",
    "load_default_config",
    "parse_config",
]
