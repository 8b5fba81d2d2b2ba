"""Dataclasses modelling sensor, actuator, schedule and log state."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

FEED_LOW_PCT = 20
FEED_MID_PCT = 60
FEED_MAX_PCT = 100
AMMONIA_HIGH_PPM = 20.0

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class PayloadError(ValueError):
    """Raised when a remote payload does not have the expected shape."""


class Device(str, Enum):
    """Closed set of actuators exposed by the controller."""

    FAN = "fan"
    HEATER = "heater"
    LED = "led"
    FEED = "feed"
    STEPPER1 = "stepper1"
    STEPPER2 = "stepper2"

    @property
    def is_momentary(self) -> bool:
        return self in _PULSE_SECONDS

    @property
    def pulse_seconds(self) -> Optional[float]:
        """Return the fixed pulse length, or None for persistent devices."""
        return _PULSE_SECONDS.get(self)

    @property
    def path(self) -> str:
        return f"controls/{self.value}"

    @property
    def label(self) -> str:
        return self.value.upper()


_PULSE_SECONDS: Dict[Device, float] = {
    Device.FEED: 5.0,
    Device.STEPPER1: 30.0,
    Device.STEPPER2: 30.0,
}

PERSISTENT_DEVICES = tuple(device for device in Device if not device.is_momentary)
MOMENTARY_DEVICES = tuple(device for device in Device if device.is_momentary)


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


def _require_mapping(raw: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise PayloadError(f"{what} payload must be an object, got {type(raw).__name__}")
    return raw


def _number(raw: Mapping[str, Any], key: str) -> float:
    try:
        value = raw[key]
    except KeyError as exc:
        raise PayloadError(f"missing field {key!r}") from exc
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadError(f"field {key!r} must be numeric, got {value!r}")
    try:
        number = float(value)
    except OverflowError as exc:
        raise PayloadError(f"field {key!r} is out of range") from exc
    if not math.isfinite(number):
        raise PayloadError(f"field {key!r} must be finite, got {value!r}")
    return number


def _flag(raw: Mapping[str, Any], key: str) -> bool:
    try:
        value = raw[key]
    except KeyError as exc:
        raise PayloadError(f"missing field {key!r}") from exc
    # Firmware occasionally writes 0/1 instead of JSON booleans.
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise PayloadError(f"field {key!r} must be boolean, got {value!r}")


@dataclass(frozen=True)
class SensorSnapshot:
    """Latest readings pushed by the controller."""

    temperature: float = 0.0
    humidity: float = 0.0
    ammonia: float = 0.0
    feed_level: int = 0

    @classmethod
    def from_payload(cls, raw: Any) -> "SensorSnapshot":
        data = _require_mapping(raw, "sensors")
        feed_level = _number(data, "feedLevel")
        if not 0 <= feed_level <= FEED_MAX_PCT:
            raise PayloadError(f"field 'feedLevel' must be within 0-{FEED_MAX_PCT}, got {feed_level!r}")
        return cls(
            temperature=_number(data, "temperature"),
            humidity=_number(data, "humidity"),
            ammonia=_number(data, "ammonia"),
            feed_level=int(round(feed_level)),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "humidity": self.humidity,
            "ammonia": self.ammonia,
            "feedLevel": self.feed_level,
        }

    @property
    def feed_status(self) -> str:
        if self.feed_level < FEED_LOW_PCT:
            return "LOW"
        if self.feed_level < FEED_MID_PCT:
            return "MID"
        return "FULL"

    @property
    def ammonia_status(self) -> str:
        return "High" if self.ammonia > AMMONIA_HIGH_PPM else "Safe"


@dataclass(frozen=True)
class ControlState:
    """Energized flag for every device in the closed device set."""

    fan: bool = False
    heater: bool = False
    led: bool = False
    feed: bool = False
    stepper1: bool = False
    stepper2: bool = False

    def __getitem__(self, device: Device) -> bool:
        return getattr(self, Device(device).value)

    @classmethod
    def from_payload(cls, raw: Any) -> "ControlState":
        data = _require_mapping(raw, "controls")
        # Unknown keys are ignored; the device set never grows at runtime.
        return cls(**{device.value: _flag(data, device.value) for device in Device})

    def to_payload(self) -> Dict[str, bool]:
        return {device.value: self[device] for device in Device}

    def as_dict(self) -> Dict[Device, bool]:
        return {device: self[device] for device in Device}


class ScheduleField(str, Enum):
    EGG_TIME = "egg_time"
    STOOL_TIME = "stool_time"
    FEED_TIME = "feed_time"
    LED_ON = "led_on"
    LED_OFF = "led_off"


TimeValue = Union[str, time]


def parse_time_of_day(value: TimeValue) -> str:
    """Normalise a wall-clock time into ``HH:MM`` (24h).

    Accepts ``datetime.time`` objects (seconds are dropped) or strings that are
    already ``HH:MM``. Anything else raises ``ValueError``.
    """
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if not isinstance(value, str):
        raise ValueError(f"time of day must be a string or time, got {type(value).__name__}")
    text = value.strip()
    if not _TIME_OF_DAY.match(text):
        raise ValueError(f"invalid time of day {value!r}, expected HH:MM")
    return text


@dataclass(frozen=True)
class Schedule:
    """Time-of-day automation settings. Fields are independent of each other."""

    egg_time: str = "08:00"
    stool_time: str = "09:00"
    feed_time: str = "07:00"
    led_on: str = "06:00"
    led_off: str = "18:00"

    def __post_init__(self) -> None:
        for item in fields(self):
            object.__setattr__(self, item.name, parse_time_of_day(getattr(self, item.name)))

    @classmethod
    def from_payload(cls, raw: Any) -> "Schedule":
        data = _require_mapping(raw, "schedule")
        values: Dict[str, str] = {}
        for schedule_field in ScheduleField:
            try:
                values[schedule_field.value] = parse_time_of_day(data[schedule_field.value])
            except KeyError as exc:
                raise PayloadError(f"missing field {schedule_field.value!r}") from exc
            except ValueError as exc:
                raise PayloadError(str(exc)) from exc
        return cls(**values)

    def with_field(self, schedule_field: Union[ScheduleField, str], value: TimeValue) -> "Schedule":
        name = ScheduleField(schedule_field).value
        return replace(self, **{name: parse_time_of_day(value)})

    def to_payload(self) -> Dict[str, str]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True)
class LogEntry:
    """Single immutable event log record."""

    id: int
    timestamp: datetime
    message: str
    severity: Severity = field(default=Severity.INFO)

    @property
    def time_label(self) -> str:
        return self.timestamp.strftime("%H:%M:%S")

    def __str__(self) -> str:
        return f"{self.time_label} [{self.severity.value.upper()}] {self.message}"


__all__ = [
    "AMMONIA_HIGH_PPM",
    "ControlState",
    "Device",
    "FEED_LOW_PCT",
    "FEED_MID_PCT",
    "LogEntry",
    "MOMENTARY_DEVICES",
    "PERSISTENT_DEVICES",
    "PayloadError",
    "Schedule",
    "ScheduleField",
    "SensorSnapshot",
    "Severity",
    "TimeValue",
    "parse_time_of_day",
]
