"""Entity, snapshot and alert models shared by the hub modules.

Bus and queue payloads stay plain ``dict`` objects with camelCase keys; the
``to_dict``/``from_dict`` helpers here are the only place that maps between
those wire names and the dataclass fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sensorcentral.shared.timers import WatchdogTimer


class SensorType(StrEnum):
    GAUGE = "gauge"
    COUNTER = "counter"
    DELTA = "delta"
    BINARY = "binary"


class AlertKind(StrEnum):
    TIMEOUT = "timeout"
    VALUE = "value"
    SAMPLE = "sample"


class ValueTest(StrEnum):
    EQUAL = "equal"
    GREATER = "greater"
    GREATER_OR_EQUAL = "greaterOrEqual"
    LESS = "less"
    LESS_OR_EQUAL = "lessOrEqual"


class NotifyUsing(StrEnum):
    NONE = "none"
    EMAIL = "email"
    PUSHOVER = "pushover"


class AlertEventType(StrEnum):
    DEVICE_TIMEOUT = "onDeviceTimeout"
    DEVICE_RESTART = "onDeviceRestart"
    DEVICE_WATCHDOG_RESET = "onDeviceWatchdogReset"
    DEVICE_NO_SENSOR_DATA = "onDeviceMessageNoSensor"
    SENSOR_TIMEOUT = "onSensorTimeout"
    SENSOR_SAMPLE = "onSensorSample"
    SENSOR_VALUE = "onSensorValue"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def parse_dt(value: str | datetime | None) -> datetime | None:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# ── Entities ────────────────────────────────────────────────────────────


@dataclass
class Device:
    id: str
    name: str
    house_id: str
    active: bool = True
    last_ping: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "houseId": self.house_id,
            "active": self.active,
            "lastPing": self.last_ping,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Device:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            house_id=data.get("houseId") or (data.get("house") or {}).get("id", ""),
            active=bool(data.get("active", True)),
            last_ping=data.get("lastPing"),
        )


@dataclass
class Sensor:
    id: str
    name: str
    type: SensorType
    device_id: str
    label: str = ""

    @property
    def is_binary(self) -> bool:
        return self.type == SensorType.BINARY

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": str(self.type),
            "deviceId": self.device_id,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Sensor:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=SensorType(data.get("type", SensorType.GAUGE)),
            device_id=data.get("deviceId") or (data.get("device") or {}).get("id", ""),
            label=data.get("label") or "",
        )


Target = Sensor | Device


@dataclass
class Notifier:
    """One notification recipient configured for a house."""

    id: str
    house_id: str
    user_id: str
    notify_type: NotifyUsing
    email: str | None = None
    pushover_user_key: str | None = None
    pushover_app_token: str | None = None
    muted_until: datetime | None = None

    def is_muted(self, now: datetime | None = None) -> bool:
        return self.muted_until is not None and self.muted_until > (now or utcnow())


# ── Cache snapshots ─────────────────────────────────────────────────────


@dataclass
class SensorSnapshot:
    device_id: str | None
    id: str
    dt: str
    value: float

    def to_dict(self) -> dict[str, Any]:
        return {"deviceId": self.device_id, "id": self.id, "dt": self.dt, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SensorSnapshot:
        return cls(device_id=data.get("deviceId"), id=data["id"], dt=data["dt"], value=data["value"])


@dataclass
class DeviceSnapshot:
    id: str
    dt: str
    restarts: int = 0
    timeouts: int = 0
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {"id": self.id, "dt": self.dt, "restarts": self.restarts, "timeouts": self.timeouts}
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceSnapshot:
        return cls(
            id=data["id"],
            dt=data["dt"],
            restarts=int(data.get("restarts", 0)),
            timeouts=int(data.get("timeouts", 0)),
            data=data.get("data"),
        )


# ── Alerts ──────────────────────────────────────────────────────────────


@dataclass
class Alert:
    """Alert as a tagged union on ``kind``.

    ``timeout_ms`` is set for timeout alerts, ``test``/``value`` for value
    alerts; sample alerts carry neither.
    """

    id: str
    kind: AlertKind
    target: Target
    active: bool = True
    owner_user_id: str | None = None
    notify_type: NotifyUsing = NotifyUsing.NONE
    notify_data: dict[str, Any] | None = None
    description: str = ""
    timeout_ms: int | None = None
    test: ValueTest | None = None
    value: float | None = None

    @property
    def target_id(self) -> str:
        return self.target.id

    @property
    def targets_sensor(self) -> bool:
        return isinstance(self.target, Sensor)

    @property
    def notifies(self) -> bool:
        return bool(self.owner_user_id) and self.notify_type != NotifyUsing.NONE

    def matches(self, observed: float) -> bool:
        """Whether an observed sample satisfies a value alert (``observed <test> value``)."""
        if self.kind != AlertKind.VALUE or self.test is None or self.value is None:
            return False
        configured = self.value
        if self.test == ValueTest.EQUAL:
            return observed == configured
        if self.test == ValueTest.GREATER:
            return observed > configured
        if self.test == ValueTest.GREATER_OR_EQUAL:
            return observed >= configured
        if self.test == ValueTest.LESS:
            return observed < configured
        if self.test == ValueTest.LESS_OR_EQUAL:
            return observed <= configured
        return False


@dataclass
class AlertWrapper:
    """Directory entry; the flags let system binary-sensor watchdogs be removed selectively."""

    alert: Alert
    is_binary: bool = False
    is_system: bool = False
    timer: WatchdogTimer | None = field(default=None, repr=False)
