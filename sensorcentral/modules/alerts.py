"""Watchdog & Rule Engine.

Keeps an in-memory directory of active alerts per target id, runs one
watchdog timer per timeout alert, evaluates value/sample rules against the
live sensor stream and mirrors entity CRUD events into the directory.
Every active device also gets a system watchdog that announces a
``watchdogReset`` when the device goes quiet.
Storage stays the source of truth; the directory can always be rebuilt by
``load()``.
"""

import asyncio
import functools
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from sensorcentral.hub.constants import (
    CONTROL_TIMEOUT,
    CONTROL_WATCHDOG_RESET,
    CRUD_CREATE,
    CRUD_DELETE,
    CRUD_UPDATE,
    KNOWN,
    QUEUE_NOTIFY,
    TOPIC_CONTROL,
    TOPIC_SENSOR,
    control_channel,
    device_channel,
)
from sensorcentral.hub.core import Module
from sensorcentral.hub.models import (
    Alert,
    AlertEventType,
    AlertKind,
    AlertWrapper,
    Device,
    Sensor,
    SensorType,
    utcnow,
)
from sensorcentral.hub.queue import QueuePublishError
from sensorcentral.modules.ingestion import lookup
from sensorcentral.shared.timers import WatchdogTimer

logger = logging.getLogger(__name__)

T = TypeVar("T")
Selector = Callable[[AlertWrapper], bool]


def system_binary(wrapper: AlertWrapper) -> bool:
    return wrapper.is_system and wrapper.is_binary


def system_device(wrapper: AlertWrapper) -> bool:
    return wrapper.is_system and not wrapper.is_binary


def selector_from(spec: dict[str, Any] | None) -> Selector | None:
    """Build a selector from ``{"isSystem": bool, "isBinary": bool}``; missing keys match anything."""
    if not spec:
        return None

    def select(wrapper: AlertWrapper) -> bool:
        if "isSystem" in spec and wrapper.is_system != bool(spec["isSystem"]):
            return False
        if "isBinary" in spec and wrapper.is_binary != bool(spec["isBinary"]):
            return False
        return True

    return select


def timeout_data(timeout_ms: int) -> dict[str, Any]:
    """Timeout values for templates; seconds and minutes round up."""
    return {
        "timeout": {
            "ms": timeout_ms,
            "seconds": math.ceil(timeout_ms / 1000),
            "minutes": math.ceil(timeout_ms / 60000),
        }
    }


class AlertDirectory:
    """Alert wrappers keyed by target id behind a single gate.

    Every method takes the gate, does synchronous work only and releases it,
    so callers never hold it across storage or broker I/O.
    """

    def __init__(self):
        self._entries: dict[str, list[AlertWrapper]] = {}
        self._gate = asyncio.Lock()

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    @property
    def target_ids(self) -> list[str]:
        return list(self._entries)

    async def add(self, wrapper: AlertWrapper) -> bool:
        """Insert and arm a wrapper.

        Returns False (and leaves the timer stopped) for a duplicate alert id
        on the same target or a second system binary-sensor watchdog.
        """
        target_id = wrapper.alert.target_id
        async with self._gate:
            entries = self._entries.get(target_id, [])
            if any(existing.alert.id == wrapper.alert.id for existing in entries):
                return False
            if system_binary(wrapper) and any(system_binary(existing) for existing in entries):
                return False
            if wrapper.timer is not None:
                wrapper.timer.start()
            self._entries.setdefault(target_id, []).append(wrapper)
            return True

    async def remove(self, target_id: str, selector: Selector | None = None) -> list[AlertWrapper]:
        """Remove wrappers for a target (all, or those matching ``selector``), stopping their timers."""
        async with self._gate:
            return self._remove_locked(target_id, selector)

    async def remove_alert(self, alert_id: str, selector: Selector | None = None) -> list[AlertWrapper]:
        async with self._gate:
            removed = []
            for target_id in list(self._entries):
                removed.extend(
                    self._remove_locked(
                        target_id,
                        lambda w: w.alert.id == alert_id and (selector is None or selector(w)),
                    )
                )
            return removed

    async def retarget(self, target_id: str, target: Sensor | Device) -> int:
        """Rewrite ``alert.target`` in place on every wrapper for ``target_id``."""
        async with self._gate:
            entries = self._entries.get(target_id, [])
            for wrapper in entries:
                wrapper.alert.target = target
            return len(entries)

    async def traverse(self, target_id: str, visitor: Callable[[AlertWrapper], T | None]) -> list[T]:
        """Apply a synchronous visitor to each wrapper of a target; collect non-None results."""
        async with self._gate:
            results = []
            for wrapper in self._entries.get(target_id, ()):
                result = visitor(wrapper)
                if result is not None:
                    results.append(result)
            return results

    async def get(self, target_id: str) -> list[AlertWrapper]:
        async with self._gate:
            return list(self._entries.get(target_id, ()))

    async def clear(self) -> int:
        async with self._gate:
            count = 0
            for target_id in list(self._entries):
                count += len(self._remove_locked(target_id, None))
            return count

    def _remove_locked(self, target_id: str, selector: Selector | None) -> list[AlertWrapper]:
        entries = self._entries.get(target_id)
        if not entries:
            return []
        kept, removed = [], []
        for wrapper in entries:
            (removed if selector is None or selector(wrapper) else kept).append(wrapper)
        for wrapper in removed:
            if wrapper.timer is not None:
                wrapper.timer.stop()
        if kept:
            self._entries[target_id] = kept
        else:
            del self._entries[target_id]
        return removed


@dataclass
class PendingNotification:
    alert: Alert
    event_type: AlertEventType
    data: dict[str, Any]


class AlertEngine(Module):
    """Watchdog timers and rule evaluation on top of the broadcast bus."""

    def __init__(self, hub, directory: AlertDirectory | None = None, module_id: str = "alerts"):
        super().__init__(module_id, hub)
        self.directory = directory if directory is not None else AlertDirectory()
        self.settings = hub.config.alerts
        self._stopped = False
        self._crud_handlers = {
            ("alert", CRUD_CREATE): self._on_alert_create,
            ("alert", CRUD_UPDATE): self._on_alert_update,
            ("alert", CRUD_DELETE): self._on_alert_delete,
            ("sensor", CRUD_CREATE): self._on_sensor_create,
            ("sensor", CRUD_UPDATE): self._on_sensor_update,
            ("sensor", CRUD_DELETE): self._on_target_delete,
            ("device", CRUD_CREATE): self._on_device_create,
            ("device", CRUD_UPDATE): self._on_device_update,
            ("device", CRUD_DELETE): self._on_target_delete,
        }

    async def initialize(self):
        await self.hub.bus.subscribe(f"{TOPIC_CONTROL}.*", self.on_control_event)
        await self.hub.bus.subscribe(f"{TOPIC_SENSOR}.{KNOWN}.*", self.on_sensor_sample)
        await self.hub.bus.subscribe(device_channel(True), self.on_device_activity)
        await self.load()

    async def shutdown(self):
        # no CRUD event may arm a timer once the directory is cleared
        self._stopped = True
        await self.hub.bus.unsubscribe(f"{TOPIC_CONTROL}.*", self.on_control_event)
        await self.hub.bus.unsubscribe(f"{TOPIC_SENSOR}.{KNOWN}.*", self.on_sensor_sample)
        await self.hub.bus.unsubscribe(device_channel(True), self.on_device_activity)
        stopped = await self.directory.clear()
        self.logger.info("Stopped %d alert(s)", stopped)

    # ── Startup ─────────────────────────────────────────────────────────

    async def load(self) -> int:
        """Arm every active alert in storage plus one watchdog per active device and per binary sensor."""
        armed = 0
        for alert in await self.hub.storage.get_alerts(active_only=True):
            if await self.arm(alert):
                armed += 1

        for device in await self.hub.storage.get_devices(active_only=True):
            if await self.arm_device_watchdog(device):
                armed += 1

        if self.settings.binary_sensor_alerts_disabled:
            self.logger.warning("ALERTS_BINARY_SENSOR_DISABLE is set, not arming binary sensor watchdogs")
        else:
            for sensor in await self.hub.storage.get_sensors(SensorType.BINARY):
                if await self.arm_binary_sensor(sensor):
                    armed += 1

        self.logger.info("Armed %d alert(s) across %d target(s)", armed, len(self.directory.target_ids))
        return armed

    def binary_sensor_alert(self, sensor: Sensor) -> Alert:
        return Alert(
            id=f"binary-sensor-{sensor.id}",
            kind=AlertKind.TIMEOUT,
            target=sensor,
            timeout_ms=self.settings.binary_sensor_timeout_ms,
            description=f"Binary sensor watchdog for {sensor.id}",
        )

    def device_watchdog_alert(self, device: Device) -> Alert:
        return Alert(
            id=f"device-watchdog-{device.id}",
            kind=AlertKind.TIMEOUT,
            target=device,
            timeout_ms=self.settings.default_timeout_ms,
            description=f"Device watchdog for {device.id}",
        )

    async def arm(self, alert: Alert, is_binary: bool = False, is_system: bool = False) -> bool:
        """Wrap, start and insert an alert. Inactive alerts are never armed, nor is anything after shutdown."""
        if self._stopped or not alert.active:
            return False
        wrapper = AlertWrapper(alert=alert, is_binary=is_binary, is_system=is_system)
        if alert.kind == AlertKind.TIMEOUT:
            timeout_ms = alert.timeout_ms or self.settings.default_timeout_ms
            wrapper.timer = WatchdogTimer(timeout_ms, functools.partial(self.on_timeout, wrapper), name=alert.id)
        added = await self.directory.add(wrapper)
        if added:
            self.logger.debug("Armed %s alert %s on %s", alert.kind, alert.id, alert.target_id)
        return added

    async def arm_binary_sensor(self, sensor: Sensor) -> bool:
        if self.settings.binary_sensor_alerts_disabled:
            return False
        return await self.arm(self.binary_sensor_alert(sensor), is_binary=True, is_system=True)

    async def arm_device_watchdog(self, device: Device) -> bool:
        if not device.active:
            return False
        return await self.arm(self.device_watchdog_alert(device), is_system=True)

    # ── CRUD mirrors ────────────────────────────────────────────────────

    async def on_control_event(self, channel: str, payload: dict[str, Any]):
        parts = channel.split(".")
        if len(parts) != 3:
            return
        handler = self._crud_handlers.get((parts[1], parts[2]))
        if handler is None:
            return
        self.logger.debug("Handling %s", channel)
        await handler(payload.get("new") or {}, payload.get("old") or {}, payload)

    async def _on_alert_create(self, new: dict, old: dict, payload: dict):
        alert_id = new.get("id")
        alert = await lookup(self.hub.storage.get_alert, alert_id)
        if alert is None:
            self.logger.warning("Alert %s from create event not found in storage", alert_id)
            return
        await self.arm(alert)

    async def _on_alert_update(self, new: dict, old: dict, payload: dict):
        alert_id = new.get("id") or old.get("id")
        await self.directory.remove_alert(alert_id, lambda w: not w.is_system)
        await self._on_alert_create({"id": alert_id}, old, payload)

    async def _on_alert_delete(self, new: dict, old: dict, payload: dict):
        alert_id = old.get("id") or new.get("id")
        removed = await self.directory.remove_alert(alert_id, selector_from(payload.get("selector")))
        self.logger.info("Removed %d wrapper(s) for deleted alert %s", len(removed), alert_id)

    async def _on_sensor_create(self, new: dict, old: dict, payload: dict):
        sensor = Sensor.from_dict(new)
        if sensor.is_binary:
            await self.arm_binary_sensor(sensor)

    async def _on_sensor_update(self, new: dict, old: dict, payload: dict):
        sensor = Sensor.from_dict(new)
        await self.directory.retarget(sensor.id, sensor)
        if sensor.is_binary:
            # no-op when the system watchdog already exists
            await self.arm_binary_sensor(sensor)
        else:
            removed = await self.directory.remove(sensor.id, system_binary)
            if removed:
                self.logger.info("Sensor %s is no longer binary, removed its watchdog", sensor.id)

    async def _on_device_create(self, new: dict, old: dict, payload: dict):
        await self.arm_device_watchdog(Device.from_dict(new))

    async def _on_device_update(self, new: dict, old: dict, payload: dict):
        device = Device.from_dict(new)
        await self.directory.retarget(device.id, device)
        if device.active:
            # no-op when the device watchdog already exists
            await self.arm_device_watchdog(device)
        else:
            removed = await self.directory.remove(device.id, system_device)
            if removed:
                self.logger.info("Device %s is inactive, removed its watchdog", device.id)

    async def _on_target_delete(self, new: dict, old: dict, payload: dict):
        target_id = old.get("id") or new.get("id")
        if target_id:
            removed = await self.directory.remove(target_id)
            self.logger.info("Removed %d alert(s) for deleted target %s", len(removed), target_id)

    # ── Evaluation ──────────────────────────────────────────────────────

    async def on_sensor_sample(self, channel: str, payload: dict[str, Any]):
        sensor_id = payload.get("sensorId")
        try:
            value = float(payload.get("value"))
        except (TypeError, ValueError):
            self.logger.warning("Ignoring sample without numeric value on %s", channel)
            return

        def evaluate(wrapper: AlertWrapper) -> PendingNotification | None:
            alert = wrapper.alert
            if alert.kind == AlertKind.TIMEOUT:
                if wrapper.timer is not None:
                    wrapper.timer.feed()
                return None
            if alert.kind == AlertKind.SAMPLE:
                return PendingNotification(alert, AlertEventType.SENSOR_SAMPLE, {"value": value})
            if alert.kind == AlertKind.VALUE and alert.matches(value):
                data = {"value": value, "test": str(alert.test), "threshold": alert.value}
                return PendingNotification(alert, AlertEventType.SENSOR_VALUE, data)
            return None

        pending = await self.directory.traverse(sensor_id, evaluate)
        # a device delivering samples is alive
        if payload.get("deviceId"):
            await self.directory.traverse(payload["deviceId"], self._feed)

        for item in pending:
            await self.notify(item.alert, item.event_type, item.data)

    async def on_device_activity(self, channel: str, payload: dict[str, Any]):
        device_id = payload.get("deviceId")
        if device_id:
            await self.directory.traverse(device_id, self._feed)

    @staticmethod
    def _feed(wrapper: AlertWrapper) -> None:
        if wrapper.timer is not None:
            wrapper.timer.feed()

    # ── Timeouts ────────────────────────────────────────────────────────

    async def on_timeout(self, wrapper: AlertWrapper):
        alert = wrapper.alert
        target = alert.target
        if system_device(wrapper):
            await self.on_device_watchdog(target.id)
            return
        timeout_ms = wrapper.timer.watchdog.timeout_ms if wrapper.timer else alert.timeout_ms or 0
        channel = control_channel(CONTROL_TIMEOUT, True)

        if isinstance(target, Sensor):
            self.logger.info("Sensor %s silent for %d ms (alert %s)", target.id, timeout_ms, alert.id)
            device = await lookup(self.hub.storage.get_device, target.device_id)
            await self.hub.bus.publish(
                channel,
                {
                    "type": CONTROL_TIMEOUT,
                    "deviceId": target.device_id,
                    "device": device.to_dict() if device else None,
                    "sensor": target.to_dict(),
                },
            )
            if target.is_binary:
                await self.hub.storage.persist_sensor_sample(target, 0, utcnow())
            await self.notify(alert, AlertEventType.SENSOR_TIMEOUT, timeout_data(timeout_ms))
        else:
            self.logger.info("Device %s silent for %d ms (alert %s)", target.id, timeout_ms, alert.id)
            await self.hub.bus.publish(
                channel,
                {"type": CONTROL_TIMEOUT, "deviceId": target.id, "device": target.to_dict()},
            )
            await self.notify(alert, AlertEventType.DEVICE_TIMEOUT, timeout_data(timeout_ms))

    async def on_device_watchdog(self, device_id: str):
        """Server-side watchdog expiry: announce a watchdog reset for the device.

        The counters and the device watchdog notification follow from the
        ``control.known.watchdogReset`` event. A device that no longer exists
        loses its watchdog.
        """
        device = await lookup(self.hub.storage.get_device, device_id)
        if device is None:
            await self.directory.remove(device_id, system_device)
            self.logger.info("Device %s is gone, removed its watchdog", device_id)
            return
        self.logger.info("Device %s missed its watchdog, publishing reset", device_id)
        await self.hub.bus.publish(
            control_channel(CONTROL_WATCHDOG_RESET, True),
            {"type": CONTROL_WATCHDOG_RESET, "deviceId": device.id, "device": device.to_dict()},
        )

    # ── Notification ────────────────────────────────────────────────────

    async def notify(self, alert: Alert, event_type: AlertEventType, data: dict[str, Any]) -> bool:
        """Queue a notification for the alert owner. Returns False if nothing was queued."""
        if not alert.notifies:
            self.logger.debug("Alert %s has no owner or notify type, not notifying", alert.id)
            return False
        message = {
            "userId": alert.owner_user_id,
            "alertId": alert.id,
            "eventType": str(event_type),
            "notifyType": str(alert.notify_type),
            "targetId": alert.target_id,
            "data": {**(alert.notify_data or {}), **data},
        }
        try:
            await self.hub.queue.publish(QUEUE_NOTIFY, message)
        except QueuePublishError as e:
            self.logger.error("Failed to queue %s notification for alert %s: %s", event_type, alert.id, e)
            return False
        return True
