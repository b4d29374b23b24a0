"""Ingestion Pipeline - consumes raw sensor/device/control queues.

Resolves each message's target against storage, persists sensor samples,
keeps the short-lived snapshots in the cache current and republishes an
augmented event on the bus under a known/unknown channel. A separate bus
subscriber keeps per-device restart/timeout counters from those events.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, TypeVar

from sensorcentral.hub.constants import (
    CONTROL_RESTART,
    CONTROL_TIMEOUT,
    CONTROL_TYPES,
    CONTROL_WATCHDOG_RESET,
    DEVICE_KEY_PREFIX,
    KNOWN,
    QUEUE_CONTROL,
    QUEUE_DEVICE,
    QUEUE_SENSOR,
    SENSOR_KEY_PREFIX,
    TOPIC_CONTROL,
    TOPIC_DEVICE,
    UNKNOWN,
    control_channel,
    device_channel,
    sensor_channel,
)
from sensorcentral.hub.core import Module
from sensorcentral.hub.models import Device, DeviceSnapshot, Sensor, SensorSnapshot, parse_dt, utcnow
from sensorcentral.hub.queue import QueueMessage
from sensorcentral.hub.storage import NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Control events counted as watchdog fires on the device snapshot
TIMEOUT_EVENTS = (CONTROL_TIMEOUT, CONTROL_WATCHDOG_RESET)


async def lookup(getter: Callable[[str], Awaitable[T]], entity_id: str | None) -> T | None:
    """Resolve an entity, mapping not-found to None. Other storage errors propagate."""
    if not entity_id:
        return None
    try:
        return await getter(entity_id)
    except NotFoundError:
        return None


def clamp_binary(value: float) -> int:
    return 1 if value > 0 else 0


class IngestionPipeline(Module):
    """Sole consumer of the sensor, device and control ingest queues."""

    def __init__(self, hub, module_id: str = "ingestion"):
        super().__init__(module_id, hub)
        self.sensor_ttl = hub.config.cache.sensor_expiration_secs
        self.device_ttl = hub.config.cache.device_expiration_secs
        # serializes get-mutate-setex per device snapshot key
        self._device_locks: dict[str, asyncio.Lock] = {}

    async def initialize(self):
        # counters first so no augmented event published below is missed
        await self.hub.bus.subscribe(f"{TOPIC_DEVICE}.*", self.on_device_topic)
        await self.hub.bus.subscribe(f"{TOPIC_CONTROL}.{KNOWN}.*", self.on_control_topic)
        await self.hub.bus.subscribe(f"{TOPIC_CONTROL}.{UNKNOWN}.*", self.on_control_topic)

        await self.hub.queue.subscribe(QUEUE_SENSOR, self.on_sensor_message)
        await self.hub.queue.subscribe(QUEUE_DEVICE, self.on_device_message)
        await self.hub.queue.subscribe(QUEUE_CONTROL, self.on_control_message)
        self.logger.info("Ingestion pipeline listening on %s, %s, %s", QUEUE_SENSOR, QUEUE_DEVICE, QUEUE_CONTROL)

    # ── Queue listeners ─────────────────────────────────────────────────

    async def on_sensor_message(self, message: QueueMessage):
        data = message.data
        sensor_id = data.get("id")
        if not sensor_id:
            self.logger.warning("Dropping sensor message without id: %s", data)
            await message.ack()
            return
        try:
            value = float(data["value"])
            dt = parse_dt(data.get("dt")) or utcnow()
            duration = data.get("duration")
            from_dt = dt - timedelta(seconds=float(duration)) if duration is not None else None
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            self.logger.warning("Dropping malformed sensor message (%s): %s", e, data)
            await message.ack()
            return

        storage = self.hub.storage
        sensor: Sensor | None = await lookup(storage.get_sensor, sensor_id)
        device: Device | None
        if sensor is not None:
            if sensor.is_binary:
                value = clamp_binary(value)
            await storage.persist_sensor_sample(sensor, value, dt, from_dt)
            device = await lookup(storage.get_device, sensor.device_id)
        else:
            device = await lookup(storage.get_device, data.get("deviceId"))

        await message.ack()

        device_id = device.id if device else data.get("deviceId")
        snapshot = SensorSnapshot(device_id=device_id, id=sensor_id, dt=dt.isoformat(), value=value)
        await self.hub.cache.setex(f"{SENSOR_KEY_PREFIX}{sensor_id}", self.sensor_ttl, snapshot.to_dict())

        payload = {
            "deviceId": device_id,
            "sensorId": sensor_id,
            "value": value,
            "device": device.to_dict() if device else None,
            "sensor": sensor.to_dict() if sensor else None,
        }
        await self.hub.bus.publish(sensor_channel(sensor_id, sensor is not None), payload)
        if sensor is None:
            self.logger.debug("Sample for unknown sensor %s published", sensor_id)

    async def on_device_message(self, message: QueueMessage):
        data = message.data
        device_id = data.get("id")
        if not device_id:
            self.logger.warning("Dropping device message without id: %s", data)
            await message.ack()
            return

        device: Device | None = await lookup(self.hub.storage.get_device, device_id)
        await message.ack()

        if device is not None:
            await self.hub.storage.update_last_ping(device.id)
            device_data = data.get("deviceData")
            if isinstance(device_data, dict) and device_data:
                await self.hub.storage.set_device_data(device.id, device_data)
                await self.update_device_snapshot(device.id, data=device_data)

        payload = {"deviceId": device_id, "device": device.to_dict() if device else None}
        await self.hub.bus.publish(device_channel(device is not None), payload)

    async def on_control_message(self, message: QueueMessage):
        data = message.data
        device_id = data.get("id") or data.get("targetId")
        control_type = data.get("type")
        if not device_id or control_type not in CONTROL_TYPES:
            self.logger.warning("Dropping invalid control message: %s", data)
            await message.ack()
            return

        device: Device | None = await lookup(self.hub.storage.get_device, device_id)
        await message.ack()

        payload = {"type": control_type, "deviceId": device_id, "device": device.to_dict() if device else None}
        await self.hub.bus.publish(control_channel(control_type, device is not None), payload)

    # ── Counter maintenance ─────────────────────────────────────────────

    async def on_device_topic(self, channel: str, payload: dict[str, Any]):
        device_id = payload.get("deviceId")
        if device_id:
            await self.update_device_snapshot(device_id)

    async def on_control_topic(self, channel: str, payload: dict[str, Any]):
        device_id = payload.get("deviceId")
        if not device_id:
            self.logger.debug("Ignoring control event without deviceId on %s", channel)
            return
        control_type = payload.get("type") or channel.rsplit(".", 1)[-1]

        def count(snapshot: DeviceSnapshot):
            if control_type == CONTROL_RESTART:
                snapshot.restarts += 1
            elif control_type in TIMEOUT_EVENTS:
                snapshot.timeouts += 1

        await self.update_device_snapshot(device_id, count)

        if payload.get("device"):
            if control_type == CONTROL_RESTART:
                await self.hub.storage.update_last_restart(device_id)
            elif control_type == CONTROL_WATCHDOG_RESET:
                await self.hub.storage.update_last_watchdog_reset(device_id)

    async def update_device_snapshot(
        self,
        device_id: str,
        mutate: Callable[[DeviceSnapshot], None] | None = None,
        data: dict[str, Any] | None = None,
    ) -> DeviceSnapshot:
        """Get-or-create the device snapshot, apply changes, stamp it and store it with a fresh TTL."""
        key = f"{DEVICE_KEY_PREFIX}{device_id}"
        async with self._device_locks.setdefault(device_id, asyncio.Lock()):
            now = utcnow().isoformat()
            existing = await self.hub.cache.get(key)
            snapshot = None
            if isinstance(existing, dict):
                try:
                    snapshot = DeviceSnapshot.from_dict(existing)
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning("Replacing corrupt device snapshot for %s: %s", device_id, e)
            if snapshot is None:
                snapshot = DeviceSnapshot(id=device_id, dt=now)

            if mutate is not None:
                mutate(snapshot)
            if data:
                snapshot.data = {**(snapshot.data or {}), **data}
            snapshot.dt = now
            await self.hub.cache.setex(key, self.device_ttl, snapshot.to_dict())
            return snapshot

    # ── Read side ───────────────────────────────────────────────────────

    async def get_cached_sensor_snapshot(self, *sensor_ids: str) -> list[SensorSnapshot | None]:
        """Snapshots in the order requested; None for unknown or expired ids."""
        values = await self.hub.cache.mget(*(f"{SENSOR_KEY_PREFIX}{sensor_id}" for sensor_id in sensor_ids))
        return [SensorSnapshot.from_dict(value) if isinstance(value, dict) else None for value in values]

    async def get_cached_device_snapshot(self, *device_ids: str) -> list[DeviceSnapshot | None]:
        """Snapshots in the order requested; None for unknown or expired ids."""
        values = await self.hub.cache.mget(*(f"{DEVICE_KEY_PREFIX}{device_id}" for device_id in device_ids))
        return [DeviceSnapshot.from_dict(value) if isinstance(value, dict) else None for value in values]
