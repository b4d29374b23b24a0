"""Tests for the ingestion pipeline: sensor/device/control flows, counters, read side."""

import asyncio

import pytest_asyncio

from sensorcentral.hub.constants import QUEUE_CONTROL, QUEUE_DEVICE, QUEUE_SENSOR
from sensorcentral.modules.ingestion import IngestionPipeline


def suspend_cache_calls(cache):
    """Make cache reads and writes yield to the event loop, like a network round trip."""
    for name in ("get", "setex"):
        original = getattr(cache, name)

        async def suspended(*args, _original=original):
            await asyncio.sleep(0)
            return await _original(*args)

        setattr(cache, name, suspended)


@pytest_asyncio.fixture
async def pipeline(hub):
    p = IngestionPipeline(hub)
    await p.initialize()
    return p


# ============================================================================
# Sensor flow
# ============================================================================


class TestSensorFlow:
    async def test_known_gauge_persisted_broadcast_and_cached(self, pipeline, hub):
        """s1=42 on known d1: one row, one broadcast on sensor.known.s1, snapshot value 42."""
        message = await hub.queue.deliver(QUEUE_SENSOR, {"id": "s1", "value": 42, "deviceId": "d1"})

        rows = await hub.storage.get_samples("s1")
        assert [row["value"] for row in rows] == [42.0]
        published = hub.bus.on("sensor.known.s1")
        assert len(published) == 1
        assert published[0]["deviceId"] == "d1"
        assert published[0]["sensorId"] == "s1"
        assert published[0]["value"] == 42
        assert published[0]["device"]["id"] == "d1"
        assert hub.cache.values["sensor:s1"]["value"] == 42
        assert message.acked

    async def test_first_snapshot_ttl_is_sensor_expiration(self, pipeline, hub, config):
        await hub.queue.deliver(QUEUE_SENSOR, {"id": "s1", "value": 42, "deviceId": "d1"})

        assert hub.cache.ttls["sensor:s1"] == config.cache.sensor_expiration_secs

    async def test_unknown_sensor_not_persisted_but_acked(self, pipeline, hub):
        """Unknown sensor: no rows, broadcast on the unknown channel, message still acknowledged."""
        message = await hub.queue.deliver(QUEUE_SENSOR, {"id": "unknown-sensor", "value": 1, "deviceId": "d1"})

        assert await hub.storage.count_samples("unknown-sensor") == 0
        assert hub.bus.channels()[:1] == ["sensor.unknown.unknown-sensor"]
        payload = hub.bus.on("sensor.unknown.unknown-sensor")[0]
        assert payload["device"]["id"] == "d1"
        assert payload["sensor"] is None
        assert message.acked
        assert hub.cache.values["sensor:unknown-sensor"]["deviceId"] == "d1"

    async def test_unknown_sensor_and_device(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_SENSOR, {"id": "x", "value": 3})

        payload = hub.bus.on("sensor.unknown.x")[0]
        assert payload["device"] is None
        assert payload["deviceId"] is None

    async def test_binary_values_clamped(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_SENSOR, {"id": "b1", "value": 7, "deviceId": "d1"}, "1-0")
        await hub.queue.deliver(QUEUE_SENSOR, {"id": "b1", "value": -2, "deviceId": "d1"}, "2-0")

        values = sorted(row["value"] for row in await hub.storage.get_samples("b1"))
        assert values == [0.0, 1.0]

    async def test_supplied_dt_and_duration(self, pipeline, hub):
        """dt is used as given and duration (seconds) derives from_dt."""
        await hub.queue.deliver(
            QUEUE_SENSOR,
            {"id": "s1", "value": 5, "dt": "2026-02-01T10:00:00+00:00", "duration": 300},
        )

        row = (await hub.storage.get_samples("s1"))[0]
        assert row["dt"] == "2026-02-01T10:00:00+00:00"
        assert row["from_dt"] == "2026-02-01T09:55:00+00:00"
        assert hub.cache.values["sensor:s1"]["dt"] == "2026-02-01T10:00:00+00:00"

    async def test_redelivery_duplicates_row_but_cache_is_last_write(self, pipeline, hub):
        """A redelivered message may duplicate the sample; the snapshot stays consistent."""
        data = {"id": "s1", "value": 42, "deviceId": "d1", "dt": "2026-02-01T10:00:00+00:00"}
        await hub.queue.deliver(QUEUE_SENSOR, data, "1-0")
        first = dict(hub.cache.values["sensor:s1"])
        await hub.queue.deliver(QUEUE_SENSOR, data, "1-0")

        assert await hub.storage.count_samples("s1") == 2
        assert hub.cache.values["sensor:s1"] == first

    async def test_non_numeric_value_dropped(self, pipeline, hub):
        message = await hub.queue.deliver(QUEUE_SENSOR, {"id": "s1", "value": "warm"})

        assert message.acked
        assert hub.bus.published == []
        assert await hub.storage.count_samples("s1") == 0

    async def test_unparseable_dt_dropped_without_retry(self, pipeline, hub):
        message = await hub.queue.deliver(QUEUE_SENSOR, {"id": "s1", "value": 5, "dt": "yesterday"})

        assert message.acked
        assert hub.bus.published == []
        assert await hub.storage.count_samples("s1") == 0

    async def test_non_numeric_duration_dropped_without_retry(self, pipeline, hub):
        message = await hub.queue.deliver(QUEUE_SENSOR, {"id": "s1", "value": 5, "duration": "five minutes"})

        assert message.acked
        assert hub.bus.published == []
        assert "sensor:s1" not in hub.cache.values


# ============================================================================
# Device and control flows
# ============================================================================


class TestDeviceFlow:
    async def test_known_device_pings_and_publishes(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_DEVICE, {"id": "d1"})

        device = await hub.storage.get_device("d1")
        assert device.last_ping is not None
        assert hub.bus.on("device.known")[0]["device"]["id"] == "d1"

    async def test_device_data_merged_into_snapshot(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_DEVICE, {"id": "d1", "deviceData": {"ip": "10.0.0.7"}}, "1-0")
        await hub.queue.deliver(QUEUE_DEVICE, {"id": "d1", "deviceData": {"rssi": -60}}, "2-0")

        assert hub.cache.values["device:d1"]["data"] == {"ip": "10.0.0.7", "rssi": -60}
        assert await hub.storage.get_device_data("d1") == {"rssi": -60}

    async def test_unknown_device(self, pipeline, hub):
        message = await hub.queue.deliver(QUEUE_DEVICE, {"id": "ghost"})

        assert message.acked
        assert hub.bus.on("device.unknown") == [{"deviceId": "ghost", "device": None}]


class TestControlFlow:
    async def test_known_control_published_by_type(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_CONTROL, {"id": "d1", "type": "restart"})

        payload = hub.bus.on("control.known.restart")[0]
        assert payload["type"] == "restart"
        assert payload["deviceId"] == "d1"

    async def test_unknown_control(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_CONTROL, {"targetId": "ghost", "type": "noSensorData"})

        assert hub.bus.on("control.unknown.noSensorData")[0]["device"] is None

    async def test_invalid_type_dropped(self, pipeline, hub):
        message = await hub.queue.deliver(QUEUE_CONTROL, {"id": "d1", "type": "reboot-now"})

        assert message.acked
        assert hub.bus.published == []


# ============================================================================
# Counter maintenance
# ============================================================================


class TestCounters:
    async def test_device_topic_creates_zeroed_snapshot(self, pipeline, hub, config):
        await hub.queue.deliver(QUEUE_DEVICE, {"id": "d1"})

        snapshot = hub.cache.values["device:d1"]
        assert (snapshot["restarts"], snapshot["timeouts"]) == (0, 0)
        assert hub.cache.ttls["device:d1"] == config.cache.device_expiration_secs

    async def test_restart_increments_restarts(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_CONTROL, {"id": "d1", "type": "restart"}, "1-0")
        await hub.queue.deliver(QUEUE_CONTROL, {"id": "d1", "type": "restart"}, "2-0")

        assert hub.cache.values["device:d1"]["restarts"] == 2
        assert hub.cache.values["device:d1"]["timeouts"] == 0

    async def test_watchdog_fire_increments_timeouts(self, pipeline, hub):
        """Engine timeout events and device-reported watchdog resets both count as timeouts."""
        await hub.bus.publish("control.known.timeout", {"type": "timeout", "deviceId": "d1", "device": None})
        await hub.queue.deliver(QUEUE_CONTROL, {"id": "d1", "type": "watchdogReset"})

        assert hub.cache.values["device:d1"]["timeouts"] == 2

    async def test_concurrent_updates_lose_no_increments(self, pipeline, hub):
        """A restart racing a device ping on the same device still counts; so do parallel restarts."""
        suspend_cache_calls(hub.cache)
        restart = {"type": "restart", "deviceId": "d1", "device": None}

        await asyncio.gather(
            pipeline.on_control_topic("control.known.restart", restart),
            pipeline.on_device_topic("device.known", {"deviceId": "d1", "device": None}),
        )
        await asyncio.gather(
            pipeline.on_control_topic("control.known.restart", restart),
            pipeline.on_control_topic("control.known.restart", restart),
        )

        assert hub.cache.values["device:d1"]["restarts"] == 3

    async def test_concurrent_device_data_merges(self, pipeline, hub):
        suspend_cache_calls(hub.cache)

        await asyncio.gather(
            pipeline.update_device_snapshot("d1", data={"ip": "10.0.0.7"}),
            pipeline.update_device_snapshot("d1", data={"rssi": -60}),
        )

        assert hub.cache.values["device:d1"]["data"] == {"ip": "10.0.0.7", "rssi": -60}

    async def test_crud_mirrors_are_not_counted(self, pipeline, hub):
        await hub.bus.publish("control.sensor.update", {"new": {"id": "s1"}, "old": {"id": "s1"}})
        assert "device:d1" not in hub.cache.values


# ============================================================================
# Read side
# ============================================================================


class TestReadSide:
    async def test_sensor_snapshots_in_input_order(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_SENSOR, {"id": "s1", "value": 42, "deviceId": "d1"}, "1-0")
        await hub.queue.deliver(QUEUE_SENSOR, {"id": "b1", "value": 1, "deviceId": "d1"}, "2-0")

        snapshots = await pipeline.get_cached_sensor_snapshot("b1", "missing", "s1")

        assert snapshots[0].id == "b1"
        assert snapshots[1] is None
        assert snapshots[2].value == 42

    async def test_device_snapshots(self, pipeline, hub):
        await hub.queue.deliver(QUEUE_CONTROL, {"id": "d1", "type": "restart"})

        snapshots = await pipeline.get_cached_device_snapshot("d1", "d2")

        assert snapshots[0].restarts == 1
        assert snapshots[1] is None
