"""Shared fixtures: in-memory queue/bus/cache fakes and a MockHub.

Modules only talk to ``hub.queue``, ``hub.bus``, ``hub.cache`` and
``hub.storage``; the fakes below mirror those interfaces so module tests run
without Redis. Storage is the real aiosqlite implementation on ``tmp_path``.
"""

import fnmatch
from typing import Any

import pytest
import pytest_asyncio

from sensorcentral.config import AppConfig
from sensorcentral.hub.bus import is_pattern
from sensorcentral.hub.models import Device, Sensor, SensorType
from sensorcentral.hub.queue import QueueMessage
from sensorcentral.hub.storage import Storage

# ============================================================================
# Fakes
# ============================================================================


class FakeQueue:
    """Records publishes; ``deliver()`` pushes a message through the listeners like a consumption loop."""

    def __init__(self):
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.listeners: dict[str, list] = {}
        self.acked: list[str] = []

    async def publish(self, queue_name: str, payload: dict[str, Any]) -> str:
        self.published.append((queue_name, payload))
        return f"{len(self.published)}-0"

    async def subscribe(self, queue_name: str, listener):
        self.listeners.setdefault(queue_name, []).append(listener)

    async def deliver(self, queue_name: str, data: dict[str, Any], message_id: str = "1-0") -> QueueMessage:
        async def ack():
            self.acked.append(message_id)

        message = QueueMessage(queue=queue_name, id=message_id, data=data, _ack=ack)
        for listener in self.listeners.get(queue_name, []):
            await listener(message)
        await message.ack()
        return message

    def messages(self, queue_name: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.published if name == queue_name]

    async def close(self):
        pass


class FakeBus:
    """Synchronous bus: publish awaits every matching subscriber in turn."""

    def __init__(self):
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.subscriptions: list[tuple[str, Any]] = []

    async def subscribe(self, channel: str, callback):
        self.subscriptions.append((channel, callback))

    async def unsubscribe(self, channel: str, callback):
        if (channel, callback) in self.subscriptions:
            self.subscriptions.remove((channel, callback))

    async def publish(self, channel: str, payload: dict[str, Any]) -> int:
        self.published.append((channel, payload))
        receivers = 0
        for subscribed, callback in list(self.subscriptions):
            matched = fnmatch.fnmatchcase(channel, subscribed) if is_pattern(subscribed) else channel == subscribed
            if matched:
                receivers += 1
                await callback(channel, payload)
        return receivers

    def channels(self) -> list[str]:
        return [channel for channel, _ in self.published]

    def on(self, channel: str) -> list[dict[str, Any]]:
        return [payload for published, payload in self.published if published == channel]

    async def close(self):
        pass


class FakeCache:
    """Dict-backed cache remembering the TTL of every key."""

    def __init__(self):
        self.values: dict[str, Any] = {}
        self.ttls: dict[str, int | None] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value
        self.ttls[key] = None

    async def setex(self, key, ttl_secs, value):
        self.values[key] = value
        self.ttls[key] = int(ttl_secs)

    async def mget(self, *keys):
        return [self.values.get(key) for key in keys]

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


class MockHub:
    def __init__(self, storage: Storage, config: AppConfig | None = None):
        self.config = config or AppConfig()
        self.storage = storage
        self.queue = FakeQueue()
        self.bus = FakeBus()
        self.cache = FakeCache()


# ============================================================================
# Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def storage(tmp_path):
    """Initialized Storage on a temp database."""
    store = Storage(str(tmp_path / "sensorcentral.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def seeded_storage(storage):
    """House h1 with device d1 carrying gauge s1 and binary b1."""
    await storage.upsert_house("h1", "Home")
    await storage.upsert_device(Device(id="d1", name="Boiler room", house_id="h1"))
    await storage.upsert_sensor(Sensor(id="s1", name="Temperature", type=SensorType.GAUGE, device_id="d1"))
    await storage.upsert_sensor(Sensor(id="b1", name="Door", type=SensorType.BINARY, device_id="d1"))
    return storage


@pytest.fixture
def config():
    return AppConfig()


@pytest.fixture
def hub(seeded_storage, config):
    return MockHub(seeded_storage, config)
