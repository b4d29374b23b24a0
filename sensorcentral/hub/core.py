"""SensorCentral Hub - owns broker/cache/storage clients and module lifecycle."""

import logging
from datetime import datetime

import redis.asyncio as redis

from sensorcentral.config import AppConfig
from sensorcentral.hub.bus import BroadcastBus
from sensorcentral.hub.cache import SnapshotCache
from sensorcentral.hub.models import utcnow
from sensorcentral.hub.queue import DurableQueue
from sensorcentral.hub.storage import Storage

logger = logging.getLogger(__name__)


class Module:
    """Base class for hub modules."""

    def __init__(self, module_id: str, hub: "SensorHub"):
        self.module_id = module_id
        self.hub = hub
        self.logger = logging.getLogger(f"module.{module_id}")

    async def initialize(self):
        """Subscribe to queues/channels and load state."""
        pass

    async def shutdown(self):
        """Cleanup module resources."""
        pass


class SensorHub:
    """Central hub wiring the durable queue, broadcast bus, cache and storage to modules."""

    def __init__(  # noqa: PLR0913
        self,
        config: AppConfig,
        redis_client: redis.Redis | None = None,
        storage: Storage | None = None,
        queue: DurableQueue | None = None,
        bus: BroadcastBus | None = None,
        cache: SnapshotCache | None = None,
    ):
        """Initialize the hub.

        Args:
            config: Application config
            redis_client: Redis client shared by queue, bus and cache (built from config if omitted)
            storage: Storage instance (built from config if omitted)
            queue, bus, cache: Optional overrides, mainly for tests
        """
        self.config = config
        self.redis = redis_client or redis.from_url(config.redis.url, decode_responses=True)
        self.storage = storage or Storage(str(config.storage.db_path))
        self.cache = cache or SnapshotCache(self.redis)
        self.queue = queue or DurableQueue(
            self.redis,
            group=config.redis.consumer_group,
            consumer=config.redis.consumer_name,
            retry=config.retry,
            block_ms=config.redis.block_ms,
        )
        self.bus = bus or BroadcastBus(self.redis)
        self.modules: dict[str, Module] = {}
        self.module_status: dict[str, str] = {}  # module_id -> "registered" | "running" | "failed"
        self._running = False
        self._start_time: datetime | None = None
        self.logger = logging.getLogger("hub")

    @property
    def running(self) -> bool:
        return self._running

    def register_module(self, module: Module):
        """Register a module with the hub.

        Args:
            module: Module instance to register
        """
        if module.module_id in self.modules:
            raise ValueError(f"Module {module.module_id} already registered")
        self.modules[module.module_id] = module
        self.module_status[module.module_id] = "registered"
        self.logger.info(f"Registered module: {module.module_id}")

    def get_module(self, module_id: str) -> Module | None:
        return self.modules.get(module_id)

    async def initialize(self):
        """Open storage and start every registered module in registration order."""
        self.logger.info("Initializing SensorCentral Hub...")
        await self.storage.initialize()
        await self.redis.ping()
        self._running = True

        for module_id, module in self.modules.items():
            try:
                await module.initialize()
                self.module_status[module_id] = "running"
            except Exception as e:
                self.module_status[module_id] = "failed"
                self.logger.error(f"Module {module_id} failed to initialize: {e}")

        self._start_time = utcnow()
        self.logger.info("Hub initialized successfully")

    async def shutdown(self):
        """Shutdown modules in reverse order, then the broker clients and storage."""
        self.logger.info("Shutting down SensorCentral Hub...")
        self._running = False

        for module_id, module in reversed(list(self.modules.items())):
            self.logger.info(f"Shutting down module: {module_id}")
            try:
                await module.shutdown()
            except Exception as e:
                self.logger.error(f"Error shutting down module {module_id}: {e}")

        await self.queue.close()
        await self.bus.close()
        await self.storage.close()
        await self.redis.aclose()
        self.logger.info("Hub shutdown complete")

    def get_uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return (utcnow() - self._start_time).total_seconds()
