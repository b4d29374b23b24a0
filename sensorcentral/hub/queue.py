"""Durable work queues on Redis Streams.

Each logical queue name maps to one stream (``queue:<name>``) read through a
consumer group, giving at-least-once delivery: a message stays in the
group's pending list until it is acknowledged, and pending entries are
re-read when the consumer restarts.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from sensorcentral.config import QueueRetryConfig

logger = logging.getLogger(__name__)


class QueuePublishError(RuntimeError):
    """The broker did not accept a published message."""


@dataclass
class QueueMessage:
    """One delivered message. ``ack()`` is idempotent."""

    queue: str
    id: str
    data: dict[str, Any]
    _ack: Callable[[], Awaitable[None]] = field(repr=False)
    acked: bool = False

    async def ack(self) -> None:
        if self.acked:
            return
        self.acked = True
        await self._ack()


Listener = Callable[[QueueMessage], Awaitable[None]]


class DurableQueue:
    """Queue publisher plus one shared consumption loop per subscribed queue."""

    def __init__(  # noqa: PLR0913
        self,
        client: redis.Redis,
        group: str,
        consumer: str,
        retry: QueueRetryConfig | None = None,
        block_ms: int = 1000,
        batch_size: int = 10,
        max_inflight: int = 100,
    ):
        self.client = client
        self.group = group
        self.consumer = consumer
        self.retry = retry or QueueRetryConfig()
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.listeners: dict[str, list[Listener]] = {}
        self._loops: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max_inflight)

    @staticmethod
    def stream_key(queue_name: str) -> str:
        return f"queue:{queue_name}"

    async def publish(self, queue_name: str, payload: dict[str, Any]) -> str:
        """Append a message; returns the broker message id once accepted."""
        try:
            message_id = await self.client.xadd(self.stream_key(queue_name), {"data": json.dumps(payload)})
        except RedisError as e:
            raise QueuePublishError(f"Failed to publish to queue {queue_name}: {e}") from e
        logger.debug("Published %s to queue %s", message_id, queue_name)
        return message_id

    async def subscribe(self, queue_name: str, listener: Listener) -> None:
        """Register a listener; the first one for a queue starts its consumption loop."""
        self.listeners.setdefault(queue_name, []).append(listener)
        if queue_name in self._loops:
            return
        await self._ensure_group(queue_name)
        self._loops[queue_name] = asyncio.create_task(self._consume(queue_name), name=f"queue:{queue_name}")
        logger.info("Started consumption loop for queue %s", queue_name)

    async def close(self) -> None:
        tasks = [*self._loops.values(), *self._inflight]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._inflight.clear()

    async def _ensure_group(self, queue_name: str) -> None:
        try:
            await self.client.xgroup_create(self.stream_key(queue_name), self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s for queue %s", self.group, queue_name)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug("Consumer group %s already exists for queue %s", self.group, queue_name)

    async def _consume(self, queue_name: str) -> None:
        stream = self.stream_key(queue_name)
        # "0" replays this consumer's pending entries, ">" reads new ones
        cursor = "0"
        while True:
            try:
                response = await self.client.xreadgroup(
                    self.group,
                    self.consumer,
                    {stream: cursor},
                    count=self.batch_size,
                    block=self.block_ms,
                )
            except RedisError as e:
                logger.error("Read from queue %s failed: %s", queue_name, e)
                await asyncio.sleep(1.0)
                continue

            entries = response[0][1] if response else []
            if cursor != ">":
                if not entries:
                    cursor = ">"
                    continue
                cursor = entries[-1][0]
                logger.info("Redelivering %d pending message(s) on queue %s", len(entries), queue_name)

            for message_id, fields in entries:
                await self._slots.acquire()
                task = asyncio.create_task(self._deliver(queue_name, message_id, fields))
                self._inflight.add(task)
                task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._slots.release()

    async def _deliver(self, queue_name: str, message_id: str, fields: dict[str, str] | None) -> None:
        stream = self.stream_key(queue_name)

        async def ack():
            await self.client.xack(stream, self.group, message_id)

        try:
            data = json.loads(fields["data"])
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed message %s on queue %s: %s", message_id, queue_name, e)
            try:
                await ack()
            except RedisError as ack_error:
                logger.error("Failed to ack malformed message %s: %s", message_id, ack_error)
            return

        message = QueueMessage(queue=queue_name, id=message_id, data=data, _ack=ack)
        for listener in list(self.listeners.get(queue_name, [])):
            await self._call_with_retry(listener, message)

        try:
            await message.ack()
        except RedisError as e:
            # stays pending and is redelivered on the next start
            logger.error("Failed to ack message %s on queue %s: %s", message_id, queue_name, e)

    async def _call_with_retry(self, listener: Listener, message: QueueMessage) -> bool:
        name = getattr(listener, "__qualname__", repr(listener))
        attempts = max(self.retry.max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                await listener(message)
                return True
            except Exception as e:
                if attempt >= attempts:
                    logger.error(
                        "Listener %s failed on %s message %s after %d attempt(s), abandoning: %s",
                        name,
                        message.queue,
                        message.id,
                        attempt,
                        e,
                    )
                    return False
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    "Listener %s failed on %s message %s (attempt %d/%d), retrying in %.1fs: %s",
                    name,
                    message.queue,
                    message.id,
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)
        return False
