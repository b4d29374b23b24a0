"""Best-effort broadcast bus on Redis pub/sub.

Exact channels are kept in a dict for direct lookup; channels containing a
glob token are pattern subscriptions, each with its compiled regex.
"""

import asyncio
import fnmatch
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)

Callback = Callable[[str, dict[str, Any]], Awaitable[None]]

GLOB_TOKENS = ("*", "?", "[")


def is_pattern(channel: str) -> bool:
    return any(token in channel for token in GLOB_TOKENS)


@dataclass
class PatternSubscription:
    pattern: str
    regex: re.Pattern = field(init=False)
    callbacks: list[Callback] = field(default_factory=list)

    def __post_init__(self):
        self.regex = re.compile(fnmatch.translate(self.pattern))

    def matches(self, channel: str) -> bool:
        return self.regex.match(channel) is not None


class BroadcastBus:
    """Fire-and-forget JSON publish/subscribe."""

    def __init__(self, client: redis.Redis):
        self.client = client
        self.exact: dict[str, list[Callback]] = {}
        self.patterns: dict[str, PatternSubscription] = {}
        self._pubsub = None
        self._reader: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    async def publish(self, channel: str, payload: dict[str, Any]) -> int:
        """Broadcast ``payload``; returns the number of receiving connections."""
        receivers = await self.client.publish(channel, json.dumps(payload))
        logger.debug("Published on %s (%d receivers)", channel, receivers)
        return receivers

    async def subscribe(self, channel: str, callback: Callback) -> None:
        pubsub = await self._ensure_reader()
        if is_pattern(channel):
            subscription = self.patterns.get(channel)
            if subscription is None:
                subscription = self.patterns[channel] = PatternSubscription(channel)
                await pubsub.psubscribe(channel)
            subscription.callbacks.append(callback)
        else:
            if channel not in self.exact:
                self.exact[channel] = []
                await pubsub.subscribe(channel)
            self.exact[channel].append(callback)
        logger.debug("Subscribed to bus channel: %s", channel)

    async def unsubscribe(self, channel: str, callback: Callback) -> None:
        if self._pubsub is None:
            return
        if is_pattern(channel):
            subscription = self.patterns.get(channel)
            if subscription and callback in subscription.callbacks:
                subscription.callbacks.remove(callback)
                if not subscription.callbacks:
                    del self.patterns[channel]
                    await self._pubsub.punsubscribe(channel)
        else:
            callbacks = self.exact.get(channel)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self.exact[channel]
                    await self._pubsub.unsubscribe(channel)

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

    def callbacks_for(self, kind: str, channel: str, pattern: str | None = None) -> list[Callback]:
        """Callbacks owed one delivery of a raw pub/sub message."""
        if kind == "message":
            return list(self.exact.get(channel, ()))
        if kind == "pmessage" and pattern is not None:
            subscription = self.patterns.get(pattern)
            if subscription and subscription.matches(channel):
                return list(subscription.callbacks)
        return []

    def dispatch(self, message: dict[str, Any]) -> None:
        """Hand a raw pub/sub message to its subscribers without waiting on them."""
        kind = message.get("type")
        channel = message.get("channel")
        callbacks = self.callbacks_for(kind, channel, message.get("pattern"))
        if not callbacks:
            return
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring undecodable bus message on %s: %s", channel, e)
            return
        for callback in callbacks:
            task = asyncio.create_task(self._invoke(callback, channel, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _invoke(self, callback: Callback, channel: str, payload: dict[str, Any]) -> None:
        try:
            await callback(channel, payload)
        except Exception as e:
            logger.error(f"Error in bus subscriber for {channel}: {e}")

    async def _ensure_reader(self):
        if self._pubsub is None:
            self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        if self._reader is None:
            self._reader = asyncio.create_task(self._read(), name="bus-reader")
        return self._pubsub

    async def _read(self) -> None:
        while True:
            if not self._pubsub.subscribed:
                await asyncio.sleep(0.05)
                continue
            try:
                message = await self._pubsub.get_message(timeout=1.0)
            except redis.RedisError as e:
                logger.error("Bus read failed: %s", e)
                await asyncio.sleep(1.0)
                continue
            if message is not None:
                self.dispatch(message)
