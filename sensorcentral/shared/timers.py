"""Watchdog timers.

``Watchdog`` is the pure state record; ``WatchdogTimer`` drives one on the
event loop and awaits a callback every time the deadline passes unfed.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class Watchdog:
    """Deadline record. Times are seconds on a monotonic clock."""

    timeout_ms: int
    deadline: float = 0.0
    fired: int = 0

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000

    def feed(self, now: float) -> None:
        self.deadline = now + self.timeout

    def expired(self, now: float) -> bool:
        return now >= self.deadline

    def remaining(self, now: float) -> float:
        return max(self.deadline - now, 0.0)

    def fire(self, now: float) -> None:
        """Record a fire and re-arm from ``now``."""
        self.fired += 1
        self.feed(now)


class WatchdogTimer:
    """Runs a ``Watchdog`` and awaits ``on_fire`` once per expiry."""

    def __init__(
        self,
        timeout_ms: int,
        on_fire: Callable[[], Awaitable[None]],
        name: str = "watchdog",
        clock: Callable[[], float] = time.monotonic,
    ):
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")
        self.watchdog = Watchdog(timeout_ms)
        self.name = name
        self._on_fire = on_fire
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Arm the timer with an initial feed. Starting twice is a no-op."""
        if self.running:
            return
        self.watchdog.feed(self._clock())
        self._task = asyncio.create_task(self._run(), name=f"timer:{self.name}")

    def feed(self) -> None:
        self.watchdog.feed(self._clock())

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        while True:
            now = self._clock()
            if not self.watchdog.expired(now):
                await asyncio.sleep(self.watchdog.remaining(now))
                continue
            self.watchdog.fire(now)
            logger.debug("Watchdog %s fired (count=%d)", self.name, self.watchdog.fired)
            try:
                await self._on_fire()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in watchdog callback for %s", self.name)
