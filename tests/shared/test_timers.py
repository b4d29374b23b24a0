"""Tests for sensorcentral.shared.timers: Watchdog record and WatchdogTimer runner."""

import asyncio

import pytest

from sensorcentral.shared.timers import Watchdog, WatchdogTimer


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ── Watchdog record ─────────────────────────────────────────────────────


class TestWatchdog:
    def test_feed_sets_deadline(self):
        """feed() puts the deadline one timeout after now."""
        wd = Watchdog(timeout_ms=10000)
        wd.feed(5.0)
        assert wd.deadline == 15.0
        assert not wd.expired(14.999)
        assert wd.expired(15.0)

    def test_fire_rearms(self):
        """fire() counts and re-arms from the fire time."""
        wd = Watchdog(timeout_ms=2000)
        wd.feed(0.0)
        wd.fire(2.0)
        assert wd.fired == 1
        assert wd.deadline == 4.0

    def test_never_fed_fires_every_timeout(self):
        """A silent watchdog fires at T and every T after, never faster."""
        wd = Watchdog(timeout_ms=10000)
        wd.feed(0.0)
        fires = []
        for tick in range(0, 35001, 100):
            now = tick / 1000
            if wd.expired(now):
                wd.fire(now)
                fires.append(now)
        assert fires == [10.0, 20.0, 30.0]

    def test_feeding_postpones_fire(self):
        """Regular feeds keep the watchdog from firing."""
        wd = Watchdog(timeout_ms=1000)
        wd.feed(0.0)
        for tick in range(1, 50):
            now = tick * 0.5
            assert not wd.expired(now)
            wd.feed(now)
        assert wd.fired == 0

    def test_remaining_never_negative(self):
        wd = Watchdog(timeout_ms=1000)
        wd.feed(0.0)
        assert wd.remaining(0.25) == pytest.approx(0.75)
        assert wd.remaining(5.0) == 0.0


# ── WatchdogTimer ───────────────────────────────────────────────────────


class TestWatchdogTimer:
    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            WatchdogTimer(0, lambda: None)

    async def test_fires_repeatedly_while_silent(self):
        """Timer keeps firing once per timeout until stopped."""
        fired = []

        async def on_fire():
            fired.append(asyncio.get_running_loop().time())

        timer = WatchdogTimer(30, on_fire, name="t1")
        timer.start()
        await asyncio.sleep(0.2)
        timer.stop()
        assert 2 <= len(fired) <= 7
        gaps = [b - a for a, b in zip(fired, fired[1:], strict=False)]
        assert all(gap >= 0.025 for gap in gaps)

    async def test_feed_prevents_fire(self):
        """Feeding faster than the timeout suppresses fires."""
        fired = []

        async def on_fire():
            fired.append(1)

        timer = WatchdogTimer(100, on_fire)
        timer.start()
        for _ in range(10):
            await asyncio.sleep(0.02)
            timer.feed()
        timer.stop()
        assert fired == []

    async def test_stop_cancels(self):
        """No fires after stop()."""
        fired = []

        async def on_fire():
            fired.append(1)

        timer = WatchdogTimer(20, on_fire)
        timer.start()
        assert timer.running
        timer.stop()
        assert not timer.running
        await asyncio.sleep(0.06)
        assert fired == []

    async def test_callback_error_does_not_stop_timer(self):
        """A failing callback is logged and the timer re-arms."""
        calls = []

        async def on_fire():
            calls.append(1)
            raise RuntimeError("boom")

        timer = WatchdogTimer(20, on_fire)
        timer.start()
        await asyncio.sleep(0.1)
        timer.stop()
        assert len(calls) >= 2

    async def test_start_twice_is_noop(self):
        async def on_fire():
            pass

        clock = FakeClock(100.0)
        timer = WatchdogTimer(1000, on_fire, clock=clock)
        timer.start()
        first_deadline = timer.watchdog.deadline
        clock.now = 100.5
        timer.start()
        assert timer.watchdog.deadline == first_deadline
        timer.stop()
