"""Test the keepalive timers, with much shorter intervals than the default ones."""

from __future__ import annotations

import asyncio

from ircevent.keepalive import KeepaliveMonitor


class Recorder:
    """Counts calls to the keepalive actions."""

    def __init__(self, fail: bool = False) -> None:
        self.pings = 0
        self.recaptures = 0
        self.fail = fail

    async def ping(self) -> None:
        self.pings += 1
        if self.fail:
            raise ConnectionResetError("dummy")

    async def recapture(self) -> None:
        self.recaptures += 1


async def run_for(monitor: KeepaliveMonitor, seconds: float) -> None:
    """Run a monitor for a while, then stop it."""
    task = asyncio.create_task(monitor.run())
    await asyncio.sleep(seconds)
    monitor.stop()
    await asyncio.wait_for(task, 1)


async def test_idle_ping() -> None:
    """Test that an idle connection gets pinged."""
    recorder = Recorder()
    monitor = KeepaliveMonitor(
        idle_for=lambda: 300,
        ping=recorder.ping,
        recapture=recorder.recapture,
        check_interval=0.05,
        idle_timeout=240,
        recapture_interval=60,
    )
    await run_for(monitor, 0.3)
    assert recorder.pings >= 2
    assert recorder.recaptures == 0


async def test_busy_no_ping() -> None:
    """Test that a connection with recent traffic does not get pinged."""
    recorder = Recorder()
    monitor = KeepaliveMonitor(
        idle_for=lambda: 10,
        ping=recorder.ping,
        recapture=recorder.recapture,
        check_interval=0.05,
        idle_timeout=240,
        recapture_interval=60,
    )
    await run_for(monitor, 0.3)
    assert recorder.pings == 0


async def test_periodic_recapture() -> None:
    """Test the unconditional ping and nickname recapture."""
    recorder = Recorder()
    monitor = KeepaliveMonitor(
        idle_for=lambda: 0,
        ping=recorder.ping,
        recapture=recorder.recapture,
        check_interval=60,
        recapture_interval=0.05,
    )
    await run_for(monitor, 0.3)
    assert recorder.pings >= 2
    assert recorder.recaptures == recorder.pings


async def test_failure_keeps_running() -> None:
    """Test that a failed ping does not stop the timer."""
    recorder = Recorder(fail=True)
    monitor = KeepaliveMonitor(
        idle_for=lambda: 300,
        ping=recorder.ping,
        recapture=recorder.recapture,
        check_interval=0.05,
    )
    await run_for(monitor, 0.3)
    assert recorder.pings >= 2


async def test_stop() -> None:
    """Test that stopping ends the monitor promptly, even with long intervals."""
    recorder = Recorder()
    monitor = KeepaliveMonitor(idle_for=lambda: 0, ping=recorder.ping, recapture=recorder.recapture)
    task = asyncio.create_task(monitor.run())
    await asyncio.sleep(0)
    assert not monitor.stopped

    monitor.stop()
    assert monitor.stopped
    await asyncio.wait_for(task, 1)
    assert recorder.pings == 0
