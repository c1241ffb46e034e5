"""Keepalive component.

Periodically pings the server, both to notice a dead connection and to keep
idle connections from being dropped, and tries to win back the preferred
nickname when the server previously refused it.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

logger = structlog.get_logger()


class KeepaliveMonitor:
    """Two independently cancellable timers, sharing one stop signal.

    * every ``check_interval`` seconds, ping if nothing was received from the
      server for more than ``idle_timeout`` seconds;
    * every ``recapture_interval`` seconds, ping unconditionally and re-request
      the desired nickname if we currently have another one.
    """

    def __init__(
        self,
        idle_for: Callable[[], float],
        ping: Callable[[], Awaitable[None]],
        recapture: Callable[[], Awaitable[None]],
        check_interval: float = 60,
        idle_timeout: float = 240,
        recapture_interval: float = 900,
    ) -> None:
        self.idle_for = idle_for
        self.ping = ping
        self.recapture = recapture
        self.check_interval = check_interval
        self.idle_timeout = idle_timeout
        self.recapture_interval = recapture_interval

        self.log = logger.new()
        self._stopped = asyncio.Event()
        self._timers: list[asyncio.Task[Any]] = []

    async def run(self) -> None:
        """Run both timers until stop() is called."""
        self._timers = [
            asyncio.create_task(self._idle_check()),
            asyncio.create_task(self._periodic_recapture()),
        ]
        try:
            await self._stopped.wait()
        finally:
            for timer in self._timers:
                timer.cancel()
            await asyncio.gather(*self._timers, return_exceptions=True)
            self._timers = []
            self.log.debug("Keepalive stopped")

    def stop(self) -> None:
        """Signal both timers to stop."""
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        """Return True if stop() has been called."""
        return self._stopped.is_set()

    async def _idle_check(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            if self.stopped:
                return

            idle = self.idle_for()
            if idle > self.idle_timeout:
                self.log.debug("Connection idle, pinging", idle=round(idle, 1))
                await self._fire(self.ping)

    async def _periodic_recapture(self) -> None:
        while True:
            await asyncio.sleep(self.recapture_interval)
            if self.stopped:
                return

            await self._fire(self.ping)
            await self._fire(self.recapture)

    async def _fire(self, action: Callable[[], Awaitable[None]]) -> None:
        # transport errors are reported by the I/O loops, not here
        try:
            await action()
        except Exception:
            self.log.debug("Keepalive action failed", exc_info=True)
