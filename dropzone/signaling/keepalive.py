"""
Keepalive Watchdog

Every `interval` seconds each connection is checked:
- silent for more than 2 * interval -> evicted (same as a socket close)
- otherwise                          -> sent a `ping`, checked again later

Clients answer `ping` with `pong`, which refreshes `last_heartbeat`.

One asyncio task per connection. start() always cancels the previous task
first, so re-arming after a room change never leaves two timers running.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from .registry import ConnectionRecord

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0

EvictCallback = Callable[[ConnectionRecord], Awaitable[None]]


class KeepaliveWatchdog:
    """Per-connection heartbeat timers."""

    def __init__(self, on_timeout: EvictCallback, interval: float = DEFAULT_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            on_timeout: Called (once) with a connection that went silent
            interval: Seconds between pings
            clock: Monotonic time source, in seconds
        """
        self.interval = interval
        self.clock = clock
        self._on_timeout = on_timeout

    @property
    def timeout(self) -> float:
        return 2 * self.interval

    def start(self, record: ConnectionRecord):
        """(Re)arm the watchdog for a connection."""
        self.cancel(record)
        record.watchdog = asyncio.create_task(self._run(record))

    def cancel(self, record: ConnectionRecord):
        """Stop the watchdog for a connection. Safe to call from inside it."""
        task, record.watchdog = record.watchdog, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()

    def heartbeat(self, record: ConnectionRecord):
        record.last_heartbeat = self.clock()

    def is_expired(self, record: ConnectionRecord) -> bool:
        return self.clock() - record.last_heartbeat > self.timeout

    async def check(self, record: ConnectionRecord) -> bool:
        """
        Run one watchdog tick.

        Returns:
            True if the connection is still alive (and was pinged)
        """
        if self.is_expired(record):
            logger.info(f"{record} missed keepalive for {self.timeout:.0f}s, evicting")
            await self._on_timeout(record)
            return False

        await record.send({'type': 'ping'})
        return True

    async def _run(self, record: ConnectionRecord):
        try:
            while await self.check(record):
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Keepalive error for {record}: {e}", exc_info=True)
