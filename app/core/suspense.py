"""
Suspense phase timer.

Fires a tick callback at a fixed interval for a fixed duration using loop
callbacks rather than a sleeping coroutine, so tearing a session down cancels
every pending callback at once.
"""

import asyncio
from typing import Callable, Optional

from app.core.logger import get_logger

logger = get_logger("suspense")


class SuspenseTimer:
    def __init__(self, duration_ms: int, tick_ms: int, on_tick: Callable[[int], None]):
        self.duration = max(0, duration_ms) / 1000
        self.interval = max(0, tick_ms) / 1000
        self.on_tick = on_tick
        self.ticks = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._done: Optional[asyncio.Future] = None
        self._tick_handle: Optional[asyncio.Handle] = None
        self._end_handle: Optional[asyncio.TimerHandle] = None
        self._deadline = 0.0

    @property
    def running(self) -> bool:
        return self._done is not None and not self._done.done()

    def start(self) -> asyncio.Future:
        if self.running:
            raise RuntimeError("Suspense timer already running")

        self._loop = asyncio.get_running_loop()
        self._done = self._loop.create_future()
        self._deadline = self._loop.time() + self.duration
        self.ticks = 0

        if self.interval > 0 and self.duration > 0:
            self._tick_handle = self._loop.call_soon(self._tick)
        self._end_handle = self._loop.call_later(self.duration, self._finish)
        return self._done

    async def wait(self) -> int:
        """Start if needed and wait for the phase to elapse. Returns tick count."""
        if self._done is None or self._done.done():
            self.start()
        return await self._done

    def _tick(self):
        self._tick_handle = None
        try:
            self.on_tick(self.ticks)
        except Exception as e:
            logger.warning(f"Suspense tick callback failed: {e!r}")
        self.ticks += 1

        if self._loop.time() + self.interval < self._deadline:
            self._tick_handle = self._loop.call_later(self.interval, self._tick)

    def _finish(self):
        self._end_handle = None
        self._cancel_handles()
        if self._done is not None and not self._done.done():
            self._done.set_result(self.ticks)

    def _cancel_handles(self):
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        if self._end_handle is not None:
            self._end_handle.cancel()
            self._end_handle = None

    def cancel(self):
        """Tear down pending callbacks; a waiter sees CancelledError."""
        self._cancel_handles()
        if self._done is not None and not self._done.done():
            self._done.cancel()
