#!/usr/bin/env python3
"""
Noxwatch Periodic Task Runner

Runs an async callable on a fixed interval. A tick that is still running
when the next one is due is left alone and the new tick is dropped, so a
slow probe never piles up work behind it.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger('noxwatch.periodic')


class PeriodicTask:
    """
    Fixed-interval ticker with drop-and-log overlap handling.

    Args:
        name: Loop name used in log lines
        interval: Seconds between tick starts
        func: Coroutine function run once per tick
        run_immediately: Fire the first tick at start instead of after one interval
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately

        self._inflight: Optional[asyncio.Task] = None
        self._stats = {
            'ticks_started': 0,
            'ticks_completed': 0,
            'ticks_failed': 0,
            'ticks_skipped': 0,
        }

    async def run(self, stop_event: asyncio.Event):
        """Tick until stop_event is set, then let the in-flight tick finish."""
        logger.info(f"[{self.name}] loop started (interval {self.interval}s)")
        if not self.run_immediately:
            await self._wait(stop_event)

        while not stop_event.is_set():
            self.fire()
            await self._wait(stop_event)

        if self._inflight is not None and not self._inflight.done():
            logger.info(f"[{self.name}] waiting for in-flight tick to complete")
            await asyncio.gather(self._inflight, return_exceptions=True)
        logger.info(f"[{self.name}] loop stopped")

    def fire(self) -> bool:
        """Start one tick unless the previous one is still running."""
        if self._inflight is not None and not self._inflight.done():
            self._stats['ticks_skipped'] += 1
            logger.warning(f"[{self.name}] previous tick still running, skipping this tick")
            return False

        self._stats['ticks_started'] += 1
        self._inflight = asyncio.ensure_future(self._tick())
        return True

    async def _tick(self):
        try:
            await self.func()
            self._stats['ticks_completed'] += 1
        except asyncio.CancelledError:
            raise
        except Exception:
            self._stats['ticks_failed'] += 1
            logger.exception(f"[{self.name}] tick failed")

    async def _wait(self, stop_event: asyncio.Event):
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
