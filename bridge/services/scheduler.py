# bridge/services/scheduler.py
"""
Periodic background work with explicit cancellation handles.

A tick runs to completion before the next interval starts, and a failing
tick is logged without stopping the timer.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from bridge.utils.logger import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable], run_immediately: bool = True):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        if not self.running:
            self._task = asyncio.create_task(self._loop(), name=self.name)
        return self

    async def _loop(self):
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.name.upper()}] tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def cancel(self):
        if self._task is not None:
            self._task.cancel()

    async def stop(self):
        """Cancel and wait for the loop to unwind."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
