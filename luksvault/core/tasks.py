"""Background periodic tasks with cooperative cancellation."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a coroutine every ``interval`` seconds until stopped.

    The stop event is checked between runs, so ``stop()`` never interrupts
    a run midway unless it exceeds ``stop_timeout``.

    Usage:
        task = PeriodicTask("rotation-check", 3600, scheduler.check_once)
        task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object]],
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Started periodic task {self.name} (every {self.interval}s)")

    async def _loop(self) -> None:
        if not self.run_immediately and await self._wait():
            return
        while not self._stop.is_set():
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # One failed run must not end the schedule
                logger.error(f"Periodic task {self.name} failed: {e}", exc_info=True)
            self.runs += 1
            if await self._wait():
                return

    async def _wait(self) -> bool:
        """Sleep one interval; True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self, stop_timeout: float = 30.0) -> None:
        if self._task is None:
            return
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Periodic task {self.name} did not stop in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(f"Stopped periodic task {self.name}")
