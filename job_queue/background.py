"""
Periodic background tasks — follow-up ticker and engagement-cache pruning.

Each PeriodicTask runs one coroutine on a fixed interval inside the event
loop. stop() signals the loop and waits for it: a cycle that is already
running finishes before the task exits, and no timer outlives stop().
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class PeriodicTask:
    """
    Usage:
        ticker = PeriodicTask("followup_tick", scheduler.tick, interval_s=300)
        await ticker.start()
        ...
        await ticker.stop()
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        interval_s: float,
        run_immediately: bool = False,
    ):
        self.name = name
        self._fn = fn
        self.interval_s = interval_s
        self.run_immediately = run_immediately
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("periodic_task_started", task=self.name, interval_s=self.interval_s)

    async def stop(self) -> None:
        """Let any in-flight cycle finish, then end the loop."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("periodic_task_stopped", task=self.name, cycles=self.cycles)

    async def run_once(self) -> Any:
        self.cycles += 1
        return await self._fn()

    async def _wait_interval(self) -> bool:
        """Sleep one interval. Returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            return True
        except asyncio.TimeoutError:
            return False

    async def _loop(self) -> None:
        if not self.run_immediately and await self._wait_interval():
            return
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("periodic_task_error", task=self.name, error=str(e))
            if await self._wait_interval():
                return
