import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from loguru import logger


class Poller:
    """Dispatches a poll cycle immediately and then on a fixed interval.

    Dispatch does not wait for the previous cycle to finish; overlapping
    cycles are rejected by the cycle itself (see ReconciliationEngine.run_cycle).
    """

    def __init__(self, cycle: Callable[[], Awaitable[Any]], interval: float):
        self.cycle = cycle
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Starts polling on the running event loop."""
        if self.running:
            raise RuntimeError("Poller already started")
        self._task = asyncio.create_task(self._run(), name="feed-poller")
        logger.info(f"Polling feed every {self.interval:g}s")
        return self._task

    async def stop(self) -> None:
        tasks = [task for task in (self._task, *self._in_flight) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        logger.info("Poller stopped")

    async def _run(self) -> None:
        while True:
            self._dispatch()
            await asyncio.sleep(self.interval)

    def _dispatch(self) -> None:
        task = asyncio.create_task(self._run_cycle())
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_cycle(self) -> None:
        try:
            await self.cycle()
        except Exception as e:
            logger.exception(f"Unexpected error during poll cycle: {e}")
