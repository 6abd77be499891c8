"""Base class for the supervisor's periodic background tasks."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs tick() every `interval` seconds in its own asyncio task.

    stop() cancels the task and waits for it to finish, so no tick can run
    after stop() returns. Calling stop() from inside tick() only detaches the
    loop, which then exits once the current tick returns.
    """

    name = "periodic"

    def __init__(self, interval: float):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the loop (no-op if already running)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} started (every {self.interval}s)")

    async def stop(self):
        """Stop the loop and wait for the task to exit."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"{self.name} stopped")

    async def _loop(self):
        me = asyncio.current_task()
        try:
            while self._task is me:
                await asyncio.sleep(self.interval)
                if self._task is not me:
                    break
                self.ticks += 1
                try:
                    await self.tick()
                except Exception as e:
                    logger.error(f"Error in {self.name} tick: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug(f"{self.name} loop cancelled")
            raise

    async def tick(self):
        raise NotImplementedError
