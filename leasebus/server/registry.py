import asyncio
import logging
from typing import Optional
from .storage.in_memory import InMemoryBroker

logger = logging.getLogger(__name__)


class BrokerRegistry:
    """Owns the broker shared by every frontend and its reaper task."""

    def __init__(self, visibility_timeout: float = 30.0):
        self.broker = InMemoryBroker(visibility_timeout=visibility_timeout)
        self._reaper_task: Optional[asyncio.Task] = None

    def start_reaper(self, interval: float = 1.0):
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reap_loop(interval))

    async def stop_reaper(self):
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            await asyncio.gather(self._reaper_task, return_exceptions=True)
            self._reaper_task = None

    async def _reap_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                reaped = await self.broker.reap_expired()
            except Exception:
                logger.exception("Reaper pass failed")
                continue
            if reaped:
                logger.debug(f"Returned {reaped} timed-out messages to their queues")

    def get_broker(self) -> InMemoryBroker:
        return self.broker
