import asyncio
import logging
from collections import deque
from typing import Callable, Generic, Optional, TypeVar

from .context import Context
from .errors import ChannelClosed

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Channel(Generic[T]):
    """Bounded, closable FIFO between one producer task and its consumers.

    Items already buffered when the channel closes can still be received;
    after that `receive` raises `ChannelClosed` and iteration stops.

    Items matching `keep` are never discarded by `send_nowait`. When the
    buffer holds nothing else they are parked past capacity instead.
    """

    def __init__(self, maxsize: int, keep: Optional[Callable[[T], bool]] = None):
        if maxsize < 1:
            raise ValueError("channel capacity must be at least 1")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._overflow: deque = deque()
        self._keep = keep or (lambda item: False)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize() + len(self._overflow)

    def close(self):
        self._closed.set()

    async def send(self, item: T, ctx: Optional[Context] = None):
        """Put `item`, suspending while the channel is full."""
        if self.closed:
            raise ChannelClosed()
        if ctx is None:
            await self._queue.put(item)
        else:
            await ctx.run(self._queue.put(item))

    def send_nowait(self, item: T) -> bool:
        """Put `item` without blocking, evicting the oldest item when full.

        Returns False if an item, older or this one, had to be discarded.
        """
        if self.closed:
            raise ChannelClosed()
        if not self._queue.full():
            self._queue.put_nowait(item)
            return True

        buffered = []
        while not self._queue.empty():
            buffered.append(self._queue.get_nowait())
        victim = next(
            (i for i, queued in enumerate(buffered) if not self._keep(queued)), None
        )
        if victim is not None:
            dropped = buffered.pop(victim)
            buffered.append(item)
        elif self._keep(item):
            dropped = None
            self._overflow.append(item)
        else:
            dropped = item
        for queued in buffered:
            self._queue.put_nowait(queued)

        if dropped is None:
            return True
        logger.warning(f"Channel full, discarding item: {dropped!r}")
        return False

    def _took(self, item: T) -> T:
        if self._overflow:
            self._queue.put_nowait(self._overflow.popleft())
        return item

    async def receive(self) -> T:
        while True:
            if not self._queue.empty():
                return self._took(self._queue.get_nowait())
            if self.closed:
                raise ChannelClosed()

            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait(
                    {getter, closer}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                closer.cancel()
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                return self._took(getter.result())

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        try:
            return await self.receive()
        except ChannelClosed:
            raise StopAsyncIteration
