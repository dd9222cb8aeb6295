import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import ContextCancelled

T = TypeVar("T")


class Context:
    """Cancellation signal shared by the calls of one operation or subscription.

    Cancelling a parent cancels every child derived from it. A context built
    with a timeout cancels itself once the timeout elapses.
    """

    def __init__(
        self, timeout: Optional[float] = None, parent: Optional["Context"] = None
    ):
        self._done = asyncio.Event()
        self._reason: Optional[str] = None
        self._children: set = set()
        self._parent: Optional["Context"] = None
        self._timer: Optional[asyncio.TimerHandle] = None

        if parent is not None:
            if parent.cancelled():
                self.cancel(parent.reason)
            else:
                self._parent = parent
                parent._children.add(self)
        if timeout is not None and not self.cancelled():
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, self.cancel, "deadline exceeded")

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancelled(self) -> bool:
        return self._done.is_set()

    def cancel(self, reason: str = "context cancelled"):
        if self._done.is_set():
            return
        self._reason = reason
        self._done.set()
        if self._timer is not None:
            self._timer.cancel()
        for child in list(self._children):
            child.cancel(reason)
        self._children.clear()
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def child(self, timeout: Optional[float] = None) -> "Context":
        return Context(timeout=timeout, parent=self)

    async def wait(self):
        await self._done.wait()

    def check(self):
        if self.cancelled():
            raise ContextCancelled(self._reason or "context cancelled")

    async def run(self, aw: Awaitable[T]) -> T:
        """Await `aw`, abandoning it if the context ends first."""
        self.check()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._done.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise ContextCancelled(self._reason or "context cancelled")


def background() -> Context:
    """A context that is never cancelled."""
    return Context()
