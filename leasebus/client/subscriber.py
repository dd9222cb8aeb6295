import asyncio
import logging
import time
from contextlib import aclosing
from typing import Callable, Generic, Optional, TypeVar
from leasebus.config import LeaseSettings
from leasebus.core.channel import Channel
from leasebus.core.context import Context, background
from leasebus.core.errors import (
    ContextCancelled,
    LeaseBusError,
    PoisonMessage,
    SerializationError,
    TransportError,
)
from leasebus.core.interfaces import (
    IAtLeastOnceSubscriber,
    IAtMostOnceSubscriber,
    IBrokerBackend,
)
from leasebus.lease.coordinator import AckCoordinator
from leasebus.lease.handle import MessageHandle
from leasebus.lease.monitor import DeadlineMonitor
from leasebus.lease.pump import DeliveryPump
from leasebus.lease.table import LeaseTable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_poison(error: Exception) -> bool:
    return isinstance(error, PoisonMessage)


class Subscription(Generic[T]):
    """A running subscription: its delivery and error channels.

    Both channels close once the subscription's context is cancelled or the
    backend stream ends. Iterating the subscription iterates `messages`.
    """

    def __init__(self, ctx: Context, messages: Channel, errors: Channel):
        self.ctx = ctx
        self.messages = messages
        self.errors = errors
        self._task: Optional[asyncio.Task] = None

    def cancel(self):
        self.ctx.cancel("subscription cancelled")

    async def wait_closed(self):
        if self._task is not None:
            await asyncio.shield(self._task)

    @property
    def closed(self) -> bool:
        return self.messages.closed and self.errors.closed

    def __aiter__(self):
        return self.messages.__aiter__()

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.cancel()
        await self.wait_closed()


class _SubscriberBase:
    def __init__(self, backend: IBrokerBackend, settings: Optional[LeaseSettings]):
        self.backend = backend
        self.settings = settings or LeaseSettings()
        self._subscription: Optional[Subscription] = None

    def _open(self, ctx: Optional[Context]) -> Subscription:
        if self._subscription is not None:
            raise RuntimeError("subscriber already started")
        # Fatal errors end the subscription without cancelling the caller's ctx
        run_ctx = (ctx or background()).child()
        subscription = Subscription(
            run_ctx,
            Channel(self.settings.delivery_buffer),
            Channel(self.settings.error_buffer, keep=_is_poison),
        )
        self._subscription = subscription
        return subscription

    def _report(self, error: Exception):
        if self._subscription is not None and not self._subscription.errors.closed:
            self._subscription.errors.send_nowait(error)

    async def _stop(self, ctx: Context, *tasks: asyncio.Task):
        """Cancels ctx, then cancels tasks still running after the grace period."""
        ctx.cancel("subscription closed")
        pending = [task for task in tasks if not task.done()]
        if pending:
            _, pending = await asyncio.wait(
                pending, timeout=self.settings.shutdown_grace
            )
        for task in pending:
            logger.warning(f"Cancelling {task.get_name()} after shutdown grace")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class AtLeastOnceSubscriber(_SubscriberBase, IAtLeastOnceSubscriber):
    """Leased delivery: every message must be acked before its deadline or it
    is redelivered, for at most `max_retries` deliveries in total.
    """

    def __init__(
        self,
        backend: IBrokerBackend,
        settings: Optional[LeaseSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(backend, settings)
        self.table = LeaseTable(clock)
        self.coordinator = AckCoordinator(self.table, backend)

    def start(self, ctx: Optional[Context] = None) -> Subscription[MessageHandle]:
        subscription = self._open(ctx)
        pump = DeliveryPump(
            self.table,
            self.backend,
            self.coordinator,
            self.settings,
            subscription.messages,
            subscription.errors,
        )
        monitor = DeadlineMonitor(
            self.table, self.backend, self.settings, subscription.errors
        )
        subscription._task = asyncio.create_task(
            self._run(subscription, pump, monitor), name="leasebus-subscription"
        )
        return subscription

    async def _run(
        self, subscription: Subscription, pump: DeliveryPump, monitor: DeadlineMonitor
    ):
        ctx = subscription.ctx
        pump_task = asyncio.create_task(pump.run(ctx), name="leasebus-pump")
        monitor_task = asyncio.create_task(monitor.run(ctx), name="leasebus-monitor")
        try:
            await asyncio.wait(
                {pump_task, monitor_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in (pump_task, monitor_task):
                if task.done() and not task.cancelled() and task.exception():
                    error = task.exception()
                    logger.error(f"{task.get_name()} failed: {error}", exc_info=error)
                    message = f"{task.get_name()} failed: {error}"
                    self._report(TransportError(message, fatal=True, cause=error))
        finally:
            await self._stop(ctx, pump_task, monitor_task)
            # Outstanding leases are left to the backend's visibility timeout
            await self.table.clear()
            subscription.messages.close()
            subscription.errors.close()
            logger.info("Subscription closed")

    async def ack_message(self, message_id: str, ctx: Optional[Context] = None):
        await self.coordinator.ack(message_id, ctx)

    async def extend_ack_deadline(
        self, message_id: str, duration: float, ctx: Optional[Context] = None
    ):
        await self.coordinator.extend_ack_deadline(message_id, duration, ctx)


class AtMostOnceSubscriber(_SubscriberBase, IAtMostOnceSubscriber):
    """Best-effort delivery of raw payloads.

    Messages are deleted from the backend as they are received, so anything
    not read before a crash or cancellation is lost.
    """

    def start(self, ctx: Optional[Context] = None) -> Subscription[bytes]:
        subscription = self._open(ctx)
        subscription._task = asyncio.create_task(
            self._run(subscription), name="leasebus-stream"
        )
        return subscription

    async def _run(self, subscription: Subscription):
        ctx = subscription.ctx
        pump_task = asyncio.create_task(self._pump(ctx, subscription.messages))
        try:
            await asyncio.wait({pump_task})
            if not pump_task.cancelled() and pump_task.exception():
                error = pump_task.exception()
                logger.error(f"Stream pump failed: {error}", exc_info=error)
                message = f"Stream pump failed: {error}"
                self._report(TransportError(message, fatal=True, cause=error))
        finally:
            await self._stop(ctx, pump_task)
            subscription.messages.close()
            subscription.errors.close()
            logger.info("Stream closed")

    async def _pump(self, ctx: Context, messages: Channel):
        while not ctx.cancelled():
            try:
                async with aclosing(self.backend.receive(ctx)) as stream:
                    async for raw in stream:
                        try:
                            await ctx.run(self.backend.delete(raw.message_id))
                        except ContextCancelled:
                            raise
                        except LeaseBusError as e:
                            self._report(e)
                            continue
                        except Exception as e:
                            self._report(
                                TransportError(
                                    f"Delete of {raw.message_id} failed: {e}", cause=e
                                )
                            )
                            continue
                        await messages.send(raw.payload, ctx)
                return
            except ContextCancelled:
                return
            except SerializationError as e:
                logger.warning(f"Skipping malformed message: {e}")
                self._report(e)
            except TransportError as e:
                self._report(e)
                if e.fatal:
                    logger.error(f"Fatal transport error, stopping: {e}")
                    return
                logger.warning(f"Transport error, resuming receive: {e}")
            await asyncio.sleep(0)
