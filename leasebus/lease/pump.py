import asyncio
import logging
from contextlib import aclosing
from leasebus.config import LeaseSettings
from leasebus.core.channel import Channel
from leasebus.core.context import Context
from leasebus.core.errors import ContextCancelled, SerializationError, TransportError
from leasebus.core.interfaces import IBrokerBackend
from leasebus.core.models import RawMessage
from .coordinator import AckCoordinator
from .handle import MessageHandle
from .table import LeaseTable

logger = logging.getLogger(__name__)


class DeliveryPump:
    """Moves messages from the backend stream to the delivery channel.

    Every surfaced message gets a fresh lease first. A full delivery channel
    suspends the pump.
    """

    def __init__(
        self,
        table: LeaseTable,
        backend: IBrokerBackend,
        coordinator: AckCoordinator,
        settings: LeaseSettings,
        messages: Channel,
        errors: Channel,
    ):
        self.table = table
        self.backend = backend
        self.coordinator = coordinator
        self.settings = settings
        self.messages = messages
        self.errors = errors

    async def run(self, ctx: Context):
        logger.info("Delivery pump started")
        try:
            while not ctx.cancelled():
                try:
                    async with aclosing(self.backend.receive(ctx)) as stream:
                        async for raw in stream:
                            await self.deliver(raw, ctx)
                    if not ctx.cancelled():
                        logger.info("Backend stream ended")
                    return
                except ContextCancelled:
                    return
                except SerializationError as e:
                    logger.warning(f"Skipping malformed message: {e}")
                    self.errors.send_nowait(e)
                except TransportError as e:
                    self.errors.send_nowait(e)
                    if e.fatal:
                        logger.error(f"Fatal transport error, stopping: {e}")
                        return
                    logger.warning(f"Transport error, resuming receive: {e}")
                # Let the rest of the loop run before re-entering receive
                await asyncio.sleep(0)
        finally:
            logger.info("Delivery pump stopped")

    async def deliver(self, raw: RawMessage, ctx: Context) -> bool:
        lease = await self.table.admit(raw, self.settings.ack_window)
        if lease is None:
            logger.debug(f"Ignoring {raw.message_id}: leased, acking or dropped")
            return False

        handle = MessageHandle(lease, self.coordinator)
        logger.debug(f"Delivering {handle!r}")
        await self.messages.send(handle, ctx)
        return True
