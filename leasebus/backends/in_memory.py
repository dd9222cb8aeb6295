from typing import AsyncIterator, Optional
from leasebus.core.context import Context
from leasebus.core.errors import ContextCancelled, TransportError
from leasebus.core.interfaces import IBrokerBackend
from leasebus.core.models import RawMessage
from leasebus.server.storage.in_memory import InMemoryBroker


class InMemoryBackend(IBrokerBackend):
    """Backend bound to one topic of an in-process InMemoryBroker."""

    def __init__(
        self,
        broker: InMemoryBroker,
        topic: str,
        batch_size: int = 10,
        poll_interval: float = 0.1,
        visibility_timeout: Optional[float] = None,
    ):
        self.broker = broker
        self.topic = topic
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout

    async def publish(self, topic: str, data: bytes) -> str:
        return await self.broker.publish(topic, data)

    async def receive(self, ctx: Context) -> AsyncIterator[RawMessage]:
        while not ctx.cancelled():
            batch = await self.broker.receive_batch(
                self.topic, self.batch_size, self.visibility_timeout
            )
            for message in batch:
                yield RawMessage(
                    message_id=message.id,
                    payload=message.payload,
                    deadline_hint=self.visibility_timeout
                    or self.broker.visibility_timeout,
                )
            if batch:
                continue
            try:
                await ctx.run(
                    self.broker.wait_for_messages(self.topic, self.poll_interval)
                )
            except ContextCancelled:
                return

    async def delete(self, message_id: str):
        try:
            await self.broker.delete(message_id)
        except KeyError:
            raise TransportError(f"Broker does not know message {message_id}")

    async def extend_visibility(self, message_id: str, duration: float):
        try:
            await self.broker.extend_visibility(message_id, duration)
        except KeyError:
            raise TransportError(f"Broker does not know message {message_id}")

    async def make_visible_again(self, message_id: str):
        try:
            await self.broker.make_visible_again(message_id)
        except KeyError:
            raise TransportError(f"Broker does not know message {message_id}")
