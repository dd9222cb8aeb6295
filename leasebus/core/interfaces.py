from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional
from .context import Context
from .models import RawMessage


class IBrokerBackend(ABC):
    """Capability set every concrete broker provides to the engine."""

    @abstractmethod
    async def publish(self, topic: str, data: bytes) -> str:
        """Hands a message to the broker and returns its id once accepted."""
        pass

    @abstractmethod
    def receive(self, ctx: Context) -> AsyncIterator[RawMessage]:
        """Streams messages until ctx is cancelled.

        Raises TransportError; a fatal one means the stream cannot be resumed.
        """
        pass

    @abstractmethod
    async def delete(self, message_id: str):
        pass

    @abstractmethod
    async def extend_visibility(self, message_id: str, duration: float):
        pass

    @abstractmethod
    async def make_visible_again(self, message_id: str):
        """Makes an in-flight message available for redelivery right away."""
        pass

    async def close(self):
        pass


class IPublisher(ABC):
    @abstractmethod
    async def publish(self, message, ctx: Optional[Context] = None) -> str:
        pass


class IMessageHandle(ABC):
    @property
    @abstractmethod
    def message_id(self) -> str:
        pass

    @property
    @abstractmethod
    def message(self) -> bytes:
        pass

    @abstractmethod
    async def extend_ack_deadline(self, duration: float):
        pass

    @abstractmethod
    async def ack(self):
        pass


class IAtMostOnceSubscriber(ABC):
    @abstractmethod
    def start(self, ctx: Context):
        """Returns a subscription streaming raw payload bytes."""
        pass


class IAtLeastOnceSubscriber(ABC):
    @abstractmethod
    def start(self, ctx: Context):
        """Returns a subscription streaming message handles."""
        pass

    @abstractmethod
    async def ack_message(self, message_id: str, ctx: Optional[Context] = None):
        pass

    @abstractmethod
    async def extend_ack_deadline(
        self, message_id: str, duration: float, ctx: Optional[Context] = None
    ):
        pass
