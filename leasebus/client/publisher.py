import logging
from typing import Any, Optional, Union
from leasebus.backends.remote import backend_from_url
from leasebus.core.context import Context, background
from leasebus.core.errors import LeaseBusError, TransportError
from leasebus.core.interfaces import IBrokerBackend, IPublisher
from leasebus.core.protocol import encode_payload

logger = logging.getLogger(__name__)


class Publisher(IPublisher):
    def __init__(self, backend_or_url: Union[str, IBrokerBackend], topic: str):
        if isinstance(backend_or_url, str):
            self.backend = backend_from_url(backend_or_url, topic)
        else:
            self.backend = backend_or_url
        self.topic = topic

    async def close(self):
        await self.backend.close()

    async def publish(self, message: Any, ctx: Optional[Context] = None) -> str:
        """Sends one message and returns the broker's id for it.

        No retries: a failure is raised to the caller as TransportError,
        SerializationError or ContextCancelled.
        """
        ctx = ctx or background()
        data = encode_payload(message)
        try:
            message_id = await ctx.run(self.backend.publish(self.topic, data))
        except LeaseBusError:
            raise
        except Exception as e:
            raise TransportError(
                f"Publish to {self.topic} failed: {e}", cause=e
            ) from e
        logger.debug(f"Published {message_id} to {self.topic} ({len(data)} bytes)")
        return message_id
