import asyncio
import logging
import httpx
from typing import Any, AsyncIterator, Dict, Optional
from pydantic import ValidationError
from leasebus.client.transport import HttpTransport, ITransport, TcpTransport
from leasebus.core.context import Context
from leasebus.core.errors import (
    ContextCancelled,
    LeaseBusError,
    SerializationError,
    TransportError,
)
from leasebus.core.interfaces import IBrokerBackend
from leasebus.core.models import RawMessage
from leasebus.core.protocol import Command

logger = logging.getLogger(__name__)


class RemoteBackend(IBrokerBackend):
    """Backend talking to a leasebus server through a transport.

    Receive failures are retried with exponential backoff; after
    `max_attempts` consecutive failures the stream raises a fatal
    TransportError.
    """

    def __init__(
        self,
        transport: ITransport,
        topic: str,
        batch_size: int = 10,
        poll_interval: float = 0.5,
        visibility_timeout: Optional[float] = None,
        max_attempts: int = 5,
        backoff: float = 0.2,
    ):
        self.transport = transport
        self.topic = topic
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self.max_attempts = max_attempts
        self.backoff = backoff

    async def _request(self, command: Command, body: Dict[str, Any]) -> Any:
        try:
            return await self.transport.request(command, body)
        except LeaseBusError:
            raise
        except (
            httpx.HTTPError,
            OSError,
            asyncio.IncompleteReadError,
            asyncio.TimeoutError,
            ValueError,
        ) as e:
            raise TransportError(f"{command.name} failed: {e}", cause=e) from e

    async def publish(self, topic: str, data: bytes) -> str:
        body = await self._request(Command.PUBLISH, {"topic": topic, "payload": data})
        return body["message_id"]

    async def receive(self, ctx: Context) -> AsyncIterator[RawMessage]:
        failures = 0
        request = {"topic": self.topic, "limit": self.batch_size}
        if self.visibility_timeout is not None:
            request["visibility_timeout"] = self.visibility_timeout

        while not ctx.cancelled():
            try:
                body = await ctx.run(self._request(Command.RECEIVE, request))
            except ContextCancelled:
                return
            except TransportError as e:
                failures += 1
                if failures >= self.max_attempts:
                    raise TransportError(
                        f"Giving up on {self.topic} after {failures} failed receives: "
                        f"{e.message}",
                        fatal=True,
                        cause=e,
                    ) from e
                delay = self.backoff * 2 ** (failures - 1)
                logger.warning(
                    f"Receive from {self.topic} failed ({failures}/"
                    f"{self.max_attempts}), retrying in {delay:.2f}s: {e}"
                )
                try:
                    await ctx.run(asyncio.sleep(delay))
                except ContextCancelled:
                    return
                continue

            failures = 0
            malformed = []
            items = body.get("messages") or []
            for item in items:
                try:
                    raw = RawMessage.model_validate(item)
                except ValidationError as e:
                    malformed.append(str(item.get("message_id", "?")))
                    logger.debug(f"Malformed message from {self.topic}: {e}")
                    continue
                yield raw
            if malformed:
                raise SerializationError(
                    f"Skipped malformed messages from {self.topic}: "
                    f"{', '.join(malformed)}",
                    message_id=malformed[0],
                )

            if not items:
                try:
                    await ctx.run(asyncio.sleep(self.poll_interval))
                except ContextCancelled:
                    return

    async def delete(self, message_id: str):
        await self._request(Command.DELETE, {"message_id": message_id})

    async def extend_visibility(self, message_id: str, duration: float):
        await self._request(
            Command.EXTEND, {"message_id": message_id, "duration": duration}
        )

    async def make_visible_again(self, message_id: str):
        await self._request(Command.NACK, {"message_id": message_id})

    async def close(self):
        await self.transport.close()


def backend_from_url(url: str, topic: str, **kwargs) -> RemoteBackend:
    """http(s)://host:port selects HTTP, host:port selects the TCP protocol."""
    if url.startswith("http"):
        transport: ITransport = HttpTransport(url)
    else:
        host, port = url.rsplit(":", 1)
        transport = TcpTransport(host, int(port))
    return RemoteBackend(transport, topic, **kwargs)
