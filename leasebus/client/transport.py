import asyncio
import base64
import logging
import httpx
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from leasebus.core.errors import TransportError
from leasebus.core.protocol import Command, pack_message, read_message

logger = logging.getLogger(__name__)


class ITransport(ABC):
    """Carries one broker command and returns its response body.

    Bodies use bytes for payloads regardless of how the wire encodes them.
    """

    @abstractmethod
    async def request(self, command: Command, payload: Dict[str, Any]) -> Any:
        pass

    @abstractmethod
    async def close(self):
        pass


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class HttpTransport(ITransport):
    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, path: str, body: Optional[dict] = None) -> Any:
        response = await self._client.post(f"{self.base_url}{path}", json=body or {})
        if response.status_code == 404:
            raise TransportError(response.json().get("detail", "not found"))
        response.raise_for_status()
        return response.json()

    async def request(self, command: Command, payload: Dict[str, Any]) -> Any:
        payload = dict(payload)

        if command == Command.PUBLISH:
            topic = payload.pop("topic")
            return await self._post(
                f"/topics/{topic}/messages", {"payload": _b64(payload["payload"])}
            )

        elif command == Command.RECEIVE:
            topic = payload.pop("topic")
            body = await self._post(f"/topics/{topic}/receive", payload)
            for message in body.get("messages", []):
                message["payload"] = base64.b64decode(message["payload"])
            return body

        elif command == Command.DELETE:
            return await self._post(f"/messages/{payload['message_id']}/delete")

        elif command == Command.EXTEND:
            message_id = payload.pop("message_id")
            return await self._post(f"/messages/{message_id}/extend", payload)

        elif command == Command.NACK:
            return await self._post(f"/messages/{payload['message_id']}/nack")

        raise ValueError(f"Unknown command for HTTP transport: {command}")

    async def close(self):
        await self._client.aclose()


class TcpTransport(ITransport):
    def __init__(self, host: str, port: int, timeout: float = 60.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()

    async def _ensure_connected(self):
        if self._writer is None:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout
            )

    async def _exchange(self, command: Command, payload: Dict[str, Any]) -> Any:
        await self._ensure_connected()
        writer = self._writer
        reader = self._reader
        if writer is None or reader is None:
            raise ConnectionError("Failed to connect to server")

        writer.write(pack_message(command, payload))
        await writer.drain()
        version, cmd, body = await asyncio.wait_for(
            read_message(reader), timeout=self.timeout
        )
        return body

    def _reset(self):
        if self._writer is not None:
            self._writer.close()
        self._writer = None
        self._reader = None

    async def request(self, command: Command, payload: Dict[str, Any]) -> Any:
        async with self._lock:
            try:
                body = await self._exchange(command, payload)
            except (
                asyncio.IncompleteReadError,
                ConnectionResetError,
                BrokenPipeError,
                ConnectionError,
            ):
                # Try to reconnect once
                logger.debug(f"Reconnecting to {self.host}:{self.port}")
                self._reset()
                body = await self._exchange(command, payload)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                # A half-read response would desync the stream
                self._reset()
                raise

        if isinstance(body, dict) and "error" in body:
            raise TransportError(body["error"])
        return body

    async def close(self):
        if self._writer:
            self._writer.close()
            await self._writer.wait_closed()
            self._writer = None
            self._reader = None
