import asyncio
import logging
from typing import Optional
from leasebus.core.errors import SerializationError
from leasebus.core.protocol import Command, read_message, pack_message
from leasebus.server.registry import BrokerRegistry

logger = logging.getLogger(__name__)


class TcpFrontend:
    def __init__(
        self, registry: BrokerRegistry, host: str = "0.0.0.0", port: int = 9000
    ):
        self.registry = registry
        self.host = host
        self.port = port
        self._server: Optional[asyncio.Server] = None

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        addr = writer.get_extra_info("peername")
        logger.debug(f"New connection from {addr}")

        try:
            while True:
                try:
                    version, command, body = await read_message(reader)
                except asyncio.IncompleteReadError:
                    break

                response_body = await self.process_command(command, body)
                writer.write(pack_message(command, response_body))
                await writer.drain()
        except (SerializationError, ValueError, ConnectionError) as e:
            logger.error(f"Error handling client {addr}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def process_command(self, command: int, body: dict) -> dict:
        broker = self.registry.get_broker()
        try:
            if command == Command.PUBLISH:
                message_id = await broker.publish(body["topic"], body["payload"])
                return {"message_id": message_id}

            elif command == Command.RECEIVE:
                timeout = body.get("visibility_timeout")
                batch = await broker.receive_batch(
                    body["topic"], body.get("limit", 10), timeout
                )
                hint = timeout or broker.visibility_timeout
                return {
                    "messages": [
                        {
                            "message_id": message.id,
                            "payload": message.payload,
                            "deadline_hint": hint,
                        }
                        for message in batch
                    ]
                }

            elif command == Command.DELETE:
                await broker.delete(body["message_id"])
                return {"status": "deleted"}

            elif command == Command.EXTEND:
                await broker.extend_visibility(body["message_id"], body["duration"])
                return {"status": "extended"}

            elif command == Command.NACK:
                await broker.make_visible_again(body["message_id"])
                return {"status": "visible"}

            return {"error": f"Unknown command: {command}"}
        except KeyError as e:
            return {"error": f"Unknown message or missing field: {e}"}
        except Exception as e:
            logger.exception("Error processing command")
            return {"error": str(e)}

    async def start(self):
        self._server = await asyncio.start_server(
            self.handle_client, self.host, self.port
        )
        addr = self._server.sockets[0].getsockname()
        logger.info(f"TCP Frontend serving on {addr}")

    async def serve_forever(self):
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        if self._server:
            self._server.close()
            await self._server.wait_closed()
