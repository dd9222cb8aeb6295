import msgpack
import struct
import asyncio
from enum import IntEnum
from typing import Any, Tuple
from pydantic import BaseModel
from .errors import SerializationError


class Command(IntEnum):
    PUBLISH = 1
    RECEIVE = 2
    DELETE = 3
    EXTEND = 4
    NACK = 5


MAX_MESSAGE_SIZE = 10 * 1024 * 1024  # 10MB limit
PROTOCOL_VERSION = 1


def pack_message(command: int, body: Any) -> bytes:
    """Pack a message into [length(4)][version(1)][command(1)][msgpack_body]."""
    try:
        packed_body = msgpack.packb(body)
    except (TypeError, ValueError, OverflowError) as e:
        raise SerializationError(f"Cannot pack body for command {command}: {e}")
    if not isinstance(packed_body, bytes):
        raise TypeError("msgpack.packb did not return bytes")

    # header: version(1) + command(1)
    header = struct.pack("!BB", PROTOCOL_VERSION, command)
    full_body = header + packed_body
    length = len(full_body)
    if length > MAX_MESSAGE_SIZE:
        raise SerializationError(
            f"Message size {length} exceeds limit {MAX_MESSAGE_SIZE}"
        )
    return struct.pack("!I", length) + full_body


async def read_message(reader: asyncio.StreamReader) -> Tuple[int, int, Any]:
    """Read a message from an asyncio reader."""
    length_bytes = await reader.readexactly(4)
    length = struct.unpack("!I", length_bytes)[0]

    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message size {length} exceeds limit {MAX_MESSAGE_SIZE}")

    data = await reader.readexactly(length)
    version, command = struct.unpack("!BB", data[:2])
    try:
        body = msgpack.unpackb(data[2:])
    except ValueError as e:
        raise SerializationError(f"Malformed body for command {command}: {e}")
    return version, command, body


def encode_payload(message: Any) -> bytes:
    """Turns a publishable message into the bytes handed to the broker.

    bytes pass through, str is UTF-8 encoded, pydantic models and plain
    containers are msgpack encoded.
    """
    if isinstance(message, (bytes, bytearray, memoryview)):
        return bytes(message)
    if isinstance(message, str):
        return message.encode("utf-8")
    if isinstance(message, BaseModel):
        message = message.model_dump(mode="json")
    try:
        return msgpack.packb(message)
    except (TypeError, ValueError, OverflowError) as e:
        raise SerializationError(
            f"Cannot encode message of type {type(message).__name__}: {e}"
        )


def decode_payload(data: bytes) -> Any:
    """Inverse of encode_payload for msgpack-encoded messages."""
    try:
        return msgpack.unpackb(data)
    except ValueError as e:
        raise SerializationError(f"Payload is not valid msgpack: {e}")
