"""
In-memory broker visibility semantics and its backend adapter.
"""

import asyncio

import pytest

from leasebus.backends.in_memory import InMemoryBackend
from leasebus.core.context import Context
from leasebus.core.errors import TransportError
from leasebus.server.storage.in_memory import InMemoryBroker


@pytest.mark.asyncio
async def test_received_message_is_invisible_until_timeout(clock):
    broker = InMemoryBroker(visibility_timeout=10.0, clock=clock)
    message_id = await broker.publish("t", b"hello")

    first = await broker.receive_batch("t", 10)
    assert [message.id for message in first] == [message_id]
    assert first[0].receive_count == 1
    assert await broker.receive_batch("t", 10) == []

    clock.advance(10.0)
    again = await broker.receive_batch("t", 10)
    assert [message.receive_count for message in again] == [2]


@pytest.mark.asyncio
async def test_ids_are_sequential_across_topics(clock):
    broker = InMemoryBroker(clock=clock)

    assert await broker.publish("a", b"1") == "m1"
    assert await broker.publish("b", b"2") == "m2"
    assert [m.id for m in await broker.receive_batch("a", 10)] == ["m1"]


@pytest.mark.asyncio
async def test_receive_respects_limit_and_order(clock):
    broker = InMemoryBroker(clock=clock)
    for i in range(5):
        await broker.publish("t", bytes([i]))

    batch = await broker.receive_batch("t", 3)

    assert [message.payload for message in batch] == [b"\x00", b"\x01", b"\x02"]


@pytest.mark.asyncio
async def test_extend_and_make_visible_again(clock):
    broker = InMemoryBroker(visibility_timeout=10.0, clock=clock)
    message_id = await broker.publish("t", b"x")
    await broker.receive_batch("t", 1)

    await broker.extend_visibility(message_id, 60.0)
    clock.advance(30.0)
    assert await broker.receive_batch("t", 1) == []

    await broker.make_visible_again(message_id)
    assert len(await broker.receive_batch("t", 1)) == 1


@pytest.mark.asyncio
async def test_unknown_message_operations_raise_key_error(clock):
    broker = InMemoryBroker(clock=clock)
    message_id = await broker.publish("t", b"x")
    await broker.delete(message_id)

    for operation in (
        broker.delete(message_id),
        broker.extend_visibility(message_id, 1.0),
        broker.make_visible_again(message_id),
    ):
        with pytest.raises(KeyError):
            await operation


@pytest.mark.asyncio
async def test_reaper_returns_timed_out_messages(clock):
    broker = InMemoryBroker(visibility_timeout=5.0, clock=clock)
    await broker.publish("t", b"x")
    await broker.receive_batch("t", 1)

    assert await broker.reap_expired() == 0
    clock.advance(5.0)
    assert await broker.reap_expired() == 1
    assert await broker.reap_expired() == 0


@pytest.mark.asyncio
async def test_backend_wakes_on_publish():
    broker = InMemoryBroker()
    backend = InMemoryBackend(broker, "t", poll_interval=5.0)
    ctx = Context()
    stream = backend.receive(ctx)

    waiter = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0.05)
    await broker.publish("t", b"wake")

    raw = await asyncio.wait_for(waiter, 1.0)
    assert raw.payload == b"wake"
    assert raw.deadline_hint == broker.visibility_timeout

    ctx.cancel()
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(stream.__anext__(), 1.0)


@pytest.mark.asyncio
async def test_backend_maps_unknown_ids_to_transport_errors():
    backend = InMemoryBackend(InMemoryBroker(), "t")

    with pytest.raises(TransportError):
        await backend.delete("m404")
    with pytest.raises(TransportError):
        await backend.make_visible_again("m404")
