"""
At-least-once subscriptions end to end against the in-memory broker and a
scripted backend.
"""

import asyncio

import pytest

from leasebus.backends.in_memory import InMemoryBackend
from leasebus.client.publisher import Publisher
from leasebus.client.subscriber import AtLeastOnceSubscriber
from leasebus.config import LeaseSettings
from leasebus.core.context import Context
from leasebus.core.errors import (
    ChannelClosed,
    LeaseNotFound,
    PoisonMessage,
    SerializationError,
    TransportError,
)
from leasebus.server.storage.in_memory import InMemoryBroker

TIMEOUT = 3.0


async def next_item(channel, timeout: float = TIMEOUT):
    return await asyncio.wait_for(channel.receive(), timeout)


async def assert_closed(channel):
    with pytest.raises(ChannelClosed):
        await next_item(channel)


def in_memory(topic: str = "orders"):
    broker = InMemoryBroker(visibility_timeout=30.0)
    backend = InMemoryBackend(broker, topic, poll_interval=0.05)
    return broker, backend


@pytest.mark.asyncio
async def test_unacked_message_is_redelivered_with_same_payload(fast_settings):
    broker, backend = in_memory()
    await Publisher(backend, "orders").publish("hello")
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)

    async with subscriber.start(Context()) as subscription:
        first = await next_item(subscription.messages)
        assert first.message_id == "m1"
        assert first.message == b"hello"
        assert first.delivery_count == 1

        # No ack: the monitor expires the lease and the broker redelivers
        second = await next_item(subscription.messages)
        assert second.message_id == "m1"
        assert second.delivery_count == 2
        assert second.message == b"hello"

        await second.ack()
        assert await broker.get("m1") is None
        with pytest.raises(LeaseNotFound):
            await first.ack()


@pytest.mark.asyncio
async def test_acked_message_is_not_redelivered(fast_settings):
    broker, backend = in_memory()
    await broker.publish("orders", b"once")
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)

    async with subscriber.start() as subscription:
        handle = await next_item(subscription.messages)
        await subscriber.ack_message(handle.message_id)

        with pytest.raises(asyncio.TimeoutError):
            await next_item(subscription.messages, timeout=0.5)


@pytest.mark.asyncio
async def test_extended_message_is_not_redelivered_early(fast_settings):
    broker, backend = in_memory()
    await broker.publish("orders", b"slow")
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)

    async with subscriber.start() as subscription:
        handle = await next_item(subscription.messages)
        await handle.extend_ack_deadline(2.0)

        with pytest.raises(asyncio.TimeoutError):
            await next_item(subscription.messages, timeout=0.5)
        await handle.ack()


@pytest.mark.asyncio
async def test_poison_message_reported_once_and_never_redelivered():
    settings = LeaseSettings(
        ack_window=0.1, max_retries=2, monitor_interval=0.02, sweep_jitter=0.0
    )
    broker, backend = in_memory()
    await broker.publish("orders", b"bad")
    subscriber = AtLeastOnceSubscriber(backend, settings)

    async with subscriber.start() as subscription:
        counts = [
            (await next_item(subscription.messages)).delivery_count for _ in range(2)
        ]
        assert counts == [1, 2]

        poison = await next_item(subscription.errors)
        assert isinstance(poison, PoisonMessage)
        assert poison.message_id == "m1"

        # Even if the broker offers it again the engine ignores it
        await broker.make_visible_again("m1")
        with pytest.raises(asyncio.TimeoutError):
            await next_item(subscription.messages, timeout=0.3)
        assert subscription.errors.qsize() == 0


@pytest.mark.asyncio
async def test_full_delivery_channel_suspends_pump(fast_settings):
    settings = fast_settings.model_copy(
        update={"delivery_buffer": 1, "ack_window": 5.0}
    )
    broker, backend = in_memory()
    for i in range(5):
        await broker.publish("orders", f"msg-{i}".encode())
    subscriber = AtLeastOnceSubscriber(backend, settings)

    async with subscriber.start() as subscription:
        await asyncio.sleep(0.2)
        # One handle buffered, one held by the suspended pump
        assert subscription.messages.qsize() == 1
        assert len(subscriber.table) == 2

        received = []
        for _ in range(5):
            handle = await next_item(subscription.messages)
            received.append(handle.message)
            await handle.ack()
        assert received == [f"msg-{i}".encode() for i in range(5)]


@pytest.mark.asyncio
async def test_cancel_closes_channels_and_stops_backend_calls(backend, fast_settings):
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)
    ctx = Context()
    subscription = subscriber.start(ctx)
    backend.feed("m1")
    handle = await next_item(subscription.messages)

    ctx.cancel()
    await asyncio.wait_for(subscription.wait_closed(), fast_settings.shutdown_grace)

    assert subscription.closed
    await assert_closed(subscription.messages)
    await assert_closed(subscription.errors)

    calls = list(backend.calls)
    with pytest.raises(LeaseNotFound):
        await handle.ack()
    with pytest.raises(LeaseNotFound):
        await subscriber.extend_ack_deadline("m1", 10.0)
    await asyncio.sleep(0.1)
    assert backend.calls == calls
    assert backend.called("delete") == []


@pytest.mark.asyncio
async def test_cancel_abandons_blocked_send(backend, fast_settings):
    settings = fast_settings.model_copy(update={"delivery_buffer": 1})
    subscriber = AtLeastOnceSubscriber(backend, settings)
    ctx = Context()
    subscription = subscriber.start(ctx)
    for i in range(3):
        backend.feed(f"m{i}")
    await asyncio.sleep(0.1)

    ctx.cancel()
    await asyncio.wait_for(subscription.wait_closed(), settings.shutdown_grace)

    assert subscription.closed
    # The buffered handle is still readable after close
    assert (await next_item(subscription.messages)).message_id == "m0"
    await assert_closed(subscription.messages)


@pytest.mark.asyncio
async def test_fatal_transport_error_ends_subscription(backend, fast_settings):
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)
    ctx = Context()
    subscription = subscriber.start(ctx)
    error = TransportError("connection lost", fatal=True)
    backend.feed_error(error)

    assert await next_item(subscription.errors) is error
    await asyncio.wait_for(subscription.wait_closed(), TIMEOUT)
    await assert_closed(subscription.errors)
    await assert_closed(subscription.messages)
    assert not ctx.cancelled()


@pytest.mark.asyncio
async def test_per_message_errors_do_not_stop_the_pump(backend, fast_settings):
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)

    async with subscriber.start() as subscription:
        backend.feed_error(TransportError("blip"))
        backend.feed_error(SerializationError("bad payload", message_id="m0"))
        backend.feed("m1", b"fine")

        assert isinstance(await next_item(subscription.errors), TransportError)
        assert isinstance(await next_item(subscription.errors), SerializationError)
        handle = await next_item(subscription.messages)
        assert handle.message == b"fine"


@pytest.mark.asyncio
async def test_duplicate_backend_delivery_is_ignored(backend, fast_settings):
    settings = fast_settings.model_copy(update={"ack_window": 5.0})
    subscriber = AtLeastOnceSubscriber(backend, settings)

    async with subscriber.start() as subscription:
        backend.feed("m1")
        backend.feed("m1")
        backend.feed("m2")

        assert (await next_item(subscription.messages)).message_id == "m1"
        assert (await next_item(subscription.messages)).message_id == "m2"


@pytest.mark.asyncio
async def test_stream_end_closes_channels(backend, fast_settings):
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)
    subscription = subscriber.start()
    backend.feed("m1")
    backend.end_stream()

    messages = [handle.message_id async for handle in subscription]

    assert messages == ["m1"]
    await asyncio.wait_for(subscription.wait_closed(), TIMEOUT)
    await assert_closed(subscription.errors)


@pytest.mark.asyncio
async def test_start_twice_is_rejected(backend, fast_settings):
    subscriber = AtLeastOnceSubscriber(backend, fast_settings)
    async with subscriber.start():
        with pytest.raises(RuntimeError):
            subscriber.start()
