import asyncio
import random
from leasebus.backends.remote import backend_from_url
from leasebus.client.subscriber import AtLeastOnceSubscriber
from leasebus.config import LeaseSettings
from leasebus.core.context import Context
from leasebus.core.errors import LeaseBusError
from leasebus.core.protocol import decode_payload


async def report_errors(subscription):
    async for error in subscription.errors:
        print(f"Error: {error}")


async def main():
    # Connect to local TCP broker on port 9000
    backend = backend_from_url("localhost:9000", topic="demo-topic")
    subscriber = AtLeastOnceSubscriber(
        backend, LeaseSettings(ack_window=10.0, max_retries=3)
    )

    ctx = Context()
    subscription = subscriber.start(ctx)
    errors = asyncio.create_task(report_errors(subscription))
    print("Subscriber started. Waiting for messages...")

    try:
        async for handle in subscription:
            print(
                f"Received {handle.message_id} (delivery {handle.delivery_count}): "
                f"{decode_payload(handle.message)}"
            )

            # Simulate processing work, asking for more time when it runs long
            work = random.uniform(0.5, 12.0)
            if work > 8.0:
                await handle.extend_ack_deadline(work + 2.0)
            await asyncio.sleep(work)

            try:
                await handle.ack()
                print(f"Acked {handle.message_id}")
            except LeaseBusError as e:
                print(f"Could not ack {handle.message_id}: {e}")
    finally:
        ctx.cancel()
        await subscription.wait_closed()
        await errors
        await backend.close()


if __name__ == "__main__":
    asyncio.run(main())
