import asyncio
from leasebus.client.publisher import Publisher


async def main():
    # Connect to local TCP broker on port 9000
    publisher = Publisher("localhost:9000", topic="demo-topic")

    print("Publishing messages via Binary TCP...")
    for i in range(10):
        msg_id = await publisher.publish({"text": f"Hello world {i}", "value": i})
        print(f"Published message {i} with ID: {msg_id}")

    await publisher.close()


if __name__ == "__main__":
    asyncio.run(main())
