import asyncio
import itertools
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional
from pydantic import BaseModel


class StoredMessage(BaseModel):
    id: str
    topic: str
    payload: bytes
    visible_at: float = 0.0
    receive_count: int = 0
    in_flight: bool = False


class InMemoryBroker:
    """Topic queues with visibility timeouts.

    A received message stays invisible until its visibility timeout passes,
    it is made visible again, or it is deleted.
    """

    def __init__(
        self,
        visibility_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        # topic -> message_id -> StoredMessage, in publish order
        self._topics: Dict[str, "OrderedDict[str, StoredMessage]"] = {}
        # message_id -> topic
        self._index: Dict[str, str] = {}
        # topic -> Lock
        self._locks: Dict[str, asyncio.Lock] = {}
        # topic -> set when messages may have become visible
        self._signals: Dict[str, asyncio.Event] = {}
        self._global_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    def _get_lock(self, topic: str) -> asyncio.Lock:
        if topic not in self._locks:
            self._locks[topic] = asyncio.Lock()
        return self._locks[topic]

    def _get_signal(self, topic: str) -> asyncio.Event:
        if topic not in self._signals:
            self._signals[topic] = asyncio.Event()
        return self._signals[topic]

    async def _lock_for_message(self, message_id: str) -> asyncio.Lock:
        async with self._global_lock:
            topic = self._index.get(message_id)
            if topic is None:
                raise KeyError(message_id)
            return self._get_lock(topic)

    async def publish(self, topic: str, payload: bytes) -> str:
        async with self._global_lock:
            lock = self._get_lock(topic)
            message_id = f"m{next(self._ids)}"

        async with lock:
            queue = self._topics.setdefault(topic, OrderedDict())
            queue[message_id] = StoredMessage(
                id=message_id, topic=topic, payload=payload
            )
            self._index[message_id] = topic
            self._get_signal(topic).set()
            return message_id

    async def receive_batch(
        self, topic: str, limit: int, visibility_timeout: Optional[float] = None
    ) -> List[StoredMessage]:
        """Leases up to `limit` visible messages, oldest first."""
        timeout = visibility_timeout
        if timeout is None:
            timeout = self.visibility_timeout
        async with self._global_lock:
            lock = self._get_lock(topic)

        async with lock:
            now = self._clock()
            batch = []
            for message in self._topics.get(topic, {}).values():
                if len(batch) >= limit:
                    break
                if message.visible_at > now:
                    continue
                message.visible_at = now + timeout
                message.receive_count += 1
                message.in_flight = True
                batch.append(message.model_copy())
            return batch

    async def wait_for_messages(self, topic: str, timeout: float):
        """Waits until a publish or redelivery signals `topic`, or `timeout` passes."""
        signal = self._get_signal(topic)
        try:
            await asyncio.wait_for(signal.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        signal.clear()

    async def delete(self, message_id: str):
        lock = await self._lock_for_message(message_id)
        async with lock:
            topic = self._index.pop(message_id)
            del self._topics[topic][message_id]

    async def extend_visibility(self, message_id: str, duration: float):
        lock = await self._lock_for_message(message_id)
        async with lock:
            message = self._topics[self._index[message_id]][message_id]
            message.visible_at = self._clock() + duration

    async def make_visible_again(self, message_id: str):
        lock = await self._lock_for_message(message_id)
        async with lock:
            topic = self._index[message_id]
            message = self._topics[topic][message_id]
            message.visible_at = self._clock()
            message.in_flight = False
            self._get_signal(topic).set()

    async def get(self, message_id: str) -> Optional[StoredMessage]:
        async with self._global_lock:
            topic = self._index.get(message_id)
        if topic is None:
            return None
        async with self._get_lock(topic):
            message = self._topics.get(topic, {}).get(message_id)
            return message.model_copy() if message else None

    async def reap_expired(self) -> int:
        """Returns timed-out in-flight messages to their queues and wakes receivers."""
        async with self._global_lock:
            topics = list(self._topics)
        reaped = 0
        for topic in topics:
            async with self._get_lock(topic):
                now = self._clock()
                expired = [
                    message
                    for message in self._topics[topic].values()
                    if message.in_flight and message.visible_at <= now
                ]
                for message in expired:
                    message.in_flight = False
                if expired:
                    reaped += len(expired)
                    self._get_signal(topic).set()
        return reaped
