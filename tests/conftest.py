"""
Pytest fixtures for leasebus tests.
"""

import asyncio
import itertools
from typing import Dict, List, Tuple

import pytest

from leasebus.config import LeaseSettings
from leasebus.core.context import Context
from leasebus.core.errors import ContextCancelled
from leasebus.core.interfaces import IBrokerBackend
from leasebus.core.models import RawMessage


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedBackend(IBrokerBackend):
    """Backend whose receive stream and call outcomes are driven by the test.

    Items fed to the stream are RawMessages, exceptions (raised from receive)
    or None (ends the stream). Every other call is recorded in `calls`; a gate
    holds a call until the test sets it, a failure is raised once.
    """

    def __init__(self):
        self.stream: asyncio.Queue = asyncio.Queue()
        self.calls: List[Tuple] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def feed(self, message_id: str, payload: bytes = b"payload"):
        self.stream.put_nowait(RawMessage(message_id=message_id, payload=payload))

    def feed_error(self, error: Exception):
        self.stream.put_nowait(error)

    def end_stream(self):
        self.stream.put_nowait(None)

    def gate(self, name: str) -> asyncio.Event:
        self.gates[name] = asyncio.Event()
        return self.gates[name]

    def called(self, name: str) -> List[Tuple]:
        return [call for call in self.calls if call[0] == name]

    async def _call(self, name: str, *args):
        self.calls.append((name,) + args)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.failures.pop(name, None)
        if error is not None:
            raise error

    async def publish(self, topic: str, data: bytes) -> str:
        await self._call("publish", topic, data)
        return f"p{next(self._ids)}"

    async def receive(self, ctx: Context):
        while True:
            try:
                item = await ctx.run(self.stream.get())
            except ContextCancelled:
                return
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def delete(self, message_id: str):
        await self._call("delete", message_id)

    async def extend_visibility(self, message_id: str, duration: float):
        await self._call("extend_visibility", message_id, duration)

    async def make_visible_again(self, message_id: str):
        await self._call("make_visible_again", message_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def fast_settings():
    """Short windows for tests that run against the real clock."""
    return LeaseSettings(
        ack_window=0.2,
        max_retries=3,
        monitor_interval=0.02,
        sweep_jitter=0.0,
        delivery_buffer=8,
        error_buffer=16,
        shutdown_grace=1.0,
    )
