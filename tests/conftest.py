"""Shared fakes for the air zone client tests."""

import asyncio
from typing import Any, Callable, List

import pytest

from airzone_client.message import LIVENESS_ACK, LIVENESS_PROBE

_CLOSE = object()


class ManualTimer:
    def __init__(self, when: float, callback: Callable, args: tuple):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualLoop:
    """Just enough of an event loop for call_later with a hand-driven clock."""

    def __init__(self):
        self.now = 0.0
        self._timers: List[ManualTimer] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable, *args: Any) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback, args)
        self._timers.append(timer)
        return timer

    def advance_to(self, when: float) -> None:
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= when]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback(*timer.args)
        self.now = when


class FakeConnection:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, auto_ack: bool = True):
        self.auto_ack = auto_ack
        self.sent: List[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message) -> None:
        self.sent.append(message)
        if self.auto_ack and message == LIVENESS_PROBE:
            self.feed(LIVENESS_ACK)

    def feed(self, message) -> None:
        self._incoming.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server going away."""
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is _CLOSE:
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Replacement for websockets.connect handing out FakeConnections."""

    def __init__(self, auto_ack: bool = True):
        self.auto_ack = auto_ack
        self.fail_next = 0
        self.calls: List[tuple] = []
        self.connections: List[FakeConnection] = []

    async def __call__(self, url: str, **kwargs) -> FakeConnection:
        self.calls.append((url, kwargs))
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionRefusedError("connection refused")
        conn = FakeConnection(auto_ack=self.auto_ack)
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


async def settle(rounds: int = 20) -> None:
    """Let queued tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def manual_loop():
    return ManualLoop()


@pytest.fixture
def connector():
    return FakeConnector()
