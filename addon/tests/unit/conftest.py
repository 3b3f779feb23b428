#!/usr/bin/env python3
"""Shared fakes for the downlighter bridge tests."""

import asyncio
from typing import Any, Callable, List, Optional

import pytest

import state


class ManualHandle:
    """Handle returned by ManualScheduler.call_later."""

    def __init__(self, when: float, callback: Callable[[], Any]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """call_later replacement driven by advance() instead of wall time."""

    def __init__(self):
        self.now = 0.0
        self.handles: List[ManualHandle] = []

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ManualHandle:
        handle = ManualHandle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    def pending(self) -> List[ManualHandle]:
        self.handles = [h for h in self.handles if not h.cancelled]
        return list(self.handles)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due callbacks in order."""
        target = self.now + seconds
        while True:
            due = [h for h in self.pending() if h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.handles.remove(handle)
            self.now = handle.when
            handle.callback()
        self.now = target


_CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.sent: List[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, frame: str) -> None:
        if self.closed:
            raise ConnectionError("websocket is closed")
        self.sent.append(frame)

    def feed(self, frame: Any) -> None:
        """Deliver an inbound frame."""
        self._incoming.put_nowait(frame)

    def drop(self, error: Optional[Exception] = None) -> None:
        """Simulate the device closing the connection (or failing with error)."""
        self._incoming.put_nowait(error if error is not None else _CLOSE)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Connector returning FakeWebSockets, or failing while ``fail`` is set."""

    def __init__(self):
        self.urls: List[str] = []
        self.sockets: List[FakeWebSocket] = []
        self.fail = False

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.fail:
            raise ConnectionRefusedError(f"connection refused: {url}")
        websocket = FakeWebSocket()
        self.sockets.append(websocket)
        return websocket


async def settle(rounds: int = 10) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def state_file(tmp_path):
    """Initialize the state module against a temp file."""
    path = tmp_path / "downlighter_state.json"
    state.init(str(path))
    return path
