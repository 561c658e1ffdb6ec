from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Union

import pytest


_CLOSED = object()


class FakeConnection:
    """In-memory stand-in for a websocket client connection."""

    def __init__(self) -> None:
        self.sent: List[Union[str, bytes]] = []
        self.closed = False
        self._inbox: "asyncio.Queue[object]" = asyncio.Queue()

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> Union[str, bytes]:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item  # type: ignore[return-value]

    def feed(self, message: Union[str, bytes]) -> None:
        self._inbox.put_nowait(message)

    def drop(self, error: Optional[Exception] = None) -> None:
        """Simulate the remote side going away."""
        self._inbox.put_nowait(error if error is not None else _CLOSED)

    async def send(self, message: Union[str, bytes]) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)


class FakeConnector:
    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.urls: List[str] = []
        self.connections: List[FakeConnection] = []

    async def __call__(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def connector_factory():
    return FakeConnector
