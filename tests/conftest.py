from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from wakerelay.core.session import ConnectionSession


class FakeTransport:
    """In-memory stand-in for a controller WebSocket."""

    def __init__(self) -> None:
        self.sent: list[Any] = []
        self.pings = 0
        self.pongs: list[bytes] = []
        self.close_calls: list[tuple[int, str]] = []
        self.aborted = False
        self.closed = False
        self.fail_send = False
        self.on_ping: Callable[[], None] | None = None

    async def send_json(self, payload: Any) -> None:
        if self.fail_send:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(payload)

    async def ping(self) -> None:
        self.pings += 1
        if self.on_ping is not None:
            self.on_ping()

    async def pong(self, data: bytes = b"") -> None:
        self.pongs.append(data)

    async def close(self, code: int, message: str = "") -> None:
        self.close_calls.append((code, message))
        self.closed = True

    def abort(self) -> None:
        self.aborted = True
        self.closed = True


@pytest.fixture
def make_session() -> Callable[..., ConnectionSession]:
    """Factory for sessions backed by a FakeTransport."""

    def _make(device_id: str | None = "dev1", authenticated: bool = True) -> ConnectionSession:
        session = ConnectionSession(transport=FakeTransport(), remote="127.0.0.1")
        if authenticated:
            session.authenticate(device_id)
        return session

    return _make


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll *predicate* on the event loop until true or fail after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def eventually() -> Callable[..., Any]:
    return wait_for
