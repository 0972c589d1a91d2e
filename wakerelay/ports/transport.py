"""Tunnel transport port: the minimal socket surface the core depends on.

The aiohttp WebSocket adapter implements this protocol; tests use an
in-memory fake. Core logic never touches aiohttp directly.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class TunnelTransport(Protocol):
    """One physical controller connection."""

    @property
    def closed(self) -> bool: ...

    async def send_json(self, payload: Any) -> None:
        """Serialize *payload* and send it as a single text frame."""
        ...

    async def ping(self) -> None:
        """Send a transport-level ping control frame."""
        ...

    async def pong(self, data: bytes = b"") -> None:
        """Answer a ping from the peer."""
        ...

    async def close(self, code: int, message: str = "") -> None:
        """Graceful close handshake."""
        ...

    def abort(self) -> None:
        """Drop the underlying connection immediately, no close handshake."""
        ...
