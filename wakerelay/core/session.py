from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from wakerelay.core.credentials import RejectReason

if TYPE_CHECKING:
    from wakerelay.core.liveness import LivenessSupervisor
    from wakerelay.ports.transport import TunnelTransport

logger = logging.getLogger(__name__)


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


class CloseReason(Enum):
    """Why the relay ended a controller connection."""
    MALFORMED_HANDSHAKE = "MalformedHandshake"
    MALFORMED_TOKEN = "MalformedToken"
    SIGNATURE_MISMATCH = "SignatureMismatch"
    EXPIRED_TIMESTAMP = "ExpiredTimestamp"
    AUTH_TIMEOUT = "AuthTimeout"
    PROBE_TIMEOUT = "ProbeTimeout"
    EVICTED = "Evicted"
    SHUTDOWN = "Shutdown"

    @property
    def close_code(self) -> int:
        return _CLOSE_CODES[self]

    @classmethod
    def from_reject(cls, reason: RejectReason) -> CloseReason:
        return cls(reason.value)


# RFC 6455 close codes
_CLOSE_CODES = {
    CloseReason.MALFORMED_HANDSHAKE: 1008,
    CloseReason.MALFORMED_TOKEN: 1008,
    CloseReason.SIGNATURE_MISMATCH: 1008,
    CloseReason.EXPIRED_TIMESTAMP: 1008,
    CloseReason.AUTH_TIMEOUT: 1008,
    CloseReason.PROBE_TIMEOUT: 1011,
    CloseReason.EVICTED: 1001,
    CloseReason.SHUTDOWN: 1001,
}


@dataclass(eq=False)
class ConnectionSession:
    """One physical controller socket, from first contact to close."""
    transport: TunnelTransport
    remote: str = "unknown"
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: AuthState = AuthState.UNAUTHENTICATED
    device_id: str | None = None
    created_at: float = field(default_factory=time.time)
    authenticated_at: float | None = None
    last_pong_at: float | None = None
    close_reason: CloseReason | None = None
    _supervisor: LivenessSupervisor | None = field(default=None, repr=False)
    _close_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    @property
    def closed(self) -> bool:
        return self.close_reason is not None or self.transport.closed

    @property
    def probe_outstanding(self) -> bool:
        return self._supervisor is not None and self._supervisor.probe_outstanding

    @property
    def supervisor(self) -> LivenessSupervisor | None:
        return self._supervisor

    def authenticate(self, device_id: str) -> None:
        self.state = AuthState.AUTHENTICATED
        self.device_id = device_id
        self.authenticated_at = time.time()

    def set_supervisor(self, supervisor: LivenessSupervisor) -> None:
        if self._supervisor is not None:
            self._supervisor.stop()
        self._supervisor = supervisor

    def on_pong(self) -> None:
        self.last_pong_at = time.time()
        if self._supervisor is not None:
            self._supervisor.on_pong()

    def cancel_timers(self) -> None:
        """Stop every timer armed for this session."""
        if self._supervisor is not None:
            self._supervisor.stop()

    def close(self, reason: CloseReason) -> asyncio.Task | None:
        """Start a graceful close. Only the first reason is recorded."""
        self.cancel_timers()
        if self.close_reason is not None:
            return self._close_task
        self.close_reason = reason
        logger.info("Closing controller session %s: %s", self.session_id, reason.value)
        if self.transport.closed:
            return None
        self._close_task = asyncio.ensure_future(
            self.transport.close(reason.close_code, reason.value)
        )
        self._close_task.add_done_callback(self._on_close_done)
        return self._close_task

    def _on_close_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Close of controller session %s failed: %r", self.session_id, exc)

    def terminate(self, reason: CloseReason) -> None:
        """Abortive close: drop the socket without a close handshake."""
        self.cancel_timers()
        if self.close_reason is None:
            self.close_reason = reason
        logger.warning("Terminating controller session %s: %s", self.session_id, reason.value)
        self.transport.abort()

    def describe(self) -> dict:
        return {
            "session_id": self.session_id,
            "device_id": self.device_id,
            "remote": self.remote,
            "state": self.state.value,
            "created_at": self.created_at,
            "authenticated_at": self.authenticated_at,
            "last_pong_at": self.last_pong_at,
            "probe_outstanding": self.probe_outstanding,
        }
