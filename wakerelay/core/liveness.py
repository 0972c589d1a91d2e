"""Liveness supervision for an attached controller connection.

Each authenticated session gets an explicit two-state machine:

    IDLE --tick/ping--> PROBE_SENT --pong--> IDLE
                             |
                             +--grace expired / next tick--> DEAD

A single unanswered probe is fatal: the connection is dropped at most
``interval + grace`` seconds after the last pong.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable

from wakerelay.core.session import CloseReason

if TYPE_CHECKING:
    from wakerelay.core.session import ConnectionSession

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 10.0
DEFAULT_PROBE_GRACE = 5.0

# Called once when the session is declared dead.
DeadSessionFn = Callable[["ConnectionSession"], None]


class LivenessState(Enum):
    IDLE = "idle"
    PROBE_SENT = "probe_sent"
    DEAD = "dead"


class LivenessSupervisor:
    """Periodically pings one session and decides when it is dead."""

    def __init__(
        self,
        session: ConnectionSession,
        on_dead: DeadSessionFn,
        interval: float = DEFAULT_PROBE_INTERVAL,
        grace: float = DEFAULT_PROBE_GRACE,
    ) -> None:
        self._session = session
        self._on_dead = on_dead
        self._interval = interval
        self._grace = grace
        self.state = LivenessState.IDLE
        self.missed_probes = 0
        self.probes_sent = 0
        self._stopped = False
        self._tick_handle: asyncio.TimerHandle | None = None
        self._grace_handle: asyncio.TimerHandle | None = None
        self._ping_task: asyncio.Task | None = None

    @property
    def probe_outstanding(self) -> bool:
        return self.state is LivenessState.PROBE_SENT

    @property
    def running(self) -> bool:
        return not self._stopped and self._tick_handle is not None

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._tick_handle = loop.call_later(self._interval, self._tick)

    def stop(self) -> None:
        """Cancel every pending timer. Idempotent."""
        self._stopped = True
        for handle in (self._tick_handle, self._grace_handle):
            if handle is not None:
                handle.cancel()
        self._tick_handle = None
        self._grace_handle = None
        if self._ping_task is not None and not self._ping_task.done():
            self._ping_task.cancel()
        self._ping_task = None

    def on_pong(self) -> None:
        if self._stopped:
            return
        if self.state is LivenessState.PROBE_SENT:
            self.state = LivenessState.IDLE
            self.missed_probes = 0
            if self._grace_handle is not None:
                self._grace_handle.cancel()
                self._grace_handle = None

    # ------------------------------------------------------------------

    def _armed(self) -> bool:
        """True while callbacks may still act on the session."""
        return not self._stopped and not self._session.closed

    def _tick(self) -> None:
        if not self._armed():
            return
        loop = asyncio.get_running_loop()

        if self.state is LivenessState.PROBE_SENT:
            logger.warning(
                "Controller %s still has an unanswered probe at next tick",
                self._session.session_id,
            )
            self.missed_probes += 1
            self._declare_dead()
            return

        self.state = LivenessState.PROBE_SENT
        self.probes_sent += 1
        self._ping_task = asyncio.ensure_future(self._send_probe())
        self._grace_handle = loop.call_later(self._grace, self._on_grace_expired)
        self._tick_handle = loop.call_later(self._interval, self._tick)

    async def _send_probe(self) -> None:
        try:
            await self._session.transport.ping()
        except Exception as e:
            # The grace timer decides; a failed write just means no pong.
            logger.debug("Ping to %s failed: %r", self._session.session_id, e)

    def _on_grace_expired(self) -> None:
        self._grace_handle = None
        if not self._armed() or self.state is not LivenessState.PROBE_SENT:
            return
        self.missed_probes += 1
        logger.warning(
            "Controller %s not responding to ping, terminating connection",
            self._session.session_id,
        )
        self._declare_dead()

    def _declare_dead(self) -> None:
        self.state = LivenessState.DEAD
        self.stop()
        self._session.terminate(CloseReason.PROBE_TIMEOUT)
        try:
            self._on_dead(self._session)
        except Exception:
            logger.exception("Dead-session callback failed for %s", self._session.session_id)
