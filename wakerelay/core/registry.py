"""Tunnel registry: the single process-wide slot for the active controller.

All mutations are synchronous and happen on the event loop thread, so a
replace or clear is atomic with respect to every other coroutine. Readers
get a snapshot via :meth:`TunnelRegistry.current`.
"""
from __future__ import annotations

import logging
from typing import Callable

from wakerelay.core.events import StatusBroadcaster, StatusObserver
from wakerelay.core.liveness import (
    DEFAULT_PROBE_GRACE,
    DEFAULT_PROBE_INTERVAL,
    LivenessSupervisor,
)
from wakerelay.core.session import CloseReason, ConnectionSession

logger = logging.getLogger(__name__)

# Callback type for detach/eviction (the command relay registers one)
DetachCallbackFn = Callable[[ConnectionSession], None]


class TunnelRegistry:
    """Holds at most one authenticated controller session."""

    def __init__(
        self,
        broadcaster: StatusBroadcaster | None = None,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        probe_grace: float = DEFAULT_PROBE_GRACE,
    ) -> None:
        self._broadcaster = broadcaster or StatusBroadcaster()
        self._current: ConnectionSession | None = None
        self._probe_interval = probe_interval
        self._probe_grace = probe_grace
        self._detach_callbacks: list[DetachCallbackFn] = []

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self._broadcaster

    @property
    def connected(self) -> bool:
        return self._current is not None

    def current(self) -> ConnectionSession | None:
        return self._current

    def subscribe(self) -> StatusObserver:
        """Observer of connectivity transitions, seeded with the current value."""
        return self._broadcaster.observe()

    def add_detach_callback(self, callback: DetachCallbackFn) -> None:
        """Register a callback run whenever a session leaves the slot."""
        self._detach_callbacks.append(callback)

    def _run_detach_callbacks(self, session: ConnectionSession) -> None:
        for cb in self._detach_callbacks:
            try:
                cb(session)
            except Exception:
                logger.exception("Detach callback failed for %s", session.session_id)

    def attach(self, session: ConnectionSession) -> None:
        """Install *session* as the current controller, evicting any previous one."""
        if not session.is_authenticated:
            raise ValueError("Only authenticated sessions can be attached")
        if session is self._current:
            return

        previous, self._current = self._current, session

        if previous is not None:
            logger.warning(
                "Replacing controller %s (%s) with %s (%s)",
                previous.session_id, previous.device_id,
                session.session_id, session.device_id,
            )
            previous.close(CloseReason.EVICTED)
            self._run_detach_callbacks(previous)

        supervisor = LivenessSupervisor(
            session,
            on_dead=self._on_session_dead,
            interval=self._probe_interval,
            grace=self._probe_grace,
        )
        session.set_supervisor(supervisor)
        supervisor.start()

        logger.info("Controller %s attached (device %s)", session.session_id, session.device_id)
        if previous is None:
            self._broadcaster.publish(True)

    def detach(self, session: ConnectionSession) -> bool:
        """Clear the slot if *session* still holds it.

        A stale close from an already-evicted session is a no-op, so it can
        never clear a newer controller.
        """
        if self._current is not session:
            return False
        self._current = None
        session.cancel_timers()
        logger.info("Controller %s detached", session.session_id)
        self._run_detach_callbacks(session)
        self._broadcaster.publish(False)
        return True

    def close_all(self) -> None:
        """Close and detach the current controller (process shutdown)."""
        session = self._current
        if session is None:
            return
        session.close(CloseReason.SHUTDOWN)
        self.detach(session)

    def _on_session_dead(self, session: ConnectionSession) -> None:
        self.detach(session)
