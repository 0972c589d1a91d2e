"""Connectivity events and the status broadcaster.

The tunnel registry publishes a boolean "controller attached" value whenever
it changes. Observers (SSE streams, tests) each get their own queue, seeded
with the latest known value so they never start in an unknown state.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator

logger = logging.getLogger(__name__)

DEFAULT_OBSERVER_QUEUE_SIZE = 64


@dataclass(frozen=True)
class ConnectivityEvent:
    """Controller attached/authenticated state changed."""
    connected: bool
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"connected": self.connected}


class StatusObserver:
    """Handle returned by :meth:`StatusBroadcaster.observe`."""

    def __init__(self, broadcaster: StatusBroadcaster, maxsize: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[ConnectivityEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: ConnectivityEvent) -> None:
        # The newest value must always land; evict the oldest when full.
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Observer queue full, dropping oldest status event")
            self._queue.get_nowait()
            self._queue.put_nowait(event)

    def get_nowait(self) -> ConnectivityEvent:
        return self._queue.get_nowait()

    async def get(self) -> ConnectivityEvent:
        return await self._queue.get()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        """Unregister from the broadcaster. Safe to call repeatedly."""
        self._broadcaster.unobserve(self)

    def __aiter__(self) -> StatusObserver:
        return self

    async def __anext__(self) -> ConnectivityEvent:
        # Ends iteration once closed, even while blocked waiting for an event.
        if self.closed:
            raise StopAsyncIteration
        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            getter.cancel()
            closer.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        raise StopAsyncIteration


class StatusBroadcaster:
    """Fan-out of connectivity state to any number of passive observers."""

    def __init__(
        self,
        connected: bool = False,
        queue_size: int = DEFAULT_OBSERVER_QUEUE_SIZE,
    ) -> None:
        self._connected = connected
        self._queue_size = queue_size
        self._observers: list[StatusObserver] = []

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def publish(self, connected: bool) -> None:
        """Record *connected* as the latest value and deliver it to every observer."""
        self._connected = connected
        event = ConnectivityEvent(connected=connected)
        logger.debug("Publishing connected=%s to %d observer(s)", connected, len(self._observers))
        for observer in list(self._observers):
            observer._offer(event)

    def observe(self) -> StatusObserver:
        """Register an observer. The current value is queued immediately."""
        observer = StatusObserver(self, self._queue_size)
        observer._offer(ConnectivityEvent(connected=self._connected))
        self._observers.append(observer)
        return observer

    def unobserve(self, observer: StatusObserver) -> None:
        """Remove an observer. Unknown or already-removed observers are ignored."""
        observer._closed.set()
        if observer in self._observers:
            self._observers.remove(observer)

    async def iter_events(self) -> AsyncIterator[ConnectivityEvent]:
        """Async iterator over status events, starting with the current value."""
        observer = self.observe()
        try:
            async for event in observer:
                yield event
        finally:
            self.unobserve(observer)
