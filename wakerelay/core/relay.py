"""Command relay: forwards operator wake requests to the attached controller.

Single-flight: at most one command is outstanding. Each command carries a
correlation id; a controller that echoes it has its reply matched by id,
while a controller that does not is matched to the one outstanding command.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from wakerelay.core.errors import (
    CommandInFlightError,
    CommandTimeoutError,
    ControllerDisconnectedError,
    InvalidControllerResponseError,
    NoControllerError,
)
from wakerelay.core.registry import TunnelRegistry
from wakerelay.core.session import ConnectionSession

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 5.0


@dataclass
class PendingCommand:
    mac: str
    correlation_id: str
    session: ConnectionSession
    deadline: float  # loop time
    future: asyncio.Future = field(repr=False)
    created_at: float = field(default_factory=time.time)

    @property
    def resolved(self) -> bool:
        return self.future.done()


class CommandRelay:
    """Issues wake commands against whatever controller is currently registered."""

    def __init__(
        self,
        registry: TunnelRegistry,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._timeout = timeout
        self._pending: PendingCommand | None = None
        registry.add_detach_callback(self._on_controller_detached)

    @property
    def pending(self) -> PendingCommand | None:
        return self._pending

    async def issue_wake(self, mac: str) -> Any:
        """Send a wake command for *mac* and return the controller's reply.

        Raises a :class:`~wakerelay.core.errors.RelayError` subclass on failure.
        """
        session = self._registry.current()
        if session is None:
            raise NoControllerError()
        if self._pending is not None:
            raise CommandInFlightError()

        loop = asyncio.get_running_loop()
        pending = PendingCommand(
            mac=mac,
            correlation_id=uuid.uuid4().hex[:16],
            session=session,
            deadline=loop.time() + self._timeout,
            future=loop.create_future(),
        )
        self._pending = pending
        logger.info(
            "Wake %s -> controller %s (id=%s)",
            mac, session.session_id, pending.correlation_id,
        )

        try:
            try:
                await session.transport.send_json(
                    {"id": pending.correlation_id, "mac": mac}
                )
            except (ConnectionResetError, RuntimeError) as e:
                raise ControllerDisconnectedError(f"send failed: {e}") from e

            remaining = max(0.0, pending.deadline - loop.time())
            try:
                return await asyncio.wait_for(pending.future, timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning(
                    "Controller %s did not reply to %s within %.1fs",
                    session.session_id, pending.correlation_id, self._timeout,
                )
                raise CommandTimeoutError() from None
        finally:
            if self._pending is pending:
                self._pending = None
            if not pending.future.done():
                pending.future.cancel()
            elif not pending.future.cancelled():
                pending.future.exception()  # mark retrieved

    def handle_message(self, session: ConnectionSession, raw: str) -> None:
        """Route one inbound text frame from an authenticated controller."""
        if session is not self._registry.current():
            logger.debug("Dropping message from non-current session %s", session.session_id)
            return

        pending = self._pending
        if pending is None or pending.resolved or pending.session is not session:
            logger.warning("Unsolicited controller message ignored: %.200s", raw)
            return

        try:
            reply = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Invalid controller response: %.200s", raw)
            pending.future.set_exception(InvalidControllerResponseError())
            return

        reply_id = reply.get("id") if isinstance(reply, dict) else None
        if reply_id is not None and reply_id != pending.correlation_id:
            logger.warning(
                "Reply for %s does not match pending %s, ignoring",
                reply_id, pending.correlation_id,
            )
            return

        logger.info("Controller replied to %s: %.200s", pending.correlation_id, raw)
        pending.future.set_result(reply)

    def _on_controller_detached(self, session: ConnectionSession) -> None:
        pending = self._pending
        if pending is None or pending.resolved or pending.session is not session:
            return
        pending.future.set_exception(ControllerDisconnectedError())
