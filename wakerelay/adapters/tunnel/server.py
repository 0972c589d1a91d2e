"""Controller tunnel endpoint: aiohttp WebSocket server on the tunnel port.

A new socket is unauthenticated until its first text frame carries a valid
``{"token": ..., "hmac": ...}`` handshake. Authenticated sockets are handed
to the registry; later text frames go to the command relay.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from wakerelay.core.credentials import Accepted, CredentialValidator
from wakerelay.core.registry import TunnelRegistry
from wakerelay.core.relay import CommandRelay
from wakerelay.core.session import CloseReason, ConnectionSession

logger = logging.getLogger(__name__)

DEFAULT_AUTH_TIMEOUT = 10.0
MAX_MESSAGE_SIZE = 64 * 1024


class WebSocketTransport:
    """:class:`~wakerelay.ports.transport.TunnelTransport` over an aiohttp WebSocket."""

    def __init__(self, ws: web.WebSocketResponse, request: web.Request) -> None:
        self._ws = ws
        self._request = request

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send_json(self, payload: Any) -> None:
        await self._ws.send_str(json.dumps(payload))

    async def ping(self) -> None:
        await self._ws.ping()

    async def pong(self, data: bytes = b"") -> None:
        await self._ws.pong(data)

    async def close(self, code: int, message: str = "") -> None:
        await self._ws.close(code=code, message=message.encode("utf-8"))

    def abort(self) -> None:
        transport = self._request.transport
        if transport is not None:
            transport.abort()
        elif not self._ws.closed:
            asyncio.ensure_future(self._ws.close(code=WSCloseCode.GOING_AWAY))


def _parse_handshake(data: str) -> tuple[str, str] | None:
    """Extract ``(token, hmac)`` from the first frame, or None if malformed."""
    try:
        auth = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(auth, dict):
        return None
    token = auth.get("token")
    signature = auth.get("hmac")
    if not isinstance(token, str) or not isinstance(signature, str):
        return None
    if not token or not signature:
        return None
    return token, signature


async def _handle_tunnel(request: web.Request) -> web.WebSocketResponse:
    registry: TunnelRegistry = request.app["registry"]
    relay: CommandRelay = request.app["relay"]
    validator: CredentialValidator = request.app["validator"]
    auth_timeout: float = request.app["auth_timeout"]

    # autoping off: pongs must reach the liveness supervisor
    ws = web.WebSocketResponse(autoping=False, max_msg_size=MAX_MESSAGE_SIZE)
    await ws.prepare(request)

    session = ConnectionSession(
        transport=WebSocketTransport(ws, request),
        remote=request.remote or "unknown",
    )
    logger.info("Incoming controller connection %s from %s", session.session_id, session.remote)

    try:
        reason = await _authenticate(ws, session, validator, auth_timeout)
        if reason is not None:
            close_task = session.close(reason)
            if close_task is not None:
                await close_task
            return ws

        registry.attach(session)
        await _serve(ws, session, relay)
    except Exception:
        logger.exception("Controller session %s failed", session.session_id)
    finally:
        session.cancel_timers()
        registry.detach(session)
        logger.info(
            "Controller %s disconnected (%s)",
            session.session_id,
            session.close_reason.value if session.close_reason else "remote close",
        )

    return ws


async def _authenticate(
    ws: web.WebSocketResponse,
    session: ConnectionSession,
    validator: CredentialValidator,
    auth_timeout: float,
) -> CloseReason | None:
    """Run the handshake. Returns None on success, else why to close."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + auth_timeout

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning("Authentication timeout - no valid auth received in %.0fs", auth_timeout)
            return CloseReason.AUTH_TIMEOUT
        try:
            msg = await asyncio.wait_for(ws.receive(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning("Authentication timeout - no valid auth received in %.0fs", auth_timeout)
            return CloseReason.AUTH_TIMEOUT

        if msg.type == WSMsgType.PING:
            await ws.pong(msg.data)
            continue
        if msg.type == WSMsgType.PONG:
            continue
        if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR):
            logger.info("Controller %s went away before authenticating", session.session_id)
            return CloseReason.MALFORMED_HANDSHAKE
        if msg.type != WSMsgType.TEXT:
            logger.error("Non-text handshake frame from %s", session.remote)
            return CloseReason.MALFORMED_HANDSHAKE

        handshake = _parse_handshake(msg.data)
        if handshake is None:
            logger.error("Invalid auth message from %s: %.200s", session.remote, msg.data)
            return CloseReason.MALFORMED_HANDSHAKE
        token, signature = handshake
        logger.debug("Auth attempt: token=%r", token[:64])

        try:
            result = validator.validate(token, signature, now=time.time())
        except ValueError:
            logger.error("Unencodable handshake fields from %s", session.remote)
            return CloseReason.MALFORMED_HANDSHAKE

        if not isinstance(result, Accepted):
            logger.error("Controller auth rejected: %s", result.reason.value)
            return CloseReason.from_reject(result.reason)

        session.authenticate(result.device_id)
        logger.info("Controller %s authenticated as %s", session.session_id, result.device_id)
        return None


async def _serve(
    ws: web.WebSocketResponse,
    session: ConnectionSession,
    relay: CommandRelay,
) -> None:
    async for msg in ws:
        if msg.type == WSMsgType.TEXT:
            relay.handle_message(session, msg.data)
        elif msg.type == WSMsgType.PONG:
            session.on_pong()
        elif msg.type == WSMsgType.PING:
            await ws.pong(msg.data)
        elif msg.type == WSMsgType.BINARY:
            logger.debug("Ignoring binary frame from %s", session.session_id)
        elif msg.type == WSMsgType.ERROR:
            logger.error("Controller WebSocket error: %s", ws.exception())


def build_tunnel_app(
    registry: TunnelRegistry,
    relay: CommandRelay,
    validator: CredentialValidator,
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT,
) -> web.Application:
    app = web.Application()
    app["registry"] = registry
    app["relay"] = relay
    app["validator"] = validator
    app["auth_timeout"] = auth_timeout
    app.router.add_get("/", _handle_tunnel)
    return app


class TunnelServer:
    """aiohttp-based controller tunnel listener."""

    def __init__(
        self,
        registry: TunnelRegistry,
        relay: CommandRelay,
        validator: CredentialValidator,
        host: str = "0.0.0.0",
        port: int = 8081,
        auth_timeout: float = DEFAULT_AUTH_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._app = build_tunnel_app(registry, relay, validator, auth_timeout)
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("WebSocket tunnel listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        self._registry.close_all()
        if self._runner:
            await self._runner.cleanup()
            logger.info("Tunnel server stopped")
