"""Operator web console: login, control page, wake command API and status SSE."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from aiohttp import web

from wakerelay.adapters.web.auth import COOKIE_NAME, OperatorAuth
from wakerelay.core.errors import (
    CommandInFlightError,
    CommandTimeoutError,
    ControllerDisconnectedError,
    InvalidControllerResponseError,
    NoControllerError,
    RelayError,
)

if TYPE_CHECKING:
    from wakerelay.core.events import StatusBroadcaster
    from wakerelay.core.registry import TunnelRegistry
    from wakerelay.core.relay import CommandRelay

logger = logging.getLogger(__name__)

_INDEX_PATH = Path(__file__).parent / "index.html"
_LOGIN_PATH = Path(__file__).parent / "login.html"

_PUBLIC_PATHS = {"/login", "/logout", "/auth"}

# RelayError subclass -> (HTTP status, operator-facing message)
_ERROR_STATUS: dict[type[RelayError], tuple[int, str]] = {
    NoControllerError: (503, "Controller offline"),
    CommandInFlightError: (409, "Another command is in progress"),
    CommandTimeoutError: (504, "Controller timeout"),
    ControllerDisconnectedError: (502, "Controller disconnected"),
    InvalidControllerResponseError: (500, "Invalid controller response"),
}


def _format_sse(event: str, data: dict) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode("utf-8")


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

@web.middleware
async def _auth_middleware(request: web.Request, handler):
    if request.path in _PUBLIC_PATHS:
        return await handler(request)
    auth: OperatorAuth = request.app["auth"]
    if auth.is_authenticated(request):
        return await handler(request)
    if request.path.startswith("/api/"):
        return web.Response(status=401, text="Unauthorized")
    raise web.HTTPFound("/login")


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def _handle_login_page(request: web.Request) -> web.Response:
    html = _LOGIN_PATH.read_text(encoding="utf-8")
    return web.Response(text=html, content_type="text/html")


async def _handle_auth(request: web.Request) -> web.Response:
    """POST /auth: form login, sets the session cookie."""
    auth: OperatorAuth = request.app["auth"]
    form = await request.post()
    user = str(form.get("user", ""))
    password = str(form.get("pass", ""))

    if not auth.verify_credentials(user, password):
        logger.warning("Failed login attempt for %r from %s", user, request.remote)
        return web.Response(status=401, text="Invalid login")

    logger.info("Operator %s logged in from %s", user, request.remote)
    response = web.Response(status=302, headers={"Location": "/"})
    response.set_cookie(
        COOKIE_NAME, auth.create_token(user),
        httponly=True, path="/", max_age=auth.max_age, samesite="Strict",
    )
    return response


async def _handle_logout(request: web.Request) -> web.Response:
    response = web.Response(status=302, headers={"Location": "/login"})
    response.del_cookie(COOKIE_NAME, path="/")
    return response


async def _handle_index(request: web.Request) -> web.Response:
    html = _INDEX_PATH.read_text(encoding="utf-8")
    return web.Response(text=html, content_type="text/html")


async def _handle_wol(request: web.Request) -> web.Response:
    """POST /wol: forward a wake command to the controller."""
    relay: CommandRelay = request.app["relay"]
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response({"error": "Invalid JSON"}, status=400)

    mac = body.get("mac") if isinstance(body, dict) else None
    if not isinstance(mac, str) or not mac.strip():
        return web.json_response({"error": "MAC address required"}, status=400)

    try:
        reply = await relay.issue_wake(mac.strip())
    except RelayError as e:
        status, message = _ERROR_STATUS.get(type(e), (500, str(e)))
        return web.json_response({"error": message, "code": e.code}, status=status)
    return web.json_response(reply)


async def _handle_controller(request: web.Request) -> web.Response:
    """GET /api/controller: snapshot of the attached controller, if any."""
    registry: TunnelRegistry = request.app["registry"]
    relay: CommandRelay = request.app["relay"]
    session = registry.current()
    pending = relay.pending
    return web.json_response({
        "connected": session is not None,
        "controller": session.describe() if session else None,
        "pending_command": (
            {"mac": pending.mac, "id": pending.correlation_id, "created_at": pending.created_at}
            if pending else None
        ),
    })


async def _handle_status_sse(request: web.Request) -> web.StreamResponse:
    """GET /api/status: Server-Sent Events stream of connectivity changes."""
    broadcaster: StatusBroadcaster = request.app["broadcaster"]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)

    observer = broadcaster.observe()
    request.app["sse_observers"].add(observer)
    try:
        async for event in observer:
            await response.write(_format_sse("status", event.to_dict()))
    except ConnectionResetError:
        pass
    finally:
        request.app["sse_observers"].discard(observer)
        observer.close()

    return response


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

async def _close_status_streams(app: web.Application) -> None:
    """Release SSE handlers so runner cleanup does not wait on them."""
    for observer in list(app["sse_observers"]):
        observer.close()


def build_web_app(
    relay: CommandRelay,
    registry: TunnelRegistry,
    auth: OperatorAuth,
) -> web.Application:
    app = web.Application(middlewares=[_auth_middleware])
    app["relay"] = relay
    app["registry"] = registry
    app["broadcaster"] = registry.broadcaster
    app["auth"] = auth
    app["sse_observers"] = set()
    app.on_shutdown.append(_close_status_streams)

    app.router.add_get("/login", _handle_login_page)
    app.router.add_post("/auth", _handle_auth)
    app.router.add_get("/logout", _handle_logout)

    app.router.add_get("/", _handle_index)
    app.router.add_post("/wol", _handle_wol)
    app.router.add_get("/api/status", _handle_status_sse)
    app.router.add_get("/api/controller", _handle_controller)
    return app


class WebServer:
    """aiohttp-based operator console."""

    def __init__(
        self,
        relay: CommandRelay,
        registry: TunnelRegistry,
        auth: OperatorAuth,
        host: str = "0.0.0.0",
        port: int = 8080,
    ) -> None:
        self._app = build_web_app(relay, registry, auth)
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("HTTP server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            logger.info("HTTP server stopped")
