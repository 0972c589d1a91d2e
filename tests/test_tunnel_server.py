"""Wire-level tests for the controller tunnel endpoint."""
from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace

import pytest
from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from wakerelay.adapters.tunnel.server import _parse_handshake, build_tunnel_app
from wakerelay.core.credentials import CredentialValidator, sign_token
from wakerelay.core.errors import NoControllerError
from wakerelay.core.events import StatusBroadcaster
from wakerelay.core.registry import TunnelRegistry
from wakerelay.core.relay import CommandRelay

SECRET = "tunnel-test-secret"


def _handshake(device: str = "dev1", secret: str = SECRET, skew: int = 0) -> dict:
    token = f"{device}-{int(time.time()) + skew}"
    return {"token": token, "hmac": sign_token(secret, token)}


@pytest.fixture
async def tunnel():
    registry = TunnelRegistry(StatusBroadcaster(), probe_interval=0.2, probe_grace=0.1)
    relay = CommandRelay(registry, timeout=1.0)
    app = build_tunnel_app(registry, relay, CredentialValidator(SECRET), auth_timeout=0.3)
    async with TestClient(TestServer(app)) as client:
        yield SimpleNamespace(client=client, registry=registry, relay=relay)


async def _expect_close(ws, code: int = 1008) -> None:
    msg = await asyncio.wait_for(ws.receive(), timeout=2.0)
    assert msg.type == WSMsgType.CLOSE
    assert msg.data == code


class TestParseHandshake:
    def test_valid(self):
        assert _parse_handshake('{"token": "a-1", "hmac": "ff"}') == ("a-1", "ff")

    @pytest.mark.parametrize("raw", [
        "not json",
        "[]",
        '{"token": "a-1"}',
        '{"hmac": "ff"}',
        '{"token": "", "hmac": "ff"}',
        '{"token": 12, "hmac": "ff"}',
    ])
    def test_malformed(self, raw):
        assert _parse_handshake(raw) is None


class TestHandshake:
    async def test_valid_handshake_attaches(self, tunnel, eventually):
        ws = await tunnel.client.ws_connect("/")
        await ws.send_json(_handshake("dev1"))

        await eventually(lambda: tunnel.registry.connected)
        assert tunnel.registry.current().device_id == "dev1"
        await ws.close()
        await eventually(lambda: not tunnel.registry.connected)

    async def test_bad_signature_closes(self, tunnel):
        ws = await tunnel.client.ws_connect("/")
        await ws.send_json(_handshake(secret="wrong"))
        await _expect_close(ws)
        assert not tunnel.registry.connected

    async def test_expired_token_closes(self, tunnel):
        ws = await tunnel.client.ws_connect("/")
        await ws.send_json(_handshake(skew=-600))
        await _expect_close(ws)
        assert not tunnel.registry.connected

    async def test_malformed_json_closes(self, tunnel):
        ws = await tunnel.client.ws_connect("/")
        await ws.send_str("{nope")
        await _expect_close(ws)
        assert not tunnel.registry.connected

    async def test_missing_field_closes(self, tunnel):
        ws = await tunnel.client.ws_connect("/")
        await ws.send_json({"token": f"dev1-{int(time.time())}"})
        await _expect_close(ws)

    async def test_binary_handshake_closes(self, tunnel):
        ws = await tunnel.client.ws_connect("/")
        await ws.send_bytes(b"\x00\x01")
        await _expect_close(ws)

    async def test_auth_timeout_closes(self, tunnel):
        ws = await tunnel.client.ws_connect("/")
        msg = await asyncio.wait_for(ws.receive(), timeout=2.0)
        assert msg.type == WSMsgType.CLOSE
        assert msg.data == 1008
        assert msg.extra == "AuthTimeout"
        assert not tunnel.registry.connected

    async def test_second_controller_evicts_first(self, tunnel, eventually):
        ws1 = await tunnel.client.ws_connect("/")
        await ws1.send_json(_handshake("dev1"))
        await eventually(lambda: tunnel.registry.connected)
        first = tunnel.registry.current()

        ws2 = await tunnel.client.ws_connect("/")
        await ws2.send_json(_handshake("dev2"))
        await eventually(lambda: tunnel.registry.current() is not first)

        await _expect_close(ws1, code=1001)
        assert tunnel.registry.current().device_id == "dev2"
        await ws2.close()


class TestCommands:
    async def test_wake_round_trip(self, tunnel, eventually):
        ws = await tunnel.client.ws_connect("/")
        await ws.send_json(_handshake("dev1"))
        await eventually(lambda: tunnel.registry.connected)

        wake = asyncio.create_task(tunnel.relay.issue_wake("AA:BB:CC:DD:EE:FF"))
        msg = await asyncio.wait_for(ws.receive(), timeout=2.0)
        assert msg.type == WSMsgType.TEXT
        command = msg.json()
        assert command["mac"] == "AA:BB:CC:DD:EE:FF"

        await ws.send_json({"status": "ok"})

        assert await asyncio.wait_for(wake, timeout=2.0) == {"status": "ok"}
        await ws.close()

    async def test_no_controller(self, tunnel):
        with pytest.raises(NoControllerError):
            await tunnel.relay.issue_wake("AA:BB:CC:DD:EE:FF")


class TestLiveness:
    async def test_responsive_controller_stays_attached(self, tunnel, eventually):
        ws = await tunnel.client.ws_connect("/")  # autoping answers server pings
        await ws.send_json(_handshake("dev1"))
        await eventually(lambda: tunnel.registry.connected)

        async def reader():
            async for _ in ws:
                pass

        task = asyncio.create_task(reader())
        await asyncio.sleep(0.8)

        assert tunnel.registry.connected
        assert tunnel.registry.current().last_pong_at is not None
        task.cancel()
        await ws.close()

    async def test_silent_controller_terminated(self, tunnel, eventually):
        observer = tunnel.registry.subscribe()
        ws = await tunnel.client.ws_connect("/", autoping=False)
        await ws.send_json(_handshake("dev1"))
        await eventually(lambda: tunnel.registry.connected)

        # Never answer pings
        await eventually(lambda: not tunnel.registry.connected, timeout=2.0)

        values = []
        while not observer.empty():
            values.append(observer.get_nowait().connected)
        assert values == [False, True, False]
        await ws.close()
