"""End-to-end tests for termsessions.server.api over a real socket."""

from __future__ import annotations

import asyncio
import json

import aiohttp
import pytest

from conftest import echo_responder
from termsessions.server.api import SessionServer
from termsessions.server.protocol import EmptyParams, Method


@pytest.fixture
async def server(manager):
    srv = SessionServer(manager.config, manager=manager)
    await srv.start()
    yield srv
    await srv.stop()


@pytest.fixture
async def ws(server):
    async with aiohttp.ClientSession() as http:
        async with http.ws_connect(server.url) as sock:
            yield sock


async def _call(sock, request_id, method: str, params: dict | None = None) -> dict:
    """Send a request and return its response, skipping pushed events."""
    await sock.send_str(json.dumps({"id": request_id, "method": method, "params": params or {}}))
    while True:
        message = json.loads(await asyncio.wait_for(sock.receive_str(), timeout=2))
        if message.get("id") == request_id:
            return message


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_health(self, server, manager) -> None:
        base = f"http://127.0.0.1:{server.port}"
        async with aiohttp.ClientSession() as http:
            async with http.get(f"{base}/health") as resp:
                assert resp.status == 200
                assert await resp.json() == {"status": "ok", "sessions": 0}
            await manager.create_session("s1")
            async with http.get(f"{base}/health") as resp:
                assert (await resp.json())["sessions"] == 1

    async def test_ephemeral_port_resolved(self, server) -> None:
        assert server.port and server.port > 0


# ---------------------------------------------------------------------------
# RPC
# ---------------------------------------------------------------------------


class TestRpc:
    async def test_create_and_list(self, ws) -> None:
        created = await _call(ws, 1, "session.create", {"id": "s1"})
        assert created["result"]["id"] == "s1"
        assert created["result"]["isAlive"] is True

        listed = await _call(ws, 2, "session.list")
        assert [s["id"] for s in listed["result"]] == ["s1"]

    async def test_exec(self, ws, spawned) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        spawned[0].responder = echo_responder({"echo hi": "hi\r\n"})
        reply = await _call(ws, 2, "session.exec", {"sessionId": "s1", "command": "echo hi"})
        assert "hi" in reply["result"]["output"].splitlines()
        assert reply["result"]["exitCode"] == 0

    async def test_output_and_search(self, ws, spawned) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        spawned[0].feed("alpha\nbeta\ngamma\n")
        output = await _call(ws, 2, "session.output", {"sessionId": "s1", "lines": 2})
        assert output["result"] == ["beta", "gamma"]

        found = await _call(
            ws, 3, "session.search", {"sessionId": "s1", "pattern": "BETA", "contextLines": 1}
        )
        hit = found["result"][0]
        assert hit["lineNumber"] == 2
        assert [c["line"] for c in hit["context"]] == ["alpha", "beta", "gamma"]

    async def test_input_signal_resize(self, ws, spawned) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        assert (await _call(ws, 2, "session.input", {"sessionId": "s1", "input": "y"}))["result"] == {"success": True}
        assert (await _call(ws, 3, "session.signal", {"sessionId": "s1"}))["result"] == {"success": True}
        assert (await _call(ws, 4, "session.resize", {"sessionId": "s1", "cols": 80, "rows": 24}))["result"] == {"success": True}
        assert spawned[0].written == ["y\n", "\x03"]
        assert spawned[0].size == (80, 24)

    async def test_kill(self, ws, manager) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        reply = await _call(ws, 2, "session.kill", {"sessionId": "s1", "graceful": False})
        assert reply["result"] == {"success": True}
        assert len(manager) == 0

    async def test_kill_all(self, ws, manager) -> None:
        await _call(ws, 1, "session.create", {"id": "a"})
        await _call(ws, 2, "session.create", {"id": "b"})
        reply = await _call(ws, 3, "session.killAll", {})
        assert reply["result"] == {"success": True}
        assert len(manager) == 0

    async def test_pwd_and_env(self, ws, spawned) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        spawned[0].responder = echo_responder({"pwd": "/srv\r\n", "env": "A=1\r\n"})
        assert (await _call(ws, 2, "session.pwd", {"sessionId": "s1"}))["result"] == "/srv"
        assert (await _call(ws, 3, "session.env", {"sessionId": "s1"}))["result"] == {"A": "1"}

    async def test_service_start(self, ws, manager, spawned) -> None:
        reply = await _call(
            ws, 1, "service.start", {"name": "svc", "command": "run", "readyPatterns": ["never"]}
        )
        assert reply["result"]["status"] == "running"
        assert reply["result"]["sessionId"] == "svc"
        assert "svc" in manager.registry

    async def test_dispatch_direct(self, server) -> None:
        assert await server.dispatch(Method.SESSION_LIST, EmptyParams()) == []


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    async def test_unknown_session(self, ws) -> None:
        reply = await _call(ws, 1, "session.exec", {"sessionId": "nope", "command": "ls"})
        assert reply == {"id": 1, "error": "Session nope not found"}

    async def test_duplicate(self, ws) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        reply = await _call(ws, 2, "session.create", {"id": "s1"})
        assert "already exists" in reply["error"]

    async def test_unknown_method(self, ws) -> None:
        reply = await _call(ws, 1, "session.explode")
        assert reply["error"] == "Unknown method: session.explode"

    async def test_invalid_params(self, ws) -> None:
        reply = await _call(ws, 1, "session.resize", {"sessionId": "s1", "cols": "wide"})
        assert reply["error"].startswith("Invalid params for session.resize")

    async def test_malformed_json(self, ws) -> None:
        await ws.send_str("{not json")
        message = json.loads(await asyncio.wait_for(ws.receive_str(), timeout=2))
        assert message["id"] == "error"
        assert "Malformed" in message["error"]

    async def test_bad_request_does_not_break_connection(self, ws) -> None:
        await ws.send_str("garbage")
        await asyncio.wait_for(ws.receive_str(), timeout=2)
        reply = await _call(ws, 2, "session.list")
        assert reply["result"] == []


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    async def test_slow_exec_does_not_block_other_requests(self, ws, config) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        await ws.send_str(json.dumps({
            "id": "slow",
            "method": "session.exec",
            "params": {"sessionId": "s1", "command": "sleep", "timeout": 0.5},
        }))
        await ws.send_str(json.dumps({"id": "fast", "method": "session.list", "params": {}}))
        first = json.loads(await asyncio.wait_for(ws.receive_str(), timeout=2))
        assert first["id"] == "fast"


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptions:
    async def test_backfill_precedes_ack(self, ws, spawned) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        spawned[0].feed("".join(f"line {i}\n" for i in range(20)))
        await _call(ws, "flush", "session.list")

        await ws.send_str(json.dumps({
            "id": 2,
            "method": "session.subscribe",
            "params": {"sessionId": "s1", "replay": 5},
        }))
        backfill = []
        while True:
            message = json.loads(await asyncio.wait_for(ws.receive_str(), timeout=2))
            if message.get("id") == 2:
                ack = message
                break
            if message.get("event") == "session:output":
                backfill.append(message)

        assert ack["result"] == {"sessionIds": ["s1"], "all": False}
        assert 0 < len(backfill) <= 5
        assert [m["payload"]["lines"][0] for m in backfill] == [
            f"line {i}" for i in range(15, 20)
        ]

    async def test_live_events(self, ws, spawned) -> None:
        await _call(ws, 1, "session.subscribe", {"all": True})
        await _call(ws, 2, "session.create", {"id": "s1"})
        spawned[0].feed("live\n")
        while True:
            message = json.loads(await asyncio.wait_for(ws.receive_str(), timeout=2))
            if message.get("event") == "session:output":
                break
        assert message["sessionId"] == "s1"
        assert message["payload"]["lines"] == ["live"]

    async def test_unsubscribed_connection_gets_no_session_events(self, server, ws, spawned) -> None:
        await _call(ws, 1, "session.create", {"id": "s1"})
        spawned[0].feed("quiet\n")
        # A round trip flushes anything already routed to this connection
        reply = await _call(ws, 2, "session.list")
        assert reply["result"][0]["id"] == "s1"
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ws.receive_str(), timeout=0.2)

    async def test_subscription_state_dropped_on_disconnect(self, server) -> None:
        async with aiohttp.ClientSession() as http:
            async with http.ws_connect(server.url) as sock:
                await _call(sock, 1, "session.subscribe", {"all": True})
                assert len(server.router) == 1
            for _ in range(50):
                if len(server.router) == 0:
                    break
                await asyncio.sleep(0.02)
        assert len(server.router) == 0
