"""HTTP + WebSocket adapter tests (aiohttp TestServer/TestClient)."""

from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from arc.engine.agent_registry import AgentRegistry
from arc.engine.agent_runner import RunResult
from arc.engine.config import EngineConfig
from arc.server.server import WS_OUTBOX_SIZE, ArcServer, WebSocketObserver
from arc.shared.models.agent import AgentDef
from arc.shared.services.persistence import InMemoryChatStore


class GatedRunner:
    """Replies "pong" once its gate opens."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.gate.set()
        self.stopped: list[str] = []

    async def run(self, agent, prompt, session_id, on_chunk=None):
        await self.gate.wait()
        if on_chunk is not None:
            on_chunk("po")
            on_chunk("ng")
        return RunResult(output="pong", exit_code=0)

    def stop(self, session_id: str) -> bool:
        self.stopped.append(session_id)
        return False

    def stop_all(self) -> int:
        self.gate.set()
        return 0


def _build_server(runner: GatedRunner | None = None) -> ArcServer:
    registry = AgentRegistry()
    registry.register(AgentDef(id="helper", name="Helper", description="Answers briefly"))
    return ArcServer(
        EngineConfig(),
        store=InMemoryChatStore(),
        registry=registry,
        runner=runner or GatedRunner(),
    )


async def _create_session(client: TestClient, **body) -> dict:
    resp = await client.post("/api/chat/sessions", json={"agentId": "helper", **body})
    assert resp.status == 201
    return await resp.json()


@pytest.mark.asyncio
async def test_health_and_agents():
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        health = await resp.json()
        assert health["status"] == "ok"
        assert health["agents"] == 1

        resp = await client.get("/api/agents")
        agents = (await resp.json())["agents"]
        assert [a["id"] for a in agents] == ["helper"]
        assert "system_prompt" not in agents[0]

        resp = await client.get("/api/agents/helper")
        assert (await resp.json())["name"] == "Helper"

        resp = await client.get("/api/agents/nobody")
        assert resp.status == 404
        assert "nobody" in (await resp.json())["error"]


@pytest.mark.asyncio
async def test_session_crud():
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/chat/sessions", json={})
        assert resp.status == 400
        resp = await client.post("/api/chat/sessions", json={"agentId": "nobody"})
        assert resp.status == 404
        resp = await client.post("/api/chat/sessions", data="{not json")
        assert resp.status == 400

        session = await _create_session(client)
        assert session["title"] == "New Chat"
        assert session["status"] == "active"
        named = await _create_session(client, title="Planning")
        assert named["title"] == "Planning"

        resp = await client.get("/api/chat/sessions", params={"agentId": "helper"})
        ids = {s["id"] for s in (await resp.json())["sessions"]}
        assert ids == {session["id"], named["id"]}

        resp = await client.patch(f"/api/chat/sessions/{session['id']}", json={"title": "Renamed"})
        assert resp.status == 200
        assert (await resp.json())["title"] == "Renamed"

        resp = await client.patch(f"/api/chat/sessions/{session['id']}", json={"agent_id": "x"})
        assert resp.status == 400

        resp = await client.delete(f"/api/chat/sessions/{session['id']}")
        assert (await resp.json())["deleted"] is True
        resp = await client.get(f"/api/chat/sessions/{session['id']}")
        assert (await resp.json())["status"] == "archived"

        resp = await client.get("/api/chat/sessions/missing")
        assert resp.status == 404
        resp = await client.get("/api/chat/sessions/missing/messages")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_sync_send_returns_assistant_reply():
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        session = await _create_session(client)
        url = f"/api/chat/sessions/{session['id']}/messages"

        resp = await client.post(url, json={"content": ""})
        assert resp.status == 400

        resp = await client.post(url, json={"content": "ping"})
        assert resp.status == 201
        reply = await resp.json()
        assert reply["role"] == "assistant"
        assert reply["content"] == "pong"

        resp = await client.get(url)
        messages = (await resp.json())["messages"]
        assert [(m["role"], m["content"]) for m in messages] == [
            ("user", "ping"),
            ("assistant", "pong"),
        ]
        resp = await client.get(f"/api/chat/sessions/{session['id']}")
        assert (await resp.json())["title"] == "ping"


@pytest.mark.asyncio
async def test_stream_send_returns_202_and_rejects_concurrent_send():
    runner = GatedRunner()
    runner.gate.clear()
    server = _build_server(runner)
    async with TestClient(TestServer(server.app)) as client:
        session = await _create_session(client)
        url = f"/api/chat/sessions/{session['id']}/messages"

        resp = await client.post(url, params={"stream": "true"}, json={"content": "first"})
        assert resp.status == 202
        assert (await resp.json())["role"] == "user"

        resp = await client.post(url, json={"content": "second"})
        assert resp.status == 409

        resp = await client.post(f"/api/chat/sessions/{session['id']}/stop")
        assert resp.status == 200
        assert runner.stopped == [session["id"]]

        runner.gate.set()
        await server.chat_manager.wait_idle(session["id"])
        resp = await client.get(url)
        contents = [m["content"] for m in (await resp.json())["messages"]]
        assert contents == ["first", "pong"]


@pytest.mark.asyncio
async def test_receive_records_external_message():
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        session = await _create_session(client)
        url = f"/api/chat/sessions/{session['id']}/receive"

        resp = await client.post(url, json={"role": "ops-bot", "content": "deploy finished"})
        assert resp.status == 201
        assert (await resp.json())["role"] == "ops-bot"

        resp = await client.post(url, json={"role": "ops-bot"})
        assert resp.status == 400
        resp = await client.post("/api/chat/sessions/missing/receive", json={"role": "x", "content": "y"})
        assert resp.status == 404


async def _receive_until(ws, event_type: str) -> list[dict]:
    events = []
    while True:
        event = await asyncio.wait_for(ws.receive_json(), timeout=5)
        events.append(event)
        if event["type"] == event_type:
            return events


@pytest.mark.asyncio
async def test_websocket_replays_history_then_streams_turn():
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        session = await _create_session(client)
        sid = session["id"]
        await client.post(f"/api/chat/sessions/{sid}/receive", json={"role": "user", "content": "earlier"})

        ws = await client.ws_connect("/ws")
        status = await asyncio.wait_for(ws.receive_json(), timeout=5)
        assert status == {"type": "agent_status", "payload": {"status": "connected", "connections": 1}}

        await ws.send_str("not json")
        await ws.send_json({"type": "subscribe"})
        await ws.send_json({"type": "subscribe", "sessionId": sid})
        replay = await asyncio.wait_for(ws.receive_json(), timeout=5)
        assert replay["type"] == "chat_message"
        assert replay["payload"]["content"] == "earlier"

        resp = await client.post(f"/api/chat/sessions/{sid}/messages", json={"content": "ping"})
        assert resp.status == 201

        events = await _receive_until(ws, "agent_done")
        assert [e["type"] for e in events] == [
            "chat_message",
            "agent_typing",
            "agent_chunk",
            "agent_chunk",
            "chat_message",
            "agent_done",
        ]
        assert "".join(e["payload"]["chunk"] for e in events if e["type"] == "agent_chunk") == "pong"
        assert events[-2]["payload"]["content"] == "pong"

        await ws.send_json({"type": "unsubscribe", "sessionId": sid})
        await ws.close()


@pytest.mark.asyncio
async def test_websocket_wildcard_sees_new_sessions():
    server = _build_server()
    async with TestClient(TestServer(server.app)) as client:
        ws = await client.ws_connect("/ws")
        await asyncio.wait_for(ws.receive_json(), timeout=5)
        await ws.send_json({"type": "subscribe", "sessionId": "*"})
        # Round-trip a request so the subscribe frame is processed first.
        await client.get("/health")
        await asyncio.sleep(0.05)

        session = await _create_session(client)

        event = await asyncio.wait_for(ws.receive_json(), timeout=5)
        assert event["type"] == "session_created"
        assert event["payload"]["id"] == session["id"]
        await ws.close()


class _FakeSocket:
    closed = False

    def __init__(self) -> None:
        self.frames: list[dict] = []

    async def send_str(self, data: str) -> None:
        self.frames.append(json.loads(data))


@pytest.mark.asyncio
async def test_replay_larger_than_outbox_is_delivered_in_full():
    server = _build_server()
    chat = server.chat_manager
    session = chat.create_session("helper", title="Long history")
    total = WS_OUTBOX_SIZE + 10
    for i in range(total):
        chat.receive_message(session.id, "user", f"m{i}")

    ws = _FakeSocket()
    observer = WebSocketObserver(ws, "req-1")
    assert server.gateway.subscribe(observer, session.id) == total
    chat.bus.publish_agent_done(session.id)
    assert observer.live_pending == 1

    writer = asyncio.create_task(observer.run_writer())
    try:
        for _ in range(200):
            if len(ws.frames) == total + 1:
                break
            await asyncio.sleep(0.01)
    finally:
        writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)

    assert [f["payload"]["content"] for f in ws.frames[:total]] == [f"m{i}" for i in range(total)]
    assert ws.frames[-1]["type"] == "agent_done"


def test_live_events_beyond_outbox_limit_are_dropped():
    observer = WebSocketObserver(_FakeSocket(), "req-2", maxsize=2)
    for i in range(3):
        observer.send({"type": "agent_chunk", "n": i})
    observer.send({"type": "chat_message"}, replay=True)

    assert observer.live_pending == 2
