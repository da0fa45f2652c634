"""HTTP + WebSocket server for the ARC orchestration core.

Exposes the chat REST API under /api and real-time session events on
/ws. All state lives in the ChatManager and its collaborators; this
class only handles routing, error mapping and WebSocket fan-out.

Usage:
    arc [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import Any

from aiohttp import WSMsgType, web

from arc.adapters.chat_manager import ChatManager, SendMode
from arc.adapters.event_bus import EventBus
from arc.adapters.gateway import DistributionGateway
from arc.engine.agent_registry import AgentRegistry
from arc.engine.agent_runner import AgentRunner
from arc.engine.config import EngineConfig
from arc.engine.errors import (
    AgentNotFoundError,
    InvalidRequestError,
    OrchestrationError,
    SessionBusyError,
    SessionNotFoundError,
)
from arc.shared.models.session import SessionStatus
from arc.shared.services.persistence import ChatStore, SqliteChatStore

logger = logging.getLogger(__name__)

WS_OUTBOX_SIZE = 5000
_TRUE_VALUES = {"1", "true", "yes", "on"}


class WebSocketObserver:
    """Gateway observer backed by one WebSocket connection.

    send() only enqueues; a writer task drains the outbox onto the
    socket so a slow client never blocks publishers. The size limit
    applies to live events only; history replay is never dropped.
    """

    def __init__(self, ws: web.WebSocketResponse, req_id: str, maxsize: int = WS_OUTBOX_SIZE) -> None:
        self.req_id = req_id
        self._ws = ws
        self._maxsize = maxsize
        self._outbox: asyncio.Queue[tuple[bool, dict[str, Any]]] = asyncio.Queue()
        self._replay_pending = 0

    @property
    def closed(self) -> bool:
        return self._ws.closed

    @property
    def live_pending(self) -> int:
        return self._outbox.qsize() - self._replay_pending

    def send(self, event: dict[str, Any], replay: bool = False) -> None:
        if replay:
            self._replay_pending += 1
        elif self.live_pending >= self._maxsize:
            logger.warning(
                "WebSocket outbox full req=%s, dropping %s event",
                self.req_id, event.get("type"),
            )
            return
        self._outbox.put_nowait((replay, event))

    async def run_writer(self) -> None:
        while True:
            replay, event = await self._outbox.get()
            if replay:
                self._replay_pending -= 1
            if self._ws.closed:
                break
            try:
                await self._ws.send_str(json.dumps(event))
            except ConnectionResetError:
                break


class ArcServer:
    """aiohttp application wiring store, registry, runner and gateway."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        store: ChatStore | None = None,
        registry: AgentRegistry | None = None,
        runner: AgentRunner | None = None,
        host: str = "127.0.0.1",
        port: int = 3100,
    ) -> None:
        self._config = config or EngineConfig()
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._store = store or SqliteChatStore(self._config.db_path)
        self._registry = registry or AgentRegistry(self._config.agents_dir)
        self._runner = runner or AgentRunner(self._config)
        self._bus = EventBus()
        self._chat = ChatManager(
            self._store,
            self._runner,
            self._bus,
            history_max_messages=self._config.history_max_messages,
            history_max_chars=self._config.history_max_chars,
        )
        self._gateway = DistributionGateway(self._chat, self._bus)
        self._gateway.attach()

        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware]
        )
        self._setup_routes()
        self._app.on_shutdown.append(self._on_shutdown)

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def chat_manager(self) -> ChatManager:
        return self._chat

    @property
    def gateway(self) -> DistributionGateway:
        return self._gateway

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-arc-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except (SessionNotFoundError, AgentNotFoundError) as exc:
            return web.json_response({"error": str(exc)}, status=404)
        except InvalidRequestError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except SessionBusyError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except OrchestrationError as exc:
            logger.error("Unmapped orchestration error req=%s: %s", request.get("req_id"), exc)
            return web.json_response({"error": str(exc)}, status=500)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/ws", self._handle_ws)
        # Agents
        r.add_get("/api/agents", self._handle_list_agents)
        r.add_get("/api/agents/{id}", self._handle_get_agent)
        # Session CRUD
        r.add_get("/api/chat/sessions", self._handle_list_sessions)
        r.add_post("/api/chat/sessions", self._handle_create_session)
        r.add_get("/api/chat/sessions/{id}", self._handle_get_session)
        r.add_patch("/api/chat/sessions/{id}", self._handle_update_session)
        r.add_delete("/api/chat/sessions/{id}", self._handle_archive_session)
        # Messages
        r.add_get("/api/chat/sessions/{id}/messages", self._handle_get_messages)
        r.add_post("/api/chat/sessions/{id}/messages", self._handle_send_message)
        r.add_post("/api/chat/sessions/{id}/stop", self._handle_stop)
        r.add_post("/api/chat/sessions/{id}/receive", self._handle_receive)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then shut the orchestrator down."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("ARC server listening on %s:%d", self._host, self._port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self._chat.shutdown()
        self._gateway.detach()
        self._bus.close()
        self._store.close()

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequestError("Request body must be valid JSON") from None
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return body

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "agents": len(self._registry),
            "running_agents": self._runner.running_count,
            "connections": self._gateway.connection_count,
        })

    async def _handle_list_agents(self, request: web.Request) -> web.Response:
        return web.json_response({"agents": [a.to_dict() for a in self._registry.list()]})

    async def _handle_get_agent(self, request: web.Request) -> web.Response:
        agent = self._registry.require(request.match_info["id"])
        return web.json_response(agent.to_dict())

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        agent_id = request.query.get("agentId") or request.query.get("agent_id")
        sessions = self._chat.list_sessions(agent_id)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        agent_id = body.get("agentId") or body.get("agent_id")
        if not agent_id:
            raise InvalidRequestError("agentId is required")
        self._registry.require(agent_id)
        session = self._chat.create_session(agent_id, body.get("title"))
        return web.json_response(session.to_dict(), status=201)

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session = self._chat.require_session(request.match_info["id"])
        return web.json_response(session.to_dict())

    async def _handle_update_session(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        session = self._chat.update_session(request.match_info["id"], body)
        return web.json_response(session.to_dict())

    async def _handle_archive_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._chat.update_session(session_id, {"status": SessionStatus.ARCHIVED.value})
        return web.json_response({"deleted": True, "session_id": session_id})

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._chat.require_session(session_id)
        messages = self._chat.get_messages(session_id)
        return web.json_response({"messages": [m.to_dict() for m in messages]})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body = await self._read_json(request)
        content = body.get("content")
        if not content or not isinstance(content, str):
            raise InvalidRequestError("content is required")
        session = self._chat.require_session(session_id)
        agent = self._registry.require(session.agent_id)

        stream = request.query.get("stream", "").lower() in _TRUE_VALUES
        if stream:
            user_msg = await self._chat.send_message(session_id, content, agent, SendMode.ASYNC)
            return web.json_response(user_msg.to_dict(), status=202)
        reply = await self._chat.send_message(session_id, content, agent, SendMode.SYNC)
        return web.json_response(reply.to_dict(), status=201)

    async def _handle_stop(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._chat.require_session(session_id)
        stopped = self._chat.stop_agent(session_id)
        return web.json_response({"stopped": stopped})

    async def _handle_receive(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        content = body.get("content")
        if not content or not isinstance(content, str):
            raise InvalidRequestError("content is required")
        message = self._chat.receive_message(
            request.match_info["id"], str(body.get("role") or ""), content,
        )
        return web.json_response(message.to_dict(), status=201)

    # ── WebSocket ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        req_id = request.get("req_id", "unknown")
        observer = WebSocketObserver(ws, req_id)
        self._gateway.connect(observer)
        writer = asyncio.create_task(observer.run_writer())
        logger.info(
            "WebSocket client connected req=%s active_clients=%d",
            req_id, self._gateway.connection_count,
        )
        self._gateway.broadcast_status("connected", connections=self._gateway.connection_count)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_ws_frame(observer, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket req=%s closed with error: %s", req_id, ws.exception())
        finally:
            self._gateway.on_disconnect(observer)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            logger.info(
                "WebSocket client disconnected req=%s active_clients=%d",
                req_id, self._gateway.connection_count,
            )
            self._gateway.broadcast_status("disconnected", connections=self._gateway.connection_count)
        return ws

    def _handle_ws_frame(self, observer: WebSocketObserver, data: str) -> None:
        try:
            frame = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON WebSocket frame req=%s", observer.req_id)
            return
        if not isinstance(frame, dict):
            logger.debug("Ignoring non-object WebSocket frame req=%s", observer.req_id)
            return

        frame_type = frame.get("type")
        session_id = frame.get("sessionId") or frame.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            logger.debug("Ignoring %s frame without sessionId req=%s", frame_type, observer.req_id)
            return

        if frame_type == "subscribe":
            self._gateway.subscribe(observer, session_id)
        elif frame_type == "unsubscribe":
            self._gateway.unsubscribe(observer, session_id)
        else:
            logger.debug("Ignoring unknown WebSocket frame type %r req=%s", frame_type, observer.req_id)
