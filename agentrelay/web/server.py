"""HTTP + SSE server for the relay.

Routes:
    GET    /, /health
    GET    /chat                       messages (JSON) or live chunks (SSE)
    POST   /chat                       start a turn (202 / 409 / 400)
    DELETE /chat                       clear the session
    GET    /chat/status                completion status
    POST   /chat/cancel                cancel the running turn
    GET    /chat/question              AskUserQuestion status
    POST   /chat/answer                answer a pending question
    GET    /sessions                   CLI logs found for the working dir
    GET    /sessions/{id}              one log with metadata
    /sessions/{id}/chat[...]           per-session variants of /chat

SSE frames are ``data: <json>\\n\\n``; a stream ends with
``data: [DONE]``.
"""
from __future__ import annotations

import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from agentrelay.adapters.agent_client import AgentClient
from agentrelay.adapters.chunks import chunk_to_dict
from agentrelay.adapters.completion import CompletionCoordinator
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import (
    CompletionConflictError,
    NoCompletionRunningError,
    RelayError,
)
from agentrelay.shared.models.message import LogicalMessage, MessageRole

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def _sse_frame(data: str) -> bytes:
    return f"data: {data}\n\n".encode()


class RelayServer:
    """Routes HTTP requests to the agent client and the completion
    coordinator; owns neither conversation state nor chunk translation."""

    def __init__(
        self,
        config: RelayConfig,
        client: AgentClient | None = None,
        coordinator: CompletionCoordinator | None = None,
    ) -> None:
        self._config = config
        self._host = config.host
        self._port = config.port
        self._client = client or AgentClient(config)
        self._coordinator = coordinator or CompletionCoordinator(
            poll_interval=config.stream_poll_interval_seconds,
        )
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def client(self) -> AgentClient:
        return self._client

    @property
    def coordinator(self) -> CompletionCoordinator:
        return self._coordinator

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-relay-request-id", str(uuid.uuid4())[:8])
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
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/", self._handle_root)
        r.add_get("/health", self._handle_health)

        r.add_get("/chat", self._handle_get_chat)
        r.add_post("/chat", self._handle_post_chat)
        r.add_delete("/chat", self._handle_delete_chat)
        r.add_get("/chat/status", self._handle_status)
        r.add_post("/chat/cancel", self._handle_cancel)
        r.add_get("/chat/question", self._handle_get_question)
        r.add_post("/chat/answer", self._handle_post_answer)

        r.add_get("/sessions", self._handle_list_sessions)
        r.add_get("/sessions/{id}", self._handle_get_session)
        r.add_get("/sessions/{id}/chat", self._handle_get_chat)
        r.add_post("/sessions/{id}/chat", self._handle_post_chat)
        r.add_delete("/sessions/{id}/chat", self._handle_delete_chat)
        r.add_get("/sessions/{id}/chat/question", self._handle_get_question)
        r.add_post("/sessions/{id}/chat/answer", self._handle_post_answer)

    # ── Lifecycle ──

    async def start(self) -> int:
        """Start listening and print the bound port to stdout."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(self._runner)
        if actual_port is None:
            raise RuntimeError("Relay server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Relay server listening on %s:%d cwd=%s", self._host, actual_port, self._client.cwd)
        return actual_port

    async def stop(self) -> None:
        if self._coordinator.is_running:
            self._client.cancel()
            await self._coordinator.cancel()
        self._client.disconnect()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay server stopped")

    @staticmethod
    def _resolve_port(runner: web.AppRunner) -> int | None:
        for address in runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    # ── Helpers ──

    @staticmethod
    def _session_id(request: web.Request) -> str | None:
        return request.match_info.get("id")

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any] | None:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return body if isinstance(body, dict) else None

    # ── HTTP handlers ──

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "service": "agent"})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "healthy": True,
            "connected": self._client.is_connected,
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self._client.cwd,
        })

    async def _handle_get_chat(self, request: web.Request) -> web.StreamResponse:
        session_id = self._session_id(request)
        if "text/event-stream" in request.headers.get("Accept", ""):
            if not self._coordinator.is_running:
                return web.Response(status=204)
            return await self._stream_chunks(request)

        try:
            messages = self._client.get_messages(session_id)
        except (RelayError, OSError) as exc:
            logger.error("Failed to load session %s: %s", session_id or "<default>", exc)
            return web.json_response(
                {"error": f"Failed to create or load session: {exc}"}, status=500,
            )
        # While a turn runs the log may hold a partial snapshot of the
        # reply; the client rebuilds it from the stream instead.
        if (
            self._coordinator.is_running
            and messages
            and messages[-1].role is MessageRole.ASSISTANT
        ):
            messages = messages[:-1]
        return web.json_response({"messages": [m.to_dict() for m in messages]})

    async def _stream_chunks(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        req_id = request.get("req_id", "unknown")
        status = self._coordinator.status()
        logger.info("SSE reader attached req=%s completion=%s", req_id, status.completion_id)
        sent = 0
        try:
            async for chunk in self._coordinator.subscribe(
                keepalive=self._config.keepalive_seconds,
            ):
                if chunk is None:
                    await response.write(b": keepalive\n\n")
                    continue
                await response.write(_sse_frame(json.dumps(chunk_to_dict(chunk))))
                sent += 1
            await response.write(_sse_frame("[DONE]"))
        except ConnectionResetError:
            logger.info("SSE reader disconnected req=%s after %d chunks", req_id, sent)
            return response
        logger.info("SSE reader done req=%s chunks=%d", req_id, sent)
        return response

    async def _handle_post_chat(self, request: web.Request) -> web.Response:
        session_id = self._session_id(request)
        if self._coordinator.is_running:
            active = self._coordinator.status().completion_id or "unknown"
            logger.info("completion=%s event=conflict", active)
            return web.json_response(
                {"error": "completion_in_progress", "completionId": active}, status=409,
            )

        body = await self._read_json(request)
        if body is None:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        raw_messages = body.get("messages")
        if not isinstance(raw_messages, list):
            return web.json_response({"error": "messages array required"}, status=400)
        raw_user = [
            m for m in raw_messages if isinstance(m, dict) and m.get("role") == "user"
        ]
        if not raw_user:
            return web.json_response({"error": "No user message found"}, status=400)
        try:
            message = LogicalMessage.from_dict(raw_user[-1])
        except ValueError as exc:
            return web.json_response({"error": f"invalid message: {exc}"}, status=400)

        try:
            completion_id = self._coordinator.run(
                lambda: self._client.prompt(message, session_id),
            )
        except CompletionConflictError as exc:
            return web.json_response(
                {"error": "completion_in_progress", "completionId": exc.active_completion_id},
                status=409,
            )
        return web.json_response(
            {"completionId": completion_id, "status": "started"}, status=202,
        )

    async def _handle_delete_chat(self, request: web.Request) -> web.Response:
        self._client.clear_session(self._session_id(request))
        return web.json_response({"success": True})

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._coordinator.status().to_dict())

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        if not self._coordinator.is_running:
            return web.json_response({"error": "no_completion_running"}, status=409)
        self._client.cancel()
        try:
            completion_id = await self._coordinator.cancel()
        except NoCompletionRunningError:
            return web.json_response({"error": "no_completion_running"}, status=409)
        return web.json_response({"success": True, "completionId": completion_id})

    async def _handle_get_question(self, request: web.Request) -> web.Response:
        tool_use_id = request.query.get("toolUseID") or None
        session = self._client.get_session(self._session_id(request))
        if session is None:
            return web.json_response({"status": "not_found", "question": None})
        return web.json_response(session.questions.get(tool_use_id).to_dict())

    async def _handle_post_answer(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        if body is None:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        tool_use_id = body.get("toolUseID")
        answers = body.get("answers")
        if not tool_use_id or not isinstance(answers, dict):
            return web.json_response({"error": "toolUseID and answers are required"}, status=400)

        session = self._client.get_session(self._session_id(request))
        if session is None or not session.questions.submit(str(tool_use_id), answers):
            return web.json_response(
                {"error": "No pending question for this toolUseID"}, status=404,
            )
        return web.json_response({"success": True})

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = self._client.discover_sessions()
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        data = self._client.load_full_session(session_id)
        if data is None:
            return web.json_response({"error": f"Session {session_id} not found"}, status=404)
        return web.json_response(data.to_dict())
