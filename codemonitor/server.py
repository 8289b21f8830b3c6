"""HTTP + SSE surface over the orchestration facade.

Thin adapter: all session state lives in the facade's registries. This
module only handles routing, error-to-status mapping and SSE fan-out.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from .adapters.events import event_to_dict
from .engine.errors import (
    AlreadyResolvedError,
    BackendError,
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
    TransportUnavailableError,
    UnsupportedOperationError,
)
from .engine.facade import OrchestrationFacade

logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def error_status(exc: Exception) -> int:
    """HTTP status for an orchestration error."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (AlreadyResolvedError, InvalidStateError)):
        return 409
    if isinstance(exc, UnsupportedOperationError):
        return 400
    if isinstance(exc, TransportUnavailableError):
        return 503
    if isinstance(exc, BackendError):
        return 502
    if isinstance(exc, ValueError):
        return 400
    return 500


def _since(request: web.Request) -> int:
    raw = request.query.get("since", "0")
    try:
        return max(0, int(raw))
    except ValueError:
        raise ValueError(f"since must be an integer, got {raw!r}") from None


async def _body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValueError("request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValueError("request body must be a JSON object")
    return body


class MonitorServer:
    """aiohttp application exposing the facade as REST + SSE."""

    def __init__(
        self,
        facade: OrchestrationFacade,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._facade = facade
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware],
        )
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except (OrchestrationError, ValueError) as exc:
            status = error_status(exc)
            log = logger.warning if status >= 500 else logger.info
            log("HTTP %s %s -> %d: %s", request.method, request.path, status, exc)
            return web.json_response(
                {"error": str(exc), "type": type(exc).__name__}, status=status,
            )

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/status", self._handle_status)
        r.add_get("/events", self._handle_notifications_sse)

        r.add_get("/workspaces", self._handle_list_workspaces)
        r.add_post("/workspaces", self._handle_add_workspace)
        r.add_delete("/workspaces/{wid}", self._handle_remove_workspace)
        r.add_post("/workspaces/{wid}/connect", self._handle_connect_workspace)

        r.add_get("/workspaces/{wid}/sessions", self._handle_list_sessions)
        r.add_post("/workspaces/{wid}/sessions", self._handle_start_session)
        r.add_post("/workspaces/{wid}/sessions/resume", self._handle_resume_session)
        r.add_get("/workspaces/{wid}/remote-sessions", self._handle_list_remote_sessions)
        r.add_get("/workspaces/{wid}/sessions/{sid}", self._handle_get_session)
        r.add_delete("/workspaces/{wid}/sessions/{sid}", self._handle_delete_session)
        r.add_post("/workspaces/{wid}/sessions/{sid}/messages", self._handle_send_message)
        r.add_get("/workspaces/{wid}/sessions/{sid}/events", self._handle_get_output)
        r.add_get("/workspaces/{wid}/sessions/{sid}/stream", self._handle_output_sse)
        r.add_post("/workspaces/{wid}/sessions/{sid}/abort", self._handle_abort_session)
        r.add_get("/workspaces/{wid}/sessions/{sid}/diffs", self._handle_get_diffs)

        r.add_get("/workspaces/{wid}/approvals", self._handle_pending_approvals)
        r.add_post("/workspaces/{wid}/approvals/{rid}", self._handle_decide_approval)

        r.add_get("/workspaces/{wid}/files", self._handle_list_files)
        r.add_get("/workspaces/{wid}/files/search", self._handle_search_files)
        r.add_get("/workspaces/{wid}/files/content", self._handle_read_file)

        r.add_get("/models/local", self._handle_local_models)
        r.add_get("/prompts", self._handle_list_prompts)
        r.add_get("/debug", self._handle_debug_entries)
        r.add_delete("/debug", self._handle_reset_debug)
        r.add_get("/debug/export", self._handle_export_debug)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then shut the core down."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(runner)
        if actual_port is not None:
            self._port = actual_port
        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("codemonitor listening on %s:%s", self._host, self._port)

        for workspace in self._facade.list_workspaces():
            asyncio.create_task(
                self._facade.connect_workspace(workspace.workspace_id),
                name=f"connect-{workspace.workspace_id[:8]}",
            )

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._facade.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(runner: web.AppRunner) -> int | None:
        for address in runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    # ── General ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._facade.status())

    async def _handle_notifications_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(status=200, headers=_SSE_HEADERS)
        await response.prepare(request)

        subscription = self._facade.subscribe_notifications()
        logger.info(
            "SSE client connected req=%s active_clients=%d",
            request.get("req_id", "unknown"), self._facade.event_bus.subscriber_count,
        )
        try:
            await response.write(
                f"event: connected\ndata: {json.dumps({'workspaces': len(self._facade.list_workspaces())})}\n\n".encode()
            )
            while not subscription.closed:
                event = await subscription.get(timeout=30.0)
                if event is None:
                    await response.write(b": keepalive\n\n")
                    continue
                payload = event_to_dict(event)
                await response.write(
                    f"event: {payload['event']}\ndata: {json.dumps(payload)}\n\n".encode()
                )
        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            subscription.close()
            logger.info("SSE client disconnected req=%s", request.get("req_id", "unknown"))
        return response

    # ── Workspaces ──

    async def _handle_list_workspaces(self, request: web.Request) -> web.Response:
        return web.json_response({
            "workspaces": [ws.to_dict() for ws in self._facade.list_workspaces()],
        })

    async def _handle_add_workspace(self, request: web.Request) -> web.Response:
        body = await _body(request)
        path = body.get("path")
        if not path:
            return web.json_response({"error": "path is required"}, status=400)
        workspace = self._facade.add_workspace(
            str(path), name=body.get("name"), remote_url=body.get("remote_url"),
        )
        return web.json_response(workspace.to_dict(), status=201)

    async def _handle_remove_workspace(self, request: web.Request) -> web.Response:
        workspace = await self._facade.remove_workspace(request.match_info["wid"])
        return web.json_response({"removed": workspace.workspace_id})

    async def _handle_connect_workspace(self, request: web.Request) -> web.Response:
        wid = request.match_info["wid"]
        state = await self._facade.connect_workspace(wid)
        return web.json_response({"workspace_id": wid, "connection": state.value})

    # ── Sessions ──

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = self._facade.list_sessions(request.match_info["wid"])
        return web.json_response({"sessions": [s.snapshot() for s in sessions]})

    async def _handle_start_session(self, request: web.Request) -> web.Response:
        body = await _body(request)
        kind = body.pop("kind", "remote")
        config = body.pop("config", None)
        if config is None:
            config = body
        session = await self._facade.start_session(request.match_info["wid"], kind, config)
        return web.json_response(session.snapshot(), status=201)

    async def _handle_resume_session(self, request: web.Request) -> web.Response:
        body = await _body(request)
        session_id = body.get("session_id")
        if not session_id:
            return web.json_response({"error": "session_id is required"}, status=400)
        session = await self._facade.resume_session(
            request.match_info["wid"], body.get("kind", "remote"), str(session_id),
        )
        return web.json_response(session.snapshot())

    async def _handle_list_remote_sessions(self, request: web.Request) -> web.Response:
        sessions = await self._facade.list_remote_sessions(request.match_info["wid"])
        return web.json_response({"sessions": sessions})

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session = self._facade.get_session(
            request.match_info["wid"], request.match_info["sid"],
        )
        return web.json_response(session.snapshot())

    async def _handle_delete_session(self, request: web.Request) -> web.Response:
        sid = request.match_info["sid"]
        await self._facade.delete_session(request.match_info["wid"], sid)
        return web.json_response({"deleted": sid})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        body = await _body(request)
        text = body.get("text") or body.get("message")
        if not text:
            return web.json_response({"error": "text is required"}, status=400)
        await self._facade.send_message(
            request.match_info["wid"], request.match_info["sid"], str(text),
        )
        return web.json_response({"status": "sent"}, status=202)

    async def _handle_get_output(self, request: web.Request) -> web.Response:
        events = self._facade.get_output(
            request.match_info["wid"], request.match_info["sid"], _since(request),
        )
        return web.json_response({"events": [e.to_dict() for e in events]})

    async def _handle_output_sse(self, request: web.Request) -> web.StreamResponse:
        subscription = self._facade.stream_output(
            request.match_info["wid"], request.match_info["sid"], _since(request),
        )
        response = web.StreamResponse(status=200, headers=_SSE_HEADERS)
        await response.prepare(request)
        try:
            async for event in subscription:
                await response.write(
                    f"id: {event.seq}\nevent: session_event\n"
                    f"data: {json.dumps(event.to_dict())}\n\n".encode()
                )
            await response.write(b"event: end\ndata: {}\n\n")
        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            await subscription.close()
        return response

    async def _handle_abort_session(self, request: web.Request) -> web.Response:
        session = await self._facade.abort_session(
            request.match_info["wid"], request.match_info["sid"],
        )
        return web.json_response(session.snapshot())

    async def _handle_get_diffs(self, request: web.Request) -> web.Response:
        diffs = await self._facade.get_session_diffs(
            request.match_info["wid"], request.match_info["sid"],
        )
        return web.json_response({"diffs": diffs})

    # ── Approvals ──

    async def _handle_pending_approvals(self, request: web.Request) -> web.Response:
        pending = self._facade.pending_approvals(request.match_info["wid"])
        return web.json_response({"approvals": [r.to_dict() for r in pending]})

    async def _handle_decide_approval(self, request: web.Request) -> web.Response:
        body = await _body(request)
        decision = body.get("decision")
        if not decision:
            return web.json_response({"error": "decision is required"}, status=400)
        resolved = await self._facade.decide_approval(
            request.match_info["wid"], request.match_info["rid"],
            decision, body.get("reason"),
        )
        return web.json_response(resolved.to_dict())

    # ── Files ──

    async def _handle_list_files(self, request: web.Request) -> web.Response:
        path = request.query.get("path", "")
        entries = await self._facade.list_files(request.match_info["wid"], path)
        return web.json_response({"path": path, "entries": entries})

    async def _handle_search_files(self, request: web.Request) -> web.Response:
        pattern = request.query.get("pattern", "")
        if not pattern:
            return web.json_response({"error": "pattern is required"}, status=400)
        files = await self._facade.search_files(request.match_info["wid"], pattern)
        return web.json_response({"files": files})

    async def _handle_read_file(self, request: web.Request) -> web.Response:
        path = request.query.get("path", "")
        if not path:
            return web.json_response({"error": "path is required"}, status=400)
        content = await self._facade.read_file(request.match_info["wid"], path)
        return web.json_response({"path": path, "content": content})

    # ── Misc ──

    async def _handle_local_models(self, request: web.Request) -> web.Response:
        return web.json_response({"models": await self._facade.list_local_models()})

    async def _handle_list_prompts(self, request: web.Request) -> web.Response:
        return web.json_response({
            "prompts": [p.to_dict() for p in self._facade.list_prompts()],
        })

    async def _handle_debug_entries(self, request: web.Request) -> web.Response:
        return web.json_response({
            "entries": [e.to_dict() for e in self._facade.debug_entries()],
        })

    async def _handle_reset_debug(self, request: web.Request) -> web.Response:
        self._facade.reset_debug()
        return web.json_response({"status": "cleared"})

    async def _handle_export_debug(self, request: web.Request) -> web.Response:
        return web.Response(text=self._facade.debug_log.export_text())
