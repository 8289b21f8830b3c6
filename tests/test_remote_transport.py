"""Remote agent service transport against an in-process fake backend."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from codemonitor.adapters.event_bus import EventBus
from codemonitor.engine.errors import (
    BackendError,
    NotFoundError,
    TransportUnavailableError,
)
from codemonitor.engine.facade import OrchestrationFacade
from codemonitor.engine.models import (
    ApprovalDecision,
    ConnectionState,
    EventRole,
    PayloadKind,
    SessionConfig,
    SessionKind,
    SessionStatus,
)
from codemonitor.engine.session_registry import SessionRegistry
from codemonitor.engine.transports.base import RetryPolicy
from codemonitor.engine.transports.registry import TransportRegistry
from codemonitor.engine.transports.remote import (
    RemoteTransport,
    _RemoteSessionState,
    part_to_event,
)
from codemonitor.engine.transports.remote_client import RemoteClient
from codemonitor.engine.workspace import WorkspaceManager
from codemonitor.server import MonitorServer


class FakeAgentService:
    """Just enough of the agent service REST API for the transport."""

    def __init__(self) -> None:
        self.url = ""
        self.healthy = True
        self.html_health = False
        self.unavailable = 0
        self.garbled = 0
        self.reject_messages = False
        self.sessions: dict[str, dict] = {}
        self.messages: dict[str, list[dict]] = {}
        self.received: list[tuple[str, dict]] = []
        self.permission_replies: list[tuple[str, str, str]] = []
        self.aborted: list[str] = []
        self.diffs: dict[str, list[dict]] = {}
        self.files = {"src/app.py": "print('hi')\n", "src/util.py": ""}

        @web.middleware
        async def faults(request, handler):
            if self.unavailable > 0:
                self.unavailable -= 1
                return web.Response(status=503, text="overloaded")
            if self.garbled > 0 and request.method == "GET":
                self.garbled -= 1
                return web.Response(text="<html>proxy</html>", content_type="text/html")
            return await handler(request)

        app = web.Application(middlewares=[faults])
        app.router.add_get("/global/health", self.health)
        app.router.add_get("/agent", self.agents)
        app.router.add_get("/session", self.list_sessions)
        app.router.add_post("/session", self.create_session)
        app.router.add_delete("/session/{id}", self.delete_session)
        app.router.add_post("/session/{id}/abort", self.abort)
        app.router.add_get("/session/{id}/message", self.get_messages)
        app.router.add_post("/session/{id}/message", self.post_message)
        app.router.add_get("/session/{id}/diff", self.diff)
        app.router.add_post("/session/{id}/permissions/{pid}", self.permission)
        app.router.add_get("/find", self.find)
        app.router.add_get("/file", self.list_dir)
        app.router.add_get("/file/content", self.file_content)
        self.app = app

    def add_session(self, session_id: str, title: str = "existing") -> None:
        self.sessions[session_id] = {"id": session_id, "title": title}
        self.messages[session_id] = []

    def reply(self, session_id: str, *parts: dict, message_id: str | None = None) -> None:
        """Append assistant parts, to a new message or an existing one."""
        for message in self.messages[session_id]:
            if message_id and message["info"]["id"] == message_id:
                message["parts"].extend(parts)
                return
        self.messages[session_id].append({
            "info": {
                "id": message_id or f"msg_{len(self.messages[session_id]) + 1}",
                "role": "assistant",
            },
            "parts": list(parts),
        })

    def _lookup(self, request: web.Request) -> str:
        session_id = request.match_info["id"]
        if session_id not in self.sessions:
            raise web.HTTPNotFound()
        return session_id

    async def health(self, request):
        if self.html_health:
            return web.Response(text="<html>Gateway login</html>", content_type="text/html")
        return web.json_response({"healthy": self.healthy, "version": "0.9.1"})

    async def agents(self, request):
        return web.json_response({"error": "agents disabled"})

    async def list_sessions(self, request):
        return web.json_response(list(self.sessions.values()))

    async def create_session(self, request):
        body = await request.json()
        if body.get("title") == "forbidden":
            return web.json_response({"error": "title rejected"}, status=400)
        session_id = f"ses_{len(self.sessions) + 1:04d}"
        self.add_session(session_id, body.get("title"))
        return web.json_response(self.sessions[session_id])

    async def delete_session(self, request):
        del self.sessions[self._lookup(request)]
        return web.json_response(True)

    async def abort(self, request):
        self.aborted.append(self._lookup(request))
        return web.json_response(True)

    async def get_messages(self, request):
        return web.json_response(self.messages[self._lookup(request)])

    async def post_message(self, request):
        session_id = self._lookup(request)
        if self.reject_messages:
            return web.json_response({"error": "model not allowed"}, status=400)
        body = await request.json()
        self.received.append((session_id, body))
        message = {
            "info": {"id": f"msg_{len(self.messages[session_id]) + 1}", "role": "user"},
            "parts": [{"type": "text", "text": body["message"]}],
        }
        self.messages[session_id].append(message)
        return web.json_response(message)

    async def diff(self, request):
        return web.json_response(self.diffs.get(self._lookup(request), []))

    async def permission(self, request):
        session_id = self._lookup(request)
        body = await request.json()
        self.permission_replies.append(
            (session_id, request.match_info["pid"], body["response"]),
        )
        return web.json_response(True)

    async def find(self, request):
        pattern = request.query["pattern"]
        return web.json_response([p for p in self.files if pattern in p])

    async def list_dir(self, request):
        path = request.query.get("path", "")
        prefix = f"{path.rstrip('/')}/" if path else ""
        names = sorted({
            p[len(prefix):].split("/")[0] for p in self.files if p.startswith(prefix)
        })
        return web.json_response([{"name": n, "path": prefix + n} for n in names])

    async def file_content(self, request):
        path = request.query["path"]
        if path not in self.files:
            raise web.HTTPNotFound()
        return web.Response(text=self.files[path])


@pytest_asyncio.fixture
async def backend():
    service = FakeAgentService()
    server = test_utils.TestServer(service.app)
    await server.start_server()
    service.url = f"http://{server.host}:{server.port}"
    yield service
    await server.close()


@pytest_asyncio.fixture
async def client(backend):
    remote = RemoteClient(backend.url, timeout_seconds=5.0)
    yield remote
    await remote.close()


@pytest_asyncio.fixture
async def remote_stack(backend, tmp_path):
    bus = EventBus()
    transport = RemoteTransport(
        backend.url,
        poll_interval=0.02,
        retry=RetryPolicy(max_attempts=3, base_delay=0.01),
    )
    transports = TransportRegistry()
    transports.register(transport)
    workspaces = WorkspaceManager(
        lambda ws: transport.client_for(ws).health(),
        event_bus=bus,
        connect_retry=RetryPolicy(max_attempts=2, base_delay=0.01),
    )
    workspace = workspaces.add(str(tmp_path))
    registry = SessionRegistry(
        transports, workspaces, event_bus=bus,
        approval_timeout=5.0, abort_confirm_timeout=2.0,
    )
    yield SimpleNamespace(
        backend=backend,
        bus=bus,
        transport=transport,
        transports=transports,
        workspaces=workspaces,
        workspace=workspace,
        registry=registry,
    )
    await registry.shutdown()
    await transport.shutdown()


async def _eventually(predicate, timeout: float = 3.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


def _texts(registry: SessionRegistry, session_id: str, role: EventRole) -> list[str]:
    return [e.text for e in registry.get_log(session_id) if e.role == role]


class TestPartToEvent:
    def test_assistant_text(self):
        event = part_to_event("assistant", {"type": "text", "text": "hello"})
        assert event.role == EventRole.AGENT
        assert event.kind == PayloadKind.TEXT
        assert event.text == "hello"
        assert event.data == {}

    def test_tool_part(self):
        event = part_to_event(
            "assistant",
            {"type": "tool", "tool": "bash", "input": {"cmd": "ls"}, "text": "ls"},
        )
        assert event.kind == PayloadKind.TOOL_CALL
        assert event.data["tool"] == "bash"
        assert event.data["input"] == {"cmd": "ls"}

    def test_patch_part(self):
        event = part_to_event("assistant", {"type": "patch", "path": "a.py", "text": "+x"})
        assert event.kind == PayloadKind.DIFF
        assert event.data["path"] == "a.py"

    def test_permission_part(self):
        event = part_to_event("assistant", {
            "type": "permission", "id": "perm_1", "tool": "bash", "title": "rm -rf build",
        })
        assert event.requires_approval
        assert event.kind == PayloadKind.APPROVAL_REQUEST
        assert event.action_id == "perm_1"
        assert event.data["action"]["title"] == "rm -rf build"
        assert event.data["action"]["type"] == "bash"

    def test_unknown_role_is_system(self):
        assert part_to_event("tool", {"text": "x"}).role == EventRole.SYSTEM


class TestTranslate:
    def test_forwards_each_part_once(self):
        state = _RemoteSessionState(client=None, workspace_id="w")
        messages = [{"info": {"id": "m1", "role": "assistant"},
                     "parts": [{"type": "text", "text": "a"}]}]
        assert [e.text for e in RemoteTransport._translate(state, messages)] == ["a"]
        assert RemoteTransport._translate(state, messages) == []

        messages[0]["parts"].append({"type": "text", "text": "b"})
        messages.append({"id": "m2", "role": "user", "content": "c"})
        events = RemoteTransport._translate(state, messages)
        assert [(e.role, e.text) for e in events] == [
            (EventRole.AGENT, "b"),
            (EventRole.USER, "c"),
        ]


class TestRemoteClient:
    @pytest.mark.asyncio
    async def test_health(self, client):
        assert await client.health() == {"healthy": True, "version": "0.9.1"}

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, backend, client):
        backend.unavailable = 1
        with pytest.raises(TransportUnavailableError) as exc_info:
            await client.list_sessions()
        assert "503" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_missing_session_is_not_found(self, client):
        with pytest.raises(NotFoundError):
            await client.get_messages("ses_missing")

    @pytest.mark.asyncio
    async def test_client_error_is_backend_error(self, client):
        with pytest.raises(BackendError) as exc_info:
            await client.create_session("forbidden")
        assert exc_info.value.status == 400
        assert exc_info.value.message == "title rejected"

    @pytest.mark.asyncio
    async def test_error_payload_is_backend_error(self, client):
        with pytest.raises(BackendError) as exc_info:
            await client.list_agents()
        assert "agents disabled" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_reply_is_unavailable(self, backend, client):
        backend.html_health = True
        with pytest.raises(TransportUnavailableError) as exc_info:
            await client.health()
        assert "not JSON" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        remote = RemoteClient("http://127.0.0.1:1", timeout_seconds=2.0)
        try:
            with pytest.raises(TransportUnavailableError):
                await remote.health()
        finally:
            await remote.close()

    @pytest.mark.asyncio
    async def test_files(self, client):
        assert await client.search_files("src/") == ["src/app.py", "src/util.py"]
        assert await client.read_file("src/app.py") == "print('hi')\n"

    @pytest.mark.asyncio
    async def test_permission_reply(self, backend, client):
        backend.add_session("ses_x")
        assert await client.respond_permission("ses_x", "perm_1", approved=True)
        assert await client.respond_permission("ses_x", "perm_2", approved=False)
        assert backend.permission_replies == [
            ("ses_x", "perm_1", "once"),
            ("ses_x", "perm_2", "reject"),
        ]


class TestRemoteSessions:
    @pytest.mark.asyncio
    async def test_prompt_is_sent_and_echoed_once(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        session = await registry.create_session(
            remote_stack.workspace.workspace_id,
            SessionKind.REMOTE,
            SessionConfig(prompt="Fix the tests", model="gpt-5"),
        )
        sid = session.session_id
        assert backend.received == [(sid, {"message": "Fix the tests", "model": "gpt-5"})]

        backend.reply(sid, {"type": "text", "text": "Looking"})
        await _eventually(lambda: _texts(registry, sid, EventRole.AGENT) == ["Looking"])
        assert _texts(registry, sid, EventRole.USER) == ["Fix the tests"]
        assert [e.seq for e in registry.get_log(sid)] == [1, 2]

    @pytest.mark.asyncio
    async def test_failed_initial_prompt_discards_backend_session(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        backend.reject_messages = True
        with pytest.raises(BackendError):
            await registry.create_session(
                remote_stack.workspace.workspace_id,
                SessionKind.REMOTE,
                SessionConfig(prompt="Fix the tests", model="gpt-0"),
            )
        assert backend.sessions == {}
        assert registry.list_sessions() == []
        assert remote_stack.transport._sessions == {}

    @pytest.mark.asyncio
    async def test_parts_streamed_in_order(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        session = await registry.create_session(
            remote_stack.workspace.workspace_id, SessionKind.REMOTE,
        )
        sid = session.session_id
        backend.reply(sid, {"type": "text", "text": "one"}, message_id="m1")
        await _eventually(lambda: len(registry.get_log(sid)) == 1)
        backend.reply(sid, {"type": "tool", "tool": "bash", "text": "ls"}, message_id="m1")
        backend.reply(sid, {"type": "text", "text": "two"}, message_id="m2")
        await _eventually(lambda: len(registry.get_log(sid)) == 3)
        await asyncio.sleep(0.1)

        log = registry.get_log(sid)
        assert [(e.kind, e.text) for e in log] == [
            (PayloadKind.TEXT, "one"),
            (PayloadKind.TOOL_CALL, "ls"),
            (PayloadKind.TEXT, "two"),
        ]

    @pytest.mark.asyncio
    async def test_send_message(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        session = await registry.create_session(
            remote_stack.workspace.workspace_id, SessionKind.REMOTE,
        )
        sid = session.session_id
        await registry.send(sid, "also update the docs")
        assert backend.received[-1] == (sid, {"message": "also update the docs"})
        await _eventually(
            lambda: _texts(registry, sid, EventRole.USER) == ["also update the docs"],
        )

    @pytest.mark.asyncio
    async def test_denied_permission_is_rejected_on_backend(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        session = await registry.create_session(
            remote_stack.workspace.workspace_id, SessionKind.REMOTE,
        )
        sid = session.session_id
        backend.reply(sid, {
            "type": "permission", "id": "perm_7", "tool": "bash", "title": "rm -rf build",
        })
        await _eventually(
            lambda: registry.get(sid).status == SessionStatus.AWAITING_APPROVAL,
        )
        request = registry.gate.pending_for(sid)
        assert request.action_id == "perm_7"

        await registry.decide_approval(
            request.request_id, ApprovalDecision.DENIED, reason="too risky",
        )
        await _eventually(lambda: backend.permission_replies == [(sid, "perm_7", "reject")])
        assert registry.get(sid).status == SessionStatus.RUNNING
        assert registry.get_log(sid)[-1].text == "Denied: rm -rf build (too risky)"

    @pytest.mark.asyncio
    async def test_abort(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        session = await registry.create_session(
            remote_stack.workspace.workspace_id, SessionKind.REMOTE,
        )
        sid = session.session_id
        aborted = await registry.abort(sid)

        assert aborted.status == SessionStatus.ABORTED
        assert backend.aborted == [sid]
        assert registry.get_log(sid)[-1].data == {"confirmed": True}

        await registry.delete(sid)
        assert sid not in backend.sessions

    @pytest.mark.asyncio
    async def test_outage_fails_session_and_degrades_workspace(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        session = await registry.create_session(
            remote_stack.workspace.workspace_id, SessionKind.REMOTE,
        )
        sid = session.session_id
        backend.unavailable = 1000
        await _eventually(lambda: registry.get(sid).is_terminal)

        final = registry.get(sid)
        assert final.status == SessionStatus.FAILED
        assert final.error.startswith("Backend unreachable")
        assert remote_stack.workspace.connection == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_transient_outage_is_retried(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        backend.unavailable = 2
        session = await registry.create_session(
            remote_stack.workspace.workspace_id, SessionKind.REMOTE,
        )
        assert session.status == SessionStatus.RUNNING
        assert session.session_id in backend.sessions

    @pytest.mark.asyncio
    async def test_garbled_poll_is_retried(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        session = await registry.create_session(
            remote_stack.workspace.workspace_id, SessionKind.REMOTE,
        )
        sid = session.session_id
        backend.reply(sid, {"type": "text", "text": "still here"})
        backend.garbled = 2
        await _eventually(lambda: _texts(registry, sid, EventRole.AGENT) == ["still here"])
        assert registry.get(sid).status == SessionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_resume(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        backend.add_session("ses_old")
        backend.reply("ses_old", {"type": "text", "text": "earlier output"})
        wid = remote_stack.workspace.workspace_id

        session = await registry.resume_session(wid, SessionKind.REMOTE, "ses_old")
        assert session.status == SessionStatus.RUNNING
        await _eventually(
            lambda: _texts(registry, "ses_old", EventRole.AGENT) == ["earlier output"],
        )
        with pytest.raises(NotFoundError):
            await registry.resume_session(wid, SessionKind.REMOTE, "ses_unknown")

    @pytest.mark.asyncio
    async def test_resume_does_not_regate_settled_permissions(self, remote_stack):
        registry, backend = remote_stack.registry, remote_stack.backend
        backend.add_session("ses_old")
        backend.reply(
            "ses_old",
            {"type": "permission", "id": "perm_old", "tool": "bash", "title": "rm -rf build"},
            {"type": "text", "text": "cleaned up"},
            message_id="m1",
        )
        wid = remote_stack.workspace.workspace_id

        await registry.resume_session(wid, SessionKind.REMOTE, "ses_old")
        await _eventually(lambda: len(registry.get_log("ses_old")) == 2)
        replayed = registry.get_log("ses_old")[0]
        assert replayed.kind == PayloadKind.APPROVAL_REQUEST
        assert replayed.data["historical"] is True
        assert registry.get("ses_old").status == SessionStatus.RUNNING
        assert registry.gate.pending_for("ses_old") is None

        # Permissions raised after the attach are still gated.
        backend.reply("ses_old", {
            "type": "permission", "id": "perm_new", "tool": "bash", "title": "git push",
        })
        await _eventually(
            lambda: registry.get("ses_old").status == SessionStatus.AWAITING_APPROVAL,
        )
        request = registry.gate.pending_for("ses_old")
        assert request.action_id == "perm_new"
        await registry.decide_approval(request.request_id, ApprovalDecision.APPROVED)
        await _eventually(lambda: backend.permission_replies == [
            ("ses_old", "perm_new", "once"),
        ])

    @pytest.mark.asyncio
    async def test_workspace_connect(self, remote_stack):
        workspaces, backend = remote_stack.workspaces, remote_stack.backend
        wid = remote_stack.workspace.workspace_id
        assert await workspaces.connect(wid) == ConnectionState.CONNECTED

        backend.healthy = False
        assert await workspaces.connect(wid) == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_health_monitor_survives_non_json_replies(self, remote_stack, tmp_path):
        backend, transport = remote_stack.backend, remote_stack.transport
        workspaces = WorkspaceManager(
            lambda ws: transport.client_for(ws).health(),
            health_check_interval=0.01,
        )
        workspace = workspaces.add(str(tmp_path))
        assert await workspaces.probe(workspace.workspace_id) is True

        backend.html_health = True
        workspaces.start_health_monitor(workspace.workspace_id)
        try:
            await _eventually(
                lambda: workspace.connection == ConnectionState.DISCONNECTED,
            )
            backend.html_health = False
            await _eventually(lambda: workspace.connection == ConnectionState.CONNECTED)
        finally:
            await workspaces.shutdown()


class TestFileBrowsing:
    @pytest_asyncio.fixture
    async def facade(self, remote_stack):
        return OrchestrationFacade(
            remote_stack.registry,
            remote_stack.workspaces,
            remote_stack.transports,
            event_bus=remote_stack.bus,
        )

    @pytest.mark.asyncio
    async def test_list_files(self, facade, remote_stack):
        wid = remote_stack.workspace.workspace_id
        assert await facade.list_files(wid) == [{"name": "src", "path": "src"}]
        assert await facade.list_files(wid, "src") == [
            {"name": "app.py", "path": "src/app.py"},
            {"name": "util.py", "path": "src/util.py"},
        ]
        with pytest.raises(NotFoundError):
            await facade.list_files("nope", "src")

    @pytest.mark.asyncio
    async def test_files_over_http(self, facade, remote_stack):
        wid = remote_stack.workspace.workspace_id
        server = test_utils.TestServer(MonitorServer(facade).app)
        async with test_utils.TestClient(server) as http:
            resp = await http.get(f"/workspaces/{wid}/files", params={"path": "src"})
            assert resp.status == 200
            data = await resp.json()
            assert data["path"] == "src"
            assert [e["name"] for e in data["entries"]] == ["app.py", "util.py"]

            resp = await http.get(
                f"/workspaces/{wid}/files/search", params={"pattern": "util"},
            )
            assert (await resp.json())["files"] == ["src/util.py"]

            resp = await http.get(
                f"/workspaces/{wid}/files/content", params={"path": "src/app.py"},
            )
            assert (await resp.json())["content"] == "print('hi')\n"
