"""
API endpoint tests.

The app is built with prebuilt services: an in-memory store, a MagicMock
Docker client and a scripted model endpoint.
"""

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from genstack.api.app import build_services, create_app
from genstack.api.events import LiveChannel
from genstack.llm import TokenUsage, ToolLoopResult

from conftest import InMemoryStore, ScriptedLLM, chat_response


@pytest.fixture
def docker_client():
    client = MagicMock()
    client.containers.list.return_value = []
    return client


@pytest.fixture
def services(test_config, docker_client):
    services = build_services(test_config, store=InMemoryStore(), docker_client=docker_client)
    services.llm._transport = ScriptedLLM([chat_response("Done")]).transport
    return services


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


def block_generation(services):
    async def run_with_tools(messages, tools, cancel_event=None, **kwargs):
        await cancel_event.wait()
        return ToolLoopResult("", TokenUsage(), tool_calls=0, steps=0, cancelled=True)

    services.llm.run_with_tools = run_with_tools


def minutes_ago(minutes):
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


def poll(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.02)


class TestHealth:

    def test_health_without_store(self, test_config, docker_client):
        services = build_services(test_config, store=None, docker_client=docker_client)
        services.llm._transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": []}))
        with TestClient(create_app(services=services)) as client:
            response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["checks"]["database"]["status"] == "unavailable"
        assert data["checks"]["llm"]["status"] == "healthy"
        assert data["checks"]["container_runtime"]["circuit_open"] is False
        assert data["active_containers"] == 0

    def test_unreachable_model_endpoint(self, client, services):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        services.llm._transport = httpx.MockTransport(refuse)
        data = client.get("/api/health").json()

        assert data["checks"]["llm"]["status"] == "unreachable"
        assert data["checks"]["database"]["status"] == "unhealthy"

    def test_startup_removes_orphans(self, client, docker_client):
        docker_client.containers.list.assert_called_once()

    def test_startup_fails_stuck_sessions(self, test_config, docker_client):
        store = InMemoryStore()
        store.sessions = {
            "old": {"id": "old", "status": "generating", "created_at": minutes_ago(10)},
            "recent": {"id": "recent", "status": "generating", "created_at": minutes_ago(2)},
            "done": {"id": "done", "status": "completed", "created_at": minutes_ago(30)},
        }
        services = build_services(test_config, store=store, docker_client=docker_client)

        with TestClient(create_app(services=services)):
            pass

        assert store.sessions["old"]["status"] == "failed"
        assert store.sessions["old"]["error_message"] == (
            "Generation interrupted by server restart (session was 10 minutes old)"
        )
        assert store.sessions["recent"]["status"] == "generating"
        assert store.sessions["done"]["status"] == "completed"


class TestSessions:
    """Test session endpoints"""

    def test_start_generation_accepted(self, client, services):
        response = client.post("/api/sessions", json={"prompt": "A todo app", "session_id": "s1"})

        assert response.status_code == 202
        assert response.json() == {"session_id": "s1", "status": "generating"}

        poll(lambda: not services.orchestrator.is_running("s1"))
        session = client.get("/api/sessions/s1").json()
        assert session["status"] == "completed"
        assert session["running"] is False
        assert session["app"] is None
        assert [m["role"] for m in session["messages"]][0] == "user"

    def test_generated_session_id(self, client):
        response = client.post("/api/sessions", json={"prompt": "A blog"})
        assert response.status_code == 202
        assert response.json()["session_id"]

    @pytest.mark.parametrize("body", [
        {"prompt": "   "},
        {"prompt": "x", "config": {"max_iterations": 9}},
        {"prompt": "x", "config": {"input_mode": "freestyle"}},
        {"prompt": "x", "session_id": "../etc"},
        {"prompt": "x", "config": {"template_name": "../base"}},
    ])
    def test_invalid_requests_rejected(self, client, body):
        assert client.post("/api/sessions", json=body).status_code == 422

    def test_concurrent_start_conflicts(self, client, services):
        block_generation(services)
        assert client.post("/api/sessions", json={"prompt": "one", "session_id": "s1"}).status_code == 202

        response = client.post("/api/sessions", json={"prompt": "two", "session_id": "s1"})
        assert response.status_code == 409
        assert response.json()["error_code"] == "SESSION_BUSY"

        assert client.delete("/api/sessions/s1").status_code == 409

        assert client.post("/api/sessions/s1/cancel").json() == {"session_id": "s1", "cancelled": True}
        poll(lambda: not services.orchestrator.is_running("s1"))
        assert client.get("/api/sessions/s1").json()["status"] == "cancelled"

    def test_cancel_without_run(self, client):
        assert client.post("/api/sessions/missing/cancel").status_code == 409

    def test_get_missing_session(self, client):
        response = client.get("/api/sessions/missing")
        assert response.status_code == 404
        assert response.json()["error_code"] == "SESSION_NOT_FOUND"

    def test_list_sessions(self, client, services):
        client.post("/api/sessions", json={"prompt": "A todo app", "session_id": "s1"})
        poll(lambda: not services.orchestrator.is_running("s1"))

        sessions = client.get("/api/sessions", params={"limit": 10}).json()
        assert [s["id"] for s in sessions] == ["s1"]
        assert sessions[0]["running"] is False

    def test_list_requires_store(self, test_config, docker_client):
        services = build_services(test_config, store=None, docker_client=docker_client)
        with TestClient(create_app(services=services)) as client:
            assert client.get("/api/sessions").status_code == 503

    def test_delete_session(self, client, services):
        client.post("/api/sessions", json={"prompt": "A todo app", "session_id": "s1"})
        poll(lambda: not services.orchestrator.is_running("s1"))

        assert client.delete("/api/sessions/s1").json() == {"session_id": "s1", "deleted": True}
        assert not services.filesystem.get_sandbox_path("s1").exists()
        assert client.get("/api/sessions/s1").status_code == 404
        assert client.delete("/api/sessions/s1").status_code == 404


class TestPreviewApp:

    def test_start_requires_sandbox(self, client):
        assert client.post("/api/sessions/missing/app/start").status_code == 404

    def test_start_runs_in_background(self, client, services):
        services.filesystem.initialize_sandbox("s1")
        started = []

        async def fake_start(session_id, workdir):
            started.append((session_id, workdir))

        services.containers.start_app = fake_start

        response = client.post("/api/sessions/s1/app/start")

        assert response.status_code == 202
        assert response.json() == {"session_id": "s1", "status": "creating"}
        poll(lambda: started)
        assert started[0][1] == services.filesystem.get_sandbox_path("s1")

    def test_unexpected_start_error_reaches_room(self, client, services):
        services.filesystem.initialize_sandbox("s1")

        async def broken_start(session_id, workdir):
            raise RuntimeError("socket closed")

        services.containers.start_app = broken_start

        with client.websocket_connect("/api/ws/s1") as websocket:
            websocket.receive_json()
            assert client.post("/api/sessions/s1/app/start").status_code == 202
            event = websocket.receive_json()

        assert event == {"type": "error", "message": "Failed to start app", "stage": "app"}
        poll(lambda: "s1" not in services.app_tasks)

    def test_status_when_stopped(self, client):
        assert client.get("/api/sessions/s1/app/status").json() == {"session_id": "s1", "status": "stopped"}

    def test_logs_empty(self, client):
        assert client.get("/api/sessions/s1/app/logs", params={"limit": 5}).json() == {
            "session_id": "s1",
            "logs": [],
        }

    def test_logs_limit_validated(self, client):
        assert client.get("/api/sessions/s1/app/logs", params={"limit": 0}).status_code == 422

    def test_stop_without_container(self, client):
        assert client.post("/api/sessions/s1/app/stop").status_code == 404


class TestWebSocket:

    def test_connected_and_ping(self, client):
        with client.websocket_connect("/api/ws/s1") as websocket:
            first = websocket.receive_json()
            assert first["type"] == "connected"
            assert first["session_id"] == "s1"

            websocket.send_text("ping")
            assert websocket.receive_text() == "pong"

    def test_generation_events_reach_room(self, client):
        with client.websocket_connect("/api/ws/s1") as websocket:
            websocket.receive_json()
            client.post("/api/sessions", json={"prompt": "A todo app", "session_id": "s1"})

            types = []
            while "generation_complete" not in types:
                types.append(websocket.receive_json()["type"])

        assert types[0] == "llm_message"


class TestLiveChannel:
    """Test room-scoped broadcasting"""

    @pytest.mark.asyncio
    async def test_publish_to_room_only(self):
        channel = LiveChannel()
        in_room, elsewhere = AsyncMock(), AsyncMock()
        await channel.connect("s1", in_room)
        await channel.connect("s2", elsewhere)

        await channel.publish("s1", "file_updated", {"path": "a.ts"})

        in_room.send_json.assert_awaited_once_with({"type": "file_updated", "path": "a.ts"})
        elsewhere.send_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dead_socket_dropped(self):
        channel = LiveChannel()
        dead = AsyncMock()
        dead.send_json.side_effect = RuntimeError("closed")
        await channel.connect("s1", dead)

        await channel.publish("s1", "tool_call", {})

        assert channel.connection_count("s1") == 0
        assert "s1" not in channel.active_connections

    @pytest.mark.asyncio
    async def test_publish_to_empty_room(self):
        await LiveChannel().publish("nobody", "error", {"message": "x"})

    @pytest.mark.asyncio
    async def test_disconnect(self):
        channel = LiveChannel()
        socket = AsyncMock()
        await channel.connect("s1", socket)
        await channel.disconnect("s1", socket)
        await channel.disconnect("s1", socket)
        assert channel.connection_count("s1") == 0
