"""HTTP control API and observer channel tests.

Runs the full aiohttp application against in-memory worker processes.

Test coverage:
- Worker control endpoints and their state conflicts
- Conversation endpoints
- Workspace switching
- Supervisor signals forwarded to observers
- Observer chat messages relayed to the worker
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest import mock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from cli_agent_relay.app import RelayContext
from cli_agent_relay.config import Config
from cli_agent_relay.errors import BusyError
from cli_agent_relay.server import create_app
from cli_agent_relay.types import PauseMode, WorkerStatus


@pytest.fixture
def config(temp_workspace: Path) -> Config:
    return Config(
        port=0,
        cwd=temp_workspace,
        worker_command="ralph",
        worker_args=("--json",),
        pause_mode=PauseMode.SIGNAL,
        stop_timeout=0.5,
        tracker_command=None,
    )


@pytest_asyncio.fixture
async def ctx(config, fake_spawner, chat_spawner):
    return RelayContext(config, worker_spawner=fake_spawner, chat_spawner=chat_spawner)


@pytest_asyncio.fixture
async def client(ctx):
    async with TestClient(TestServer(create_app(ctx))) as client:
        yield client


async def _post(client: TestClient, path: str, body=None):
    if body is None:
        resp = await client.post(path)
    else:
        resp = await client.post(path, json=body)
    return resp.status, await resp.json()


async def _get(client: TestClient, path: str):
    resp = await client.get(path)
    return resp.status, await resp.json()


async def _until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def _receive_type(ws, message_type: str) -> dict:
    """Skip observer messages until one of the given type arrives."""
    while True:
        message = await ws.receive_json(timeout=5)
        if message["type"] == message_type:
            return message


# =============================================================================
# Worker control
# =============================================================================


class TestWorkerEndpoints:
    """Test /api worker control."""

    @pytest.mark.asyncio
    async def test_health_and_status(self, client):
        assert await _get(client, "/healthz") == (200, {"ok": True})
        assert await _get(client, "/api/status") == (200, {"ok": True, "status": "stopped"})

    @pytest.mark.asyncio
    async def test_start(self, client, fake_spawner, temp_workspace):
        status, body = await _post(client, "/api/start")

        assert status == 200
        assert body == {"ok": True, "status": "running"}
        assert fake_spawner.last.spec.argv == ["ralph", "--json"]
        assert fake_spawner.last.spec.cwd == temp_workspace

    @pytest.mark.asyncio
    async def test_start_with_iterations(self, client, fake_spawner):
        status, _ = await _post(client, "/api/start", {"iterations": 3})
        assert status == 200
        assert fake_spawner.last.spec.argv == ["ralph", "--json", "3"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("iterations", ["five", True, 2.5])
    async def test_start_invalid_iterations(self, client, fake_spawner, iterations):
        status, body = await _post(client, "/api/start", {"iterations": iterations})
        assert status == 400
        assert body == {"ok": False, "error": "iterations must be an integer"}
        assert fake_spawner.processes == []

    @pytest.mark.asyncio
    async def test_start_twice_conflicts(self, client):
        await _post(client, "/api/start")
        status, body = await _post(client, "/api/start")

        assert status == 409
        assert body == {"ok": False, "error": "Worker is already running"}

    @pytest.mark.asyncio
    async def test_start_spawn_failure(self, client, fake_spawner):
        fake_spawner.error = FileNotFoundError("ralph not found")
        status, body = await _post(client, "/api/start")

        assert status == 500
        assert body["ok"] is False
        assert "ralph" in body["error"]
        assert (await _get(client, "/api/status"))[1]["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        resp = await client.post(
            "/api/start", data="{nope", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400
        assert (await resp.json())["ok"] is False

        status, body = await _post(client, "/api/start", [1, 2])
        assert status == 400
        assert body["error"] == "Request body must be a JSON object"

    @pytest.mark.asyncio
    async def test_stop(self, client, fake_spawner):
        await _post(client, "/api/start")
        status, body = await _post(client, "/api/stop")

        assert status == 200
        assert body == {"ok": True, "status": "stopped"}
        assert "stop" in fake_spawner.last.actions

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self, client):
        status, body = await _post(client, "/api/stop")
        assert status == 409
        assert body == {"ok": False, "error": "Worker is not running"}

    @pytest.mark.asyncio
    async def test_pause_resume(self, client, fake_spawner):
        await _post(client, "/api/start")

        assert await _post(client, "/api/pause") == (200, {"ok": True, "status": "paused"})
        assert await _post(client, "/api/resume") == (200, {"ok": True, "status": "running"})
        assert fake_spawner.last.actions == ["suspend", "resume"]

    @pytest.mark.asyncio
    async def test_pause_when_stopped(self, client):
        status, body = await _post(client, "/api/pause")
        assert status == 409
        assert body["ok"] is False

    @pytest.mark.asyncio
    async def test_resume_when_running(self, client):
        await _post(client, "/api/start")
        status, body = await _post(client, "/api/resume")
        assert status == 409
        assert body["error"] == "Cannot resume worker in running state"

    @pytest.mark.asyncio
    async def test_stop_after_current(self, client, fake_spawner):
        await _post(client, "/api/start")

        status, body = await _post(client, "/api/stop-after-current")
        assert (status, body["status"]) == (200, "stopping_after_current")

        status, body = await _post(client, "/api/cancel-stop-after-current")
        assert (status, body["status"]) == (200, "running")

        assert fake_spawner.last.messages == [
            {"type": "stop_after_current"},
            {"type": "cancel_stop_after_current"},
        ]

    @pytest.mark.asyncio
    async def test_cancel_stop_after_current_without_request(self, client):
        await _post(client, "/api/start")
        status, _ = await _post(client, "/api/cancel-stop-after-current")
        assert status == 409

    @pytest.mark.asyncio
    async def test_unexpected_error(self, client, ctx):
        ctx.worker.pause = mock.Mock(side_effect=RuntimeError("boom"))
        status, body = await _post(client, "/api/pause")
        assert status == 500
        assert body == {"ok": False, "error": "boom"}


class TestMessageEndpoint:
    """Test /api/message."""

    @pytest.mark.asyncio
    async def test_not_running(self, client):
        status, body = await _post(client, "/api/message", {"message": "hi"})
        assert status == 409
        assert body["ok"] is False

    @pytest.mark.asyncio
    async def test_text_wrapped(self, client, fake_spawner):
        await _post(client, "/api/start")
        assert await _post(client, "/api/message", {"message": "hi"}) == (200, {"ok": True})
        assert fake_spawner.last.messages == [{"type": "user_message", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_object_passed_through(self, client, fake_spawner):
        await _post(client, "/api/start")
        await _post(client, "/api/message", {"message": {"type": "custom", "x": 1}})
        assert fake_spawner.last.messages == [{"type": "custom", "x": 1}]

    @pytest.mark.asyncio
    async def test_missing_message(self, client):
        await _post(client, "/api/start")
        status, body = await _post(client, "/api/message", {})
        assert status == 400
        assert body == {"ok": False, "error": "Message is required"}


# =============================================================================
# Conversation
# =============================================================================


class TestTaskChatEndpoints:
    """Test /api/task-chat."""

    @pytest.mark.asyncio
    async def test_full_exchange(self, client, chat_spawner):
        status, body = await _post(client, "/api/task-chat/message", {"message": "  hello "})
        assert status == 202
        assert body == {"ok": True, "status": "processing"}

        await _until(lambda: len(chat_spawner.processes) == 1)
        process = chat_spawner.last
        assert process.spec.argv[-1] == "hello"

        # One call at a time
        status, body = await _post(client, "/api/task-chat/message", {"message": "again"})
        assert status == 409
        assert body["ok"] is False

        process.emit_stdout(json.dumps({"type": "result", "result": "Hi!"}) + "\n")
        process.finish(0)
        await _until_idle(client)

        status, body = await _get(client, "/api/task-chat/messages")
        assert status == 200
        assert body["status"] == "idle"
        assert [(m["role"], m["content"]) for m in body["messages"]] == [
            ("user", "hello"),
            ("assistant", "Hi!"),
        ]

        status, body = await _get(client, "/api/task-chat/status")
        assert body == {"ok": True, "status": "idle", "messageCount": 2}

    @pytest.mark.asyncio
    async def test_second_submit_before_first_starts(self, ctx, chat_spawner):
        task = ctx.submit_chat("first")
        assert not ctx.conversation.is_processing
        with pytest.raises(BusyError):
            ctx.submit_chat("second")

        await _until(lambda: len(chat_spawner.processes) == 1)
        chat_spawner.last.emit_stdout(json.dumps({"type": "result", "result": "done"}) + "\n")
        chat_spawner.last.finish(0)
        assert await task == "done"
        assert chat_spawner.last.spec.argv[-1] == "first"

    @pytest.mark.asyncio
    async def test_back_to_back_posts_one_accepted(self, client, chat_spawner):
        first, second = await asyncio.gather(
            _post(client, "/api/task-chat/message", {"message": "one"}),
            _post(client, "/api/task-chat/message", {"message": "two"}),
        )
        assert sorted([first[0], second[0]]) == [202, 409]

        await _until(lambda: len(chat_spawner.processes) == 1)
        chat_spawner.last.finish(0)
        await _until_idle(client)
        assert len(chat_spawner.processes) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"message": ""}, {"message": "   "}, {"message": 5}])
    async def test_message_required(self, client, payload):
        status, body = await _post(client, "/api/task-chat/message", payload)
        assert status == 400
        assert body == {"ok": False, "error": "Message is required"}

    @pytest.mark.asyncio
    async def test_clear(self, client, ctx, chat_spawner):
        await _post(client, "/api/task-chat/message", {"message": "hello"})
        await _until(lambda: len(chat_spawner.processes) == 1)
        chat_spawner.last.emit_stdout(json.dumps({"type": "result", "result": "Hi"}) + "\n")
        chat_spawner.last.finish(0)
        await _until_idle(client)

        assert await _post(client, "/api/task-chat/clear") == (200, {"ok": True})
        status, body = await _get(client, "/api/task-chat/status")
        assert body["messageCount"] == 0

    @pytest.mark.asyncio
    async def test_cancel(self, client, chat_spawner):
        await _post(client, "/api/task-chat/message", {"message": "hello"})
        await _until(lambda: len(chat_spawner.processes) == 1)

        status, body = await _post(client, "/api/task-chat/cancel")
        assert (status, body) == (200, {"ok": True, "status": "idle"})
        assert chat_spawner.last.actions == ["terminate"]

        # Cancel when idle is a no-op
        assert await _post(client, "/api/task-chat/cancel") == (200, {"ok": True, "status": "idle"})

    @pytest.mark.asyncio
    async def test_failed_call_reports_error_status(self, client, chat_spawner):
        await _post(client, "/api/task-chat/message", {"message": "hello"})
        await _until(lambda: len(chat_spawner.processes) == 1)
        chat_spawner.last.finish(1)

        _, body = await _get(client, "/api/task-chat/status")
        assert body == {"ok": True, "status": "error", "messageCount": 1}


async def _until_idle(client: TestClient) -> None:
    for _ in range(500):
        _, body = await _get(client, "/api/task-chat/status")
        if body["status"] == "idle":
            return
        await asyncio.sleep(0.01)
    raise AssertionError("conversation never became idle")


# =============================================================================
# Workspace
# =============================================================================


class TestWorkspaceSwitch:
    """Test /api/workspace/switch."""

    @pytest.mark.asyncio
    async def test_switch_restarts_worker_in_watch_mode(self, client, ctx, fake_spawner, tmp_path):
        await _post(client, "/api/start")
        first = fake_spawner.last
        other = tmp_path / "other-repo"
        other.mkdir()

        status, body = await _post(client, "/api/workspace/switch", {"path": str(other)})

        assert status == 200
        assert body == {
            "ok": True,
            "workspace": {"path": str(other.resolve()), "name": "other-repo"},
            "status": "running",
        }
        assert "stop" in first.actions
        assert len(fake_spawner.processes) == 2
        assert fake_spawner.last.spec.argv == ["ralph", "--json", "--watch"]
        assert fake_spawner.last.spec.cwd == other.resolve()
        assert ctx.cwd == other.resolve()
        assert ctx.conversation.cwd == other.resolve()

    @pytest.mark.asyncio
    async def test_missing_path(self, client):
        status, body = await _post(client, "/api/workspace/switch", {})
        assert status == 400
        assert body == {"ok": False, "error": "Workspace path is required"}

    @pytest.mark.asyncio
    async def test_nonexistent_path(self, client, tmp_path, fake_spawner):
        status, body = await _post(
            client, "/api/workspace/switch", {"path": str(tmp_path / "missing")}
        )
        assert status == 400
        assert "does not exist" in body["error"]
        assert fake_spawner.processes == []

    @pytest.mark.asyncio
    async def test_old_worker_detached(self, client, ctx, fake_spawner, tmp_path):
        await _post(client, "/api/start")
        old_worker = ctx.worker
        await _post(client, "/api/workspace/switch", {"path": str(tmp_path)})

        assert old_worker is not ctx.worker
        assert old_worker.listener_count("event") == 0


# =============================================================================
# Observer channel
# =============================================================================


class TestObserverChannel:
    """Test supervisor signals reaching observers over /ws."""

    @pytest.mark.asyncio
    async def test_handshake_reports_worker_status(self, client):
        ws = await client.ws_connect("/ws")
        message = await ws.receive_json(timeout=5)
        assert message["type"] == "connected"
        assert message["workerStatus"] == WorkerStatus.STOPPED.value
        await ws.close()

    @pytest.mark.asyncio
    async def test_worker_signals_forwarded(self, client, fake_spawner):
        ws = await client.ws_connect("/ws")
        await _receive_type(ws, "connected")

        await _post(client, "/api/start")
        assert (await _receive_type(ws, "status"))["status"] == "starting"
        assert (await _receive_type(ws, "status"))["status"] == "running"

        process = fake_spawner.last
        process.emit_stdout('{"type":"tick","n":1}\nplain text\n')
        event = await _receive_type(ws, "event")
        assert event["event"] == {"type": "tick", "n": 1}
        output = await _receive_type(ws, "output")
        assert output["line"] == "plain text"

        process.emit_stderr("warning: disk low\n")
        error = await _receive_type(ws, "error")
        assert "disk low" in error["error"]

        process.finish(3)
        exit_message = await _receive_type(ws, "exit")
        assert exit_message["code"] == 3
        assert exit_message["signal"] is None
        await ws.close()

    @pytest.mark.asyncio
    async def test_events_buffered_while_paused(self, client, fake_spawner):
        ws = await client.ws_connect("/ws")
        await _receive_type(ws, "connected")
        await _post(client, "/api/start")
        await _post(client, "/api/pause")

        fake_spawner.last.emit_stdout('{"type":"tick","n":7}\n')
        await _post(client, "/api/resume")

        # Buffered events follow the status change
        messages = []
        while True:
            message = await ws.receive_json(timeout=5)
            messages.append(message)
            if message["type"] == "event":
                break
        statuses = [m["status"] for m in messages if m["type"] == "status"]
        assert statuses[-2:] == ["paused", "running"]
        assert messages[-1]["event"]["n"] == 7
        await ws.close()

    @pytest.mark.asyncio
    async def test_conversation_forwarded(self, client, chat_spawner):
        ws = await client.ws_connect("/ws")
        await _receive_type(ws, "connected")

        await _post(client, "/api/task-chat/message", {"message": "hello"})
        assert (await _receive_type(ws, "chat:status"))["status"] == "processing"
        user = await _receive_type(ws, "chat:message")
        assert user["message"]["role"] == "user"

        await _until(lambda: len(chat_spawner.processes) == 1)
        process = chat_spawner.last
        process.emit_stdout(
            json.dumps({
                "type": "content_block_delta",
                "delta": {"type": "text_delta", "text": "Hel"},
            })
            + "\n"
        )
        assert (await _receive_type(ws, "chat:chunk"))["text"] == "Hel"

        process.emit_stdout(json.dumps({"type": "result", "result": "Hello"}) + "\n")
        process.finish(0)
        reply = await _receive_type(ws, "chat:message")
        assert reply["message"]["role"] == "assistant"
        assert reply["message"]["content"] == "Hello"
        assert (await _receive_type(ws, "chat:status"))["status"] == "idle"
        await ws.close()

    @pytest.mark.asyncio
    async def test_chat_message_requires_running_worker(self, client, fake_spawner):
        ws = await client.ws_connect("/ws")
        await _receive_type(ws, "connected")

        await ws.send_json({"type": "chat_message", "message": "hi"})
        error = await _receive_type(ws, "error")
        assert error["error"] == "Worker is not running"
        assert fake_spawner.processes == []
        await ws.close()

    @pytest.mark.asyncio
    async def test_chat_message_requires_text(self, client):
        ws = await client.ws_connect("/ws")
        await _receive_type(ws, "connected")

        await ws.send_json({"type": "chat_message"})
        error = await _receive_type(ws, "error")
        assert error["error"] == "Message is required"
        await ws.close()

    @pytest.mark.asyncio
    async def test_chat_message_relayed_to_worker(self, client, fake_spawner):
        sender = await client.ws_connect("/ws")
        other = await client.ws_connect("/ws")
        await _receive_type(sender, "connected")
        await _receive_type(other, "connected")
        await _post(client, "/api/start")

        await sender.send_json({"type": "chat_message", "message": "focus on tests"})

        for ws in (sender, other):
            echoed = await _receive_type(ws, "user_message")
            assert echoed["message"] == "focus on tests"
        assert fake_spawner.last.messages == [
            {"type": "user_message", "content": "focus on tests"}
        ]
        await sender.close()
        await other.close()
