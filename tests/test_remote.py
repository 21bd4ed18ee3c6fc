"""Tests for the remote control HTTP server."""

from __future__ import annotations

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from conftest import flush, tool_start
from sessiondeck.enums import ExecutionMode
from sessiondeck.events import Done
from sessiondeck.remote import create_app


@pytest_asyncio.fixture
async def client(pipeline):
    pipeline.set_preferences("s1", execution_mode=ExecutionMode.PLAN)
    async with TestClient(TestServer(create_app(pipeline))) as c:
        yield c


class TestSend:
    @pytest.mark.asyncio
    async def test_send_prompt(self, client, pipeline, engine):
        resp = await client.post("/sessions/s1/send", json={"text": "hello"})
        assert resp.status == 200
        data = await resp.json()
        assert data == {"status": "ok", "result": "dispatched"}

        await flush()
        assert engine.sent[0][1] == "hello"

    @pytest.mark.asyncio
    async def test_plain_text_body(self, client, engine):
        resp = await client.post("/sessions/s1/send", data="just text")
        assert resp.status == 200
        await flush()
        assert engine.sent[0][1] == "just text"

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, client, engine):
        resp = await client.post("/sessions/s1/send", json={"text": "  "})
        assert resp.status == 400
        assert (await resp.json())["error"] == "No text provided"

    @pytest.mark.asyncio
    async def test_slash_command(self, client, pipeline):
        resp = await client.post("/sessions/s1/send", json={"text": "/mode yolo"})
        assert resp.status == 200
        assert pipeline.view("s1").execution_mode == ExecutionMode.YOLO

    @pytest.mark.asyncio
    async def test_bad_slash_command(self, client):
        resp = await client.post("/sessions/s1/send", json={"text": "/mode turbo"})
        assert resp.status == 400
        assert "Invalid mode" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_missing_session_is_404(self, client, store):
        store.sessions["wt"] = []
        resp = await client.post(
            "/sessions/s1/send", json={"text": "hi", "worktree_id": "wt"}
        )
        assert resp.status == 404


class TestCommands:
    @pytest.mark.asyncio
    async def test_approve_plan(self, client, pipeline, engine):
        await client.post("/sessions/s1/send", json={"text": "plan it"})
        await flush()
        engine.emit(tool_start("p1", "ExitPlanMode", plan="1. go"), Done())
        await flush()

        resp = await client.get("/sessions/s1")
        view = await resp.json()
        assert view["pending_approval_kind"] == "plan"
        assert view["last_run_status"] == "resumable"

        resp = await client.post("/sessions/s1/commands", json={"type": "approve_plan"})
        assert (await resp.json()) == {"status": "ok", "result": True}
        await flush()
        assert engine.sent[-1][1] == "Approved"

    @pytest.mark.asyncio
    async def test_unknown_command(self, client):
        resp = await client.post("/sessions/s1/commands", json={"type": "reboot"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post("/sessions/s1/commands", data="{nope")
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_bad_preference_is_400(self, client):
        resp = await client.post(
            "/sessions/s1/commands",
            json={"type": "set_preferences", "changes": {"is_sending": True}},
        )
        assert resp.status == 400


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_lists_sessions(self, client):
        await client.post("/sessions/s1/send", json={"text": "hi"})
        await client.post("/sessions/s1/send", json={"text": "queued"})

        resp = await client.get("/status")
        sessions = (await resp.json())["sessions"]
        assert sessions == [
            {
                "id": "s1",
                "worktree_id": None,
                "is_sending": True,
                "execution_mode": "plan",
                "last_run_status": "running",
                "queue_length": 1,
                "pending_approval": None,
            }
        ]

    @pytest.mark.asyncio
    async def test_view_lists_queue(self, client):
        await client.post("/sessions/s1/send", json={"text": "hi"})
        await client.post("/sessions/s1/send", json={"text": "queued"})
        view = await (await client.get("/sessions/s1")).json()
        assert [m["text"] for m in view["queued"]] == ["queued"]
        assert view["queue_length"] == 1

    @pytest.mark.asyncio
    async def test_view_of_unknown_session_not_registered(self, client, pipeline):
        resp = await client.get("/sessions/ghost")
        assert resp.status == 200
        assert (await resp.json())["last_run_status"] == "idle"
        assert "ghost" not in pipeline.registry

        sessions = (await (await client.get("/status")).json())["sessions"]
        assert [s["id"] for s in sessions] == ["s1"]

    @pytest.mark.asyncio
    async def test_wait_idle(self, client, engine):
        await client.post("/sessions/s1/send", json={"text": "hi"})
        await flush()
        engine.emit(Done())
        resp = await client.get("/sessions/s1/wait_idle?timeout=1")
        assert resp.status == 200
        assert (await resp.json()) == {"status": "idle"}

    @pytest.mark.asyncio
    async def test_wait_idle_timeout(self, client):
        await client.post("/sessions/s1/send", json={"text": "hi"})
        resp = await client.get("/sessions/s1/wait_idle?timeout=0.05")
        assert resp.status == 408

    @pytest.mark.asyncio
    async def test_wait_idle_bad_timeout(self, client):
        resp = await client.get("/sessions/s1/wait_idle?timeout=soon")
        assert resp.status == 400
