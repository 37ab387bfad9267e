"""Tests for the FastAPI server."""

import json

import pytest
from httpx import ASGITransport, AsyncClient

import claude_run.server as srv
from claude_run.events import PROJECT, SESSION, ChangeEvent
from claude_run.server import app

from conftest import PROJECT_DIR, PROJECT_PATH, append_jsonl


@pytest.fixture(autouse=True)
def reset_storage():
    """Reset the storage singleton before each test."""
    srv._storage = None
    yield
    srv._storage = None


@pytest.fixture(autouse=True)
def use_claude_dir(claude_dir, monkeypatch):
    monkeypatch.setenv("CLAUDE_RUN_DIR", str(claude_dir))
    monkeypatch.setenv("CLAUDE_RUN_HISTORY_TTL", "0")
    return claude_dir


@pytest.fixture
def client():
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


class StubRequest:
    """Stands in for a Starlette request inside the event generators."""

    def __init__(self, headers=None):
        self.headers = headers or {}
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


def _parse_sse(chunk):
    fields = {}
    for line in chunk.strip().split("\n"):
        name, _, value = line.partition(": ")
        fields[name] = value
    if "data" in fields:
        fields["data"] = json.loads(fields["data"])
    return fields


class TestRoutes:
    @pytest.mark.asyncio
    async def test_index(self, client):
        async with client:
            resp = await client.get("/")
        assert resp.status_code == 200
        assert "claude-run" in resp.text

    @pytest.mark.asyncio
    async def test_get_sessions(self, client):
        async with client:
            resp = await client.get("/api/sessions")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        first = data["sessions"][0]
        assert first["id"] == "session-002"
        assert first["projectName"] == "myapp"
        assert first["archived"] is False
        assert "firstTimestamp" in first

    @pytest.mark.asyncio
    async def test_archive_roundtrip(self, client):
        async with client:
            resp = await client.post("/api/sessions/session-001/archive")
            assert resp.json() == {"id": "session-001", "archived": True}
            assert (await client.get("/api/sessions")).json()["total"] == 1
            archived = (await client.get("/api/sessions", params={"archived": "true"})).json()
            assert archived["total"] == 2

            await client.delete("/api/sessions/session-001/archive")
            assert (await client.get("/api/sessions")).json()["total"] == 2

    @pytest.mark.asyncio
    async def test_get_projects(self, client):
        async with client:
            resp = await client.get("/api/projects")
        assert resp.json() == [PROJECT_PATH]

    @pytest.mark.asyncio
    async def test_get_conversation(self, client):
        async with client:
            resp = await client.get("/api/conversation/session-001")
        messages = resp.json()
        assert [m["type"] for m in messages] == ["summary", "user", "assistant", "user", "assistant"]
        assert messages[1]["uuid"] == "uuid-001"

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_empty(self, client):
        async with client:
            resp = await client.get("/api/conversation/nope")
        assert resp.status_code == 200
        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_tokens(self, client):
        async with client:
            resp = await client.get("/api/sessions/session-001/tokens")
            missing = await client.get("/api/sessions/nope/tokens")
        assert resp.json() == {
            "inputTokens": 165,
            "outputTokens": 50,
            "cacheCreationTokens": 5,
            "cacheReadTokens": 150,
        }
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_search(self, client):
        async with client:
            resp = await client.get("/api/search", params={"q": "auth"})
            short = await client.get("/api/search", params={"q": "au"})
        results = resp.json()
        assert [r["sessionId"] for r in results] == ["session-001"]
        assert results[0]["matches"][0]["role"] == "user"
        assert short.json() == []

    @pytest.mark.asyncio
    async def test_search_limit_validated(self, client):
        async with client:
            resp = await client.get("/api/search", params={"q": "the", "limit": 0})
        assert resp.status_code == 422


class TestExport:
    @pytest.mark.asyncio
    async def test_markdown(self, client):
        async with client:
            resp = await client.get("/api/conversation/session-001/export")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/markdown")
        assert 'filename="claude-run-session-.md"' in resp.headers["content-disposition"]
        assert resp.text.startswith("# Help me refactor the auth module")
        assert "**[Tool: Bash]**" in resp.text

    @pytest.mark.asyncio
    async def test_json(self, client):
        async with client:
            resp = await client.get("/api/conversation/session-002/export", params={"format": "json"})
        data = json.loads(resp.text)
        assert data["session"]["id"] == "session-002"
        assert [m["uuid"] for m in data["messages"]] == ["uuid-101", "uuid-102"]

    @pytest.mark.asyncio
    async def test_fork_choice(self, client, claude_dir):
        append_jsonl(claude_dir / "projects" / PROJECT_DIR / "session-002.jsonl", [{
            "type": "assistant", "uuid": "uuid-103", "parentUuid": "uuid-101",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Retried answer"}]},
        }])
        async with client:
            latest = await client.get("/api/conversation/session-002/export", params={"format": "json"})
            chosen = await client.get(
                "/api/conversation/session-002/export",
                params={"format": "json", "choice": "uuid-101:uuid-102"},
            )
        assert [m["uuid"] for m in json.loads(latest.text)["messages"]] == ["uuid-101", "uuid-103"]
        assert [m["uuid"] for m in json.loads(chosen.text)["messages"]] == ["uuid-101", "uuid-102"]

    @pytest.mark.asyncio
    async def test_forks_listed_for_branch_export(self, client, claude_dir):
        append_jsonl(claude_dir / "projects" / PROJECT_DIR / "session-002.jsonl", [{
            "type": "assistant", "uuid": "uuid-103", "parentUuid": "uuid-101",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Retried answer"}]},
        }])
        async with client:
            forks = await client.get("/api/conversation/session-002/forks")
            linear = await client.get("/api/conversation/session-001/forks")
        assert forks.json() == [{"parentUuid": "uuid-101", "children": ["uuid-102", "uuid-103"]}]
        assert linear.json() == []

    @pytest.mark.asyncio
    async def test_unknown_session(self, client):
        async with client:
            resp = await client.get("/api/conversation/nope/export")
        assert resp.status_code == 404


class TestConversationEvents:
    @pytest.mark.asyncio
    async def test_initial_batch_then_appends(self, claude_dir):
        request = StubRequest()
        events = srv.conversation_events(request, "session-002", 0)
        first = _parse_sse(await events.__anext__())
        assert first["event"] == "messages"
        assert [m["uuid"] for m in first["data"]] == ["uuid-101", "uuid-102"]

        path = claude_dir / "projects" / PROJECT_DIR / "session-002.jsonl"
        assert int(first["id"]) == path.stat().st_size
        append_jsonl(path, [{"type": "user", "uuid": "uuid-103", "message": {"role": "user", "content": "next"}}])
        srv._broker.publish(ChangeEvent(SESSION, "other-session"))
        srv._broker.publish(ChangeEvent(SESSION, "session-002"))

        second = _parse_sse(await events.__anext__())
        assert [m["uuid"] for m in second["data"]] == ["uuid-103"]
        assert int(second["id"]) == path.stat().st_size
        await events.aclose()
        assert srv._broker.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_resume_from_offset(self, claude_dir):
        path = claude_dir / "projects" / PROJECT_DIR / "session-002.jsonl"
        size = path.stat().st_size
        events = srv.conversation_events(StubRequest(), "session-002", size)
        first = _parse_sse(await events.__anext__())
        assert first["data"] == []
        assert int(first["id"]) == size
        await events.aclose()

    @pytest.mark.asyncio
    async def test_heartbeat(self, monkeypatch):
        monkeypatch.setattr(srv, "SSE_HEARTBEAT_SECONDS", 0.01)
        events = srv.conversation_events(StubRequest(), "session-002", 0)
        await events.__anext__()
        assert await events.__anext__() == ": heartbeat\n\n"
        await events.aclose()

    @pytest.mark.asyncio
    async def test_stops_when_client_disconnects(self):
        request = StubRequest()
        events = srv.conversation_events(request, "session-002", 0)
        await events.__anext__()
        request.disconnected = True
        with pytest.raises(StopAsyncIteration):
            await events.__anext__()
        assert srv._broker.subscriber_count == 0

    def test_last_event_id_overrides_offset(self):
        assert srv._resume_offset(StubRequest({"last-event-id": "42"}), 0) == 42
        assert srv._resume_offset(StubRequest({"last-event-id": "junk"}), 7) == 7
        assert srv._resume_offset(StubRequest(), 7) == 7


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_initial_list_and_updates(self):
        events = srv.session_events(StubRequest(), False)
        first = _parse_sse(await events.__anext__())
        assert first["event"] == "sessions"
        assert [s["id"] for s in first["data"]] == ["session-002", "session-001"]

        srv._broker.publish(ChangeEvent(SESSION, "session-001"))
        update = _parse_sse(await events.__anext__())
        assert update["event"] == "sessionsUpdate"
        assert [s["id"] for s in update["data"]] == ["session-001"]

        srv._broker.publish(ChangeEvent(PROJECT, PROJECT_DIR))
        projects = _parse_sse(await events.__anext__())
        assert projects["event"] == "projectsUpdate"
        assert projects["data"] == [{"projectId": PROJECT_DIR, "project": PROJECT_PATH}]
        await events.aclose()

    @pytest.mark.asyncio
    async def test_new_history_entry_is_announced(self, claude_dir):
        events = srv.session_events(StubRequest(), False)
        await events.__anext__()

        append_jsonl(claude_dir / "history.jsonl", [{
            "display": "brand new", "timestamp": 1737500000000,
            "project": PROJECT_PATH, "sessionId": "session-003",
        }])
        srv._on_history_change()
        update = _parse_sse(await events.__anext__())
        assert [s["id"] for s in update["data"]] == ["session-003"]
        await events.aclose()


class TestWatcherCallbacks:
    @pytest.mark.asyncio
    async def test_session_change_updates_index_and_tokens(self, claude_dir):
        storage = srv._get_storage()
        path = claude_dir / "projects" / PROJECT_DIR / "session-001.jsonl"
        before = await storage.get_session_tokens("session-001")

        append_jsonl(path, [{"type": "assistant", "message": {
            "role": "assistant", "content": "", "usage": {"input_tokens": 1, "output_tokens": 9},
        }}])
        queue = srv._broker.subscribe()
        try:
            srv._on_session_change("session-001", path)
            assert queue.get_nowait() == ChangeEvent(SESSION, "session-001")
        finally:
            srv._broker.unsubscribe(queue)
        after = await storage.get_session_tokens("session-001")
        assert after.output_tokens == before.output_tokens + 9
