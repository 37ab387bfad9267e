"""FastAPI web server for claude-run."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, Response, StreamingResponse

from . import __version__
from .config import (
    SEARCH_MAX_RESULTS,
    SSE_HEARTBEAT_SECONDS,
    get_claude_dir,
    get_history_ttl,
    is_watch_enabled,
    is_watch_polling,
)
from .core import SearchResult, Session, SessionTokens
from .events import HISTORY, PROJECT, SESSION, ChangeEvent, EventBroker
from .export import conversation_to_markdown, session_to_json, session_to_markdown
from .forks import build_branch, fork_points
from .storage import ClaudeStorage
from .watcher import ChangeWatcher

logger = logging.getLogger(__name__)

# Storage (created on first request) and the live-update broker
_storage: ClaudeStorage | None = None
_broker = EventBroker()


def _get_storage() -> ClaudeStorage:
    """Lazily create the storage facade for the configured Claude directory."""
    global _storage
    if _storage is None:
        _storage = ClaudeStorage(get_claude_dir(), history_ttl=get_history_ttl())
        logger.info("Reading Claude data from %s", _storage.claude_dir)
    return _storage


# ── Watcher callbacks ────────────────────────────────────────────


def _on_history_change() -> None:
    _get_storage().invalidate_history()
    _broker.publish(ChangeEvent(HISTORY))


def _on_session_change(session_id: str, path: Path) -> None:
    storage = _get_storage()
    storage.add_to_file_index(session_id, path)
    storage.invalidate_tokens(session_id)
    _broker.publish(ChangeEvent(SESSION, session_id))


def _on_project_change(project_dir: str) -> None:
    _broker.publish(ChangeEvent(PROJECT, project_dir))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load storage, then watch the Claude directory for the app's lifetime."""
    storage = _get_storage()
    await storage.load()

    watcher = None
    if is_watch_enabled():
        watcher = ChangeWatcher(
            storage.claude_dir,
            on_history_change=_on_history_change,
            on_session_change=_on_session_change,
            on_project_change=_on_project_change,
            force_polling=is_watch_polling(),
        )
        await watcher.start()

    yield

    if watcher is not None:
        await watcher.stop()
    logger.info("Shutdown complete")


app = FastAPI(title="claude-run", version=__version__, lifespan=lifespan)


# ── Serialization ────────────────────────────────────────────────


def _session_to_dict(session: Session) -> dict:
    """Convert a Session dataclass to a JSON-serializable dict."""
    return {
        "id": session.id,
        "display": session.display,
        "timestamp": session.timestamp,
        "firstTimestamp": session.first_timestamp,
        "project": session.project,
        "projectName": session.project_name,
        "archived": session.archived,
    }


def _tokens_to_dict(tokens: SessionTokens) -> dict:
    return {
        "inputTokens": tokens.input_tokens,
        "outputTokens": tokens.output_tokens,
        "cacheCreationTokens": tokens.cache_creation_tokens,
        "cacheReadTokens": tokens.cache_read_tokens,
    }


def _search_result_to_dict(result: SearchResult) -> dict:
    return {
        "sessionId": result.session_id,
        "display": result.display,
        "projectName": result.project_name,
        "project": result.project,
        "timestamp": result.timestamp,
        "matches": [{"text": m.text, "role": m.role} for m in result.matches],
    }


def _sse(event: str, data: Any, event_id: int | None = None) -> str:
    """Format one server-sent event."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, ensure_ascii=False)}")
    return "\n".join(lines) + "\n\n"


_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


async def _next_event(queue: asyncio.Queue) -> ChangeEvent | None:
    """Wait for a broker event; None after a heartbeat interval passes quietly."""
    try:
        return await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_SECONDS)
    except asyncio.TimeoutError:
        return None


def _drain(queue: asyncio.Queue) -> list[ChangeEvent]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ── Event streams ────────────────────────────────────────────────


async def session_events(request: Request, include_archived: bool) -> AsyncIterator[str]:
    """Stream the session list, then updates as the watcher reports changes.

    Sends ``sessions`` once with the full list, then ``sessionsUpdate`` with
    sessions that are new, changed, or whose transcript was appended to, and
    ``projectsUpdate`` when a project directory sees activity.
    """
    storage = _get_storage()
    queue = _broker.subscribe()
    try:
        sessions = await storage.get_sessions(include_archived)
        known = {s.id: _session_to_dict(s) for s in sessions}
        yield _sse("sessions", list(known.values()))

        while not await request.is_disconnected():
            event = await _next_event(queue)
            if event is None:
                yield ": heartbeat\n\n"
                continue

            events = [event] + _drain(queue)
            touched = {e.key for e in events if e.kind == SESSION}
            project_dirs = sorted({e.key for e in events if e.kind == PROJECT})

            sessions = await storage.get_sessions(include_archived)
            current = {s.id: _session_to_dict(s) for s in sessions}
            changed = [
                d for sid, d in current.items() if sid in touched or known.get(sid) != d
            ]
            known = current
            if changed:
                yield _sse("sessionsUpdate", changed)

            if project_dirs:
                projects = [
                    {"projectId": d, "project": await storage.resolve_project(d)}
                    for d in project_dirs
                ]
                yield _sse("projectsUpdate", projects)
    finally:
        _broker.unsubscribe(queue)


async def conversation_events(
    request: Request, session_id: str, offset: int
) -> AsyncIterator[str]:
    """Stream a transcript's messages from a byte offset, following appends.

    Each ``messages`` event carries the offset to resume from as its SSE id,
    so a reconnecting client sends it back as ``Last-Event-ID``.
    """
    storage = _get_storage()
    queue = _broker.subscribe()
    try:
        result = await storage.get_conversation_stream(session_id, offset)
        offset = result.next_offset
        yield _sse("messages", [m.raw for m in result.messages], event_id=offset)

        while not await request.is_disconnected():
            event = await _next_event(queue)
            if event is None:
                yield ": heartbeat\n\n"
                continue
            if not any(e.kind == SESSION and e.key == session_id for e in [event] + _drain(queue)):
                continue

            result = await storage.get_conversation_stream(session_id, offset)
            offset = result.next_offset
            if result.messages:
                yield _sse("messages", [m.raw for m in result.messages], event_id=offset)
    finally:
        _broker.unsubscribe(queue)


def _resume_offset(request: Request, offset: int) -> int:
    last_event_id = request.headers.get("last-event-id")
    if last_event_id:
        try:
            return max(0, int(last_event_id))
        except ValueError:
            pass
    return offset


# ── Routes ───────────────────────────────────────────────────────


@app.get("/")
async def index():
    """Serve the frontend."""
    html_path = Path(__file__).parent / "static" / "index.html"
    if not html_path.exists():
        raise HTTPException(status_code=404, detail="Frontend not found")
    return HTMLResponse(html_path.read_text(encoding="utf-8"))


@app.get("/api/sessions")
async def get_sessions(archived: bool = Query(False, description="Include archived sessions")):
    """Return sessions from the history log, newest first."""
    sessions = await _get_storage().get_sessions(include_archived=archived)
    return {
        "total": len(sessions),
        "sessions": [_session_to_dict(s) for s in sessions],
    }


@app.get("/api/sessions/stream")
async def stream_sessions(
    request: Request,
    archived: bool = Query(False, description="Include archived sessions"),
):
    """Server-sent events with the session list and its live updates."""
    return StreamingResponse(
        session_events(request, archived),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@app.get("/api/projects")
async def get_projects():
    """Return distinct project paths."""
    return await _get_storage().get_projects()


@app.get("/api/sessions/{session_id}/tokens")
async def get_session_tokens(session_id: str):
    tokens = await _get_storage().get_session_tokens(session_id)
    if tokens is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _tokens_to_dict(tokens)


@app.post("/api/sessions/{session_id}/archive")
async def archive_session(session_id: str):
    await _get_storage().archive_session(session_id)
    return {"id": session_id, "archived": True}


@app.delete("/api/sessions/{session_id}/archive")
async def unarchive_session(session_id: str):
    await _get_storage().unarchive_session(session_id)
    return {"id": session_id, "archived": False}


@app.get("/api/conversation/{session_id}")
async def get_conversation(session_id: str):
    """Return every message of a transcript, summaries first."""
    messages = await _get_storage().get_conversation(session_id)
    return [m.raw for m in messages]


@app.get("/api/conversation/{session_id}/stream")
async def stream_conversation(
    request: Request,
    session_id: str,
    offset: int = Query(0, ge=0, description="Byte offset to resume from"),
):
    """Server-sent events with messages appended to a transcript."""
    return StreamingResponse(
        conversation_events(request, session_id, _resume_offset(request, offset)),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@app.get("/api/conversation/{session_id}/forks")
async def get_forks(session_id: str):
    """List messages with more than one reply, and those replies in file order."""
    messages = await _get_storage().get_conversation(session_id)
    points = fork_points([m for m in messages if m.is_conversation])
    return [
        {"parentUuid": parent, "children": [c.uuid for c in children]}
        for parent, children in points.items()
    ]


@app.get("/api/conversation/{session_id}/export")
async def export_conversation(
    session_id: str,
    format: str = Query("md", description="Export format: md or json"),
    choice: list[str] = Query([], description="Fork choices as parentUuid:childUuid"),
):
    """Export the selected branch of a conversation as Markdown or JSON."""
    storage = _get_storage()
    messages = await storage.get_conversation(session_id)
    session = await storage.get_session(session_id)
    if not messages and session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    choices = dict(c.split(":", 1) for c in choice if ":" in c)
    branch = build_branch([m for m in messages if m.is_conversation], choices)
    filename = f"claude-run-{session_id[:8]}"

    if format == "json":
        return Response(
            content=session_to_json(session, branch),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}.json"'},
        )

    if session is not None:
        content = session_to_markdown(session, branch)
    else:
        content = conversation_to_markdown(branch)
    return Response(
        content=content,
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{filename}.md"'},
    )


@app.get("/api/search")
async def search(
    q: str = Query("", description="Case-insensitive substring to find"),
    limit: int = Query(SEARCH_MAX_RESULTS, ge=1, le=200),
):
    """Search transcripts; queries of two characters or fewer return nothing."""
    results = await _get_storage().search_sessions(q, max_results=limit)
    return [_search_result_to_dict(r) for r in results]
