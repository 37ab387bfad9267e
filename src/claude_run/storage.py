"""Session, project and conversation access over a Claude directory.

Reads ``history.jsonl`` and ``projects/*/*.jsonl``. Nothing here writes to
those files; the only file written is the archived-sessions sidecar.

Blocking filesystem work runs in worker threads that only return values. All
index and cache updates happen back on the event loop.
"""

import asyncio
import logging
import os
from pathlib import Path

from .archive import ArchiveStore
from .cache import RequestCoalescer
from .config import (
    DEFAULT_HISTORY_TTL,
    SEARCH_MAX_RESULTS,
    get_archive_path,
    get_claude_dir,
    get_history_path,
    get_projects_dir,
)
from .core import (
    ConversationMessage,
    HistoryEntry,
    SearchResult,
    Session,
    SessionTokens,
    StreamResult,
)
from .file_index import FileIndex, TRANSCRIPT_SUFFIX, is_transcript_name
from .history import HistoryCache
from .paths import encode_project_path, get_project_name, resolve_project_path
from .reader import (
    read_conversation,
    read_conversation_stream,
    read_first_timestamp,
    search_transcript,
)
from .tokens import TokenCache

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3
MATCHES_PER_SESSION = 3


def find_session_by_timestamp(project_dir: Path, timestamp: int) -> str | None:
    """Guess which transcript a history entry without ``sessionId`` belongs to.

    Picks the transcript whose mtime (in ms) is closest to ``timestamp``; ties
    go to the first file in directory order. This is a heuristic for older
    history formats, not a guaranteed match.
    """
    closest: str | None = None
    closest_diff = float("inf")
    try:
        entries = list(os.scandir(project_dir))
    except OSError:
        return None

    for entry in entries:
        if not is_transcript_name(entry.name):
            continue
        try:
            mtime_ms = entry.stat().st_mtime_ns / 1_000_000
        except OSError:
            continue
        diff = abs(mtime_ms - timestamp)
        if diff < closest_diff:
            closest_diff = diff
            closest = entry.name[: -len(TRANSCRIPT_SUFFIX)]
    return closest


def _read_first_timestamps(paths: dict[str, Path]) -> dict[str, int]:
    found = {}
    for session_id, path in paths.items():
        ts = read_first_timestamp(path)
        if ts is not None:
            found[session_id] = ts
    return found


class ClaudeStorage:
    """Facade over the file index, caches and readers for one Claude directory."""

    def __init__(self, claude_dir: Path | None = None, history_ttl: float = DEFAULT_HISTORY_TTL):
        self.claude_dir = Path(claude_dir) if claude_dir else get_claude_dir()
        self.projects_dir = get_projects_dir(self.claude_dir)
        self.file_index = FileIndex(self.projects_dir)
        self.history = HistoryCache(get_history_path(self.claude_dir), ttl_seconds=history_ttl)
        self.tokens = TokenCache()
        self.archive = ArchiveStore(get_archive_path(self.claude_dir))
        self._coalescer = RequestCoalescer()
        self._rescan_interval = history_ttl
        # Process lifetime; a transcript's first line is never rewritten.
        self._first_timestamps: dict[str, int] = {}

    async def load(self) -> None:
        """Warm the file index and history cache, and read archived ids."""
        await asyncio.gather(
            self.file_index.build(),
            self.history.get_entries(),
            asyncio.to_thread(self.archive.load),
        )
        logger.info(
            "Loaded %d transcripts from %s", len(self.file_index), self.projects_dir
        )

    # ── Sessions & projects ──────────────────────────────────────────

    async def get_sessions(self, include_archived: bool = False) -> list[Session]:
        """Sessions from the history log, newest first.

        Concurrent calls with the same flag share one execution.
        """
        return await self._coalescer.coalesce(
            f"sessions:{include_archived}",
            lambda: self._load_sessions(include_archived),
        )

    async def _load_sessions(self, include_archived: bool) -> list[Session]:
        entries = await self.history.get_entries()
        sessions: list[Session] = []
        seen: set[str] = set()

        for entry in entries:
            session_id = entry.session_id or await self._resolve_session_id(entry)
            if not session_id or session_id in seen:
                continue
            seen.add(session_id)

            archived = session_id in self.archive
            if archived and not include_archived:
                continue

            sessions.append(Session(
                id=session_id,
                display=entry.display,
                timestamp=entry.timestamp,
                project=entry.project,
                project_name=get_project_name(entry.project),
                archived=archived,
            ))

        await self._annotate_first_timestamps(sessions)
        sessions.sort(key=lambda s: s.timestamp, reverse=True)
        return sessions

    async def _resolve_session_id(self, entry: HistoryEntry) -> str | None:
        project_dir = self.projects_dir / encode_project_path(entry.project)
        return await asyncio.to_thread(find_session_by_timestamp, project_dir, entry.timestamp)

    async def _transcript_paths(self, session_ids: list[str]) -> dict[str, Path]:
        """Known transcript paths for ``session_ids``.

        Any unknown id triggers one rescan, at most once per history TTL.
        """
        if any(self.file_index.get(sid) is None for sid in session_ids):
            await self.file_index.rescan_if_stale(self._rescan_interval)
        paths = {}
        for sid in session_ids:
            path = self.file_index.get(sid)
            if path is not None:
                paths[sid] = path
        return paths

    async def _annotate_first_timestamps(self, sessions: list[Session]) -> None:
        missing = await self._transcript_paths(
            [s.id for s in sessions if s.id not in self._first_timestamps]
        )
        if missing:
            self._first_timestamps.update(
                await asyncio.to_thread(_read_first_timestamps, missing)
            )
        for s in sessions:
            s.first_timestamp = self._first_timestamps.get(s.id)

    async def get_session(self, session_id: str) -> Session | None:
        """Return one listed session, archived or not."""
        for session in await self.get_sessions(include_archived=True):
            if session.id == session_id:
                return session
        return None

    async def get_projects(self) -> list[str]:
        """Distinct project paths from the history log, sorted."""
        entries = await self.history.get_entries()
        return sorted({e.project for e in entries if e.project})

    async def resolve_project(self, project_dir: str) -> str:
        """Map a ``projects/`` directory name back to a project path."""
        known = await self.get_projects()
        sample = None
        for _, path in self.file_index.items():
            if path.parent.name == project_dir:
                sample = path
                break
        if sample is None:
            return resolve_project_path(project_dir, known)
        return await asyncio.to_thread(resolve_project_path, project_dir, known, sample)

    # ── Conversations ────────────────────────────────────────────────

    async def get_conversation(self, session_id: str) -> list[ConversationMessage]:
        return await self._coalescer.coalesce(
            f"conversation:{session_id}",
            lambda: self._load_conversation(session_id),
        )

    async def _load_conversation(self, session_id: str) -> list[ConversationMessage]:
        path = await self.file_index.lookup(session_id)
        if path is None:
            return []
        return await asyncio.to_thread(read_conversation, path)

    async def get_conversation_stream(self, session_id: str, from_offset: int = 0) -> StreamResult:
        """Messages appended to a transcript since ``from_offset`` bytes."""
        path = await self.file_index.lookup(session_id)
        if path is None:
            return StreamResult(messages=[], next_offset=0)
        return await asyncio.to_thread(read_conversation_stream, path, from_offset)

    async def get_session_tokens(self, session_id: str) -> SessionTokens | None:
        return await self._coalescer.coalesce(
            f"tokens:{session_id}",
            lambda: self._load_tokens(session_id),
        )

    async def _load_tokens(self, session_id: str) -> SessionTokens | None:
        path = await self.file_index.lookup(session_id)
        if path is None:
            return None
        return await self.tokens.get(session_id, path)

    # ── Search ───────────────────────────────────────────────────────

    async def search_sessions(
        self, query: str, max_results: int = SEARCH_MAX_RESULTS
    ) -> list[SearchResult]:
        """Find sessions whose messages contain ``query``, newest first.

        Queries of two characters or fewer match nothing. Each result carries
        at most three matching snippets.
        """
        if not query or len(query) < MIN_QUERY_LENGTH or max_results <= 0:
            return []

        sessions = await self.get_sessions()
        paths = await self._transcript_paths([s.id for s in sessions])

        results: list[SearchResult] = []
        for session in sessions:
            if len(results) >= max_results:
                break
            path = paths.get(session.id)
            if path is None:
                continue
            matches = await asyncio.to_thread(
                search_transcript, path, query, MATCHES_PER_SESSION
            )
            if matches:
                results.append(SearchResult(
                    session_id=session.id,
                    display=session.display,
                    project_name=session.project_name,
                    project=session.project,
                    timestamp=session.timestamp,
                    matches=matches,
                ))

        results.sort(key=lambda r: r.timestamp, reverse=True)
        return results

    # ── Archive ──────────────────────────────────────────────────────

    async def archive_session(self, session_id: str) -> None:
        await self.archive.archive(session_id)

    async def unarchive_session(self, session_id: str) -> None:
        await self.archive.unarchive(session_id)

    def is_archived(self, session_id: str) -> bool:
        return session_id in self.archive

    # ── Invalidation hooks (driven by the watcher) ───────────────────

    def invalidate_history(self) -> None:
        self.history.invalidate()

    def invalidate_tokens(self, session_id: str | None = None) -> None:
        self.tokens.invalidate(session_id)

    def add_to_file_index(self, session_id: str, path: Path) -> None:
        self.file_index.add(session_id, path)
