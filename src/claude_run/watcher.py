"""Debounced watcher for the history log and transcript files.

Uses watchfiles to observe two places: the top of the Claude directory (not
recursively) for ``history.jsonl``, and the ``projects`` tree for transcripts.
Raw events are debounced per path, so a burst of appends to one transcript
produces a single notification, then dispatched to the callbacks given at
construction:

- ``on_history_change()`` when ``history.jsonl`` changes,
- ``on_session_change(session_id, path)`` and ``on_project_change(project_dir)``
  when ``projects/<project_dir>/<session_id>.jsonl`` is added or modified.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable

from watchfiles import Change, awatch

from .config import HISTORY_FILENAME, WATCH_DEBOUNCE_MS, get_projects_dir
from .file_index import TRANSCRIPT_SUFFIX, is_transcript_name

logger = logging.getLogger(__name__)


class ClaudeDirFilter:
    """watchfiles filter passing only the history log and transcripts.

    Transcripts sit exactly two levels below the root: ``projects/<dir>/<id>.jsonl``.
    Deletions are dropped; a removed file has nothing new to show. The creation
    of the ``projects`` directory itself also passes.
    """

    def __init__(self, claude_dir: Path):
        self.history_path = claude_dir / HISTORY_FILENAME
        self.projects_dir = get_projects_dir(claude_dir)

    def __call__(self, change: Change, path: str) -> bool:
        if change == Change.deleted:
            return False
        p = Path(path)
        if p == self.history_path:
            return True
        if p == self.projects_dir:
            return change == Change.added
        return is_transcript_name(p.name) and p.parent.parent == self.projects_dir


class ChangeWatcher:
    """Watches the Claude directory; ``stopped -> running -> stopped``."""

    def __init__(
        self,
        claude_dir: Path,
        on_history_change: Callable[[], None],
        on_session_change: Callable[[str, Path], None],
        on_project_change: Callable[[str], None],
        debounce_ms: int = WATCH_DEBOUNCE_MS,
        force_polling: bool = False,
    ):
        self.claude_dir = Path(claude_dir).resolve()
        self.projects_dir = get_projects_dir(self.claude_dir)
        self.debounce_ms = debounce_ms
        self.force_polling = force_polling
        self._on_history_change = on_history_change
        self._on_session_change = on_session_change
        self._on_project_change = on_project_change
        self._filter = ClaudeDirFilter(self.claude_dir)
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._stop_event: asyncio.Event | None = None
        self._root_task: asyncio.Task | None = None
        self._projects_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        if not self.claude_dir.is_dir():
            logger.warning("Not watching %s: directory does not exist", self.claude_dir)
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._root_task = asyncio.create_task(self._watch_loop(self.claude_dir, recursive=False))
        if self.projects_dir.is_dir():
            self._watch_projects()
        else:
            logger.info("No projects directory yet under %s", self.claude_dir)
        logger.info("Watching %s for changes", self.claude_dir)

    async def stop(self) -> None:
        """Stop watching. Pending debounced notifications are discarded."""
        self._running = False
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._stop_event is not None:
            self._stop_event.set()
        for task in (self._root_task, self._projects_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._root_task = None
        self._projects_task = None
        self._stop_event = None

    def handle_raw_change(self, path: str) -> None:
        """Restart the debounce timer for ``path``."""
        if not self._running:
            return
        if Path(path) == self.projects_dir:
            if self._projects_task is None:
                self._watch_projects()
            return
        existing = self._timers.pop(path, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[path] = loop.call_later(self.debounce_ms / 1000, self._fire, path)

    def _watch_projects(self) -> None:
        self._projects_task = asyncio.create_task(
            self._watch_loop(self.projects_dir, recursive=True)
        )

    async def _watch_loop(self, target: Path, recursive: bool) -> None:
        try:
            async for changes in awatch(
                target,
                watch_filter=self._filter,
                stop_event=self._stop_event,
                force_polling=self.force_polling,
                recursive=recursive,
                step=50,
            ):
                for _change, path in changes:
                    self.handle_raw_change(path)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("File watcher for %s stopped unexpectedly", target, exc_info=True)

    def _fire(self, path: str) -> None:
        self._timers.pop(path, None)
        if not self._running:
            return
        try:
            self._dispatch(Path(path))
        except Exception:
            logger.warning("Change handler failed for %s", path, exc_info=True)

    def _dispatch(self, path: Path) -> None:
        if path.name == HISTORY_FILENAME and path.parent == self.claude_dir:
            self._on_history_change()
        elif path.name.endswith(TRANSCRIPT_SUFFIX):
            session_id = path.name[: -len(TRANSCRIPT_SUFFIX)]
            self._on_session_change(session_id, path)
            self._on_project_change(path.parent.name)
