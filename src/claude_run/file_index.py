"""Index from session id to transcript path.

Transcripts live at ``projects/<encoded project>/<session id>.jsonl``. The index
is filled by a full directory scan, extended lazily on lookup misses, and can be
seeded directly when the watcher sees a new file.
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

TRANSCRIPT_SUFFIX = ".jsonl"


def is_transcript_name(filename: str) -> bool:
    """True for ``<id>.jsonl`` names, excluding hidden and resource-fork files."""
    return filename.endswith(TRANSCRIPT_SUFFIX) and not filename.startswith(".")


def scan_transcripts(projects_dir: Path) -> dict[str, Path]:
    """Return ``{session_id: path}`` for every transcript under ``projects_dir``.

    A missing projects directory yields an empty mapping; unreadable project
    directories are skipped.
    """
    found: dict[str, Path] = {}
    try:
        project_dirs = [e for e in os.scandir(projects_dir) if e.is_dir()]
    except FileNotFoundError:
        return found
    except OSError as e:
        logger.warning("Cannot scan projects directory %s: %s", projects_dir, e)
        return found

    for project_dir in project_dirs:
        try:
            for entry in os.scandir(project_dir.path):
                if is_transcript_name(entry.name) and entry.is_file():
                    found[entry.name[: -len(TRANSCRIPT_SUFFIX)]] = Path(entry.path)
        except OSError as e:
            logger.debug("Skipping project directory %s: %s", project_dir.path, e)
    return found


class FileIndex:
    """Process-wide map of session ids to transcript files."""

    def __init__(self, projects_dir: Path, clock: Callable[[], float] = time.monotonic):
        self.projects_dir = projects_dir
        self._paths: dict[str, Path] = {}
        self._clock = clock
        self._built_at: float | None = None

    async def build(self) -> None:
        """Scan every project directory and merge the results.

        The scan runs in a worker thread; the merge happens on the event loop,
        so concurrent scans only ever overwrite entries with the same value.
        """
        found = await asyncio.to_thread(scan_transcripts, self.projects_dir)
        self._paths.update(found)
        self._built_at = self._clock()
        logger.debug("Indexed %d transcripts under %s", len(found), self.projects_dir)

    async def lookup(self, session_id: str) -> Path | None:
        """Return the transcript path, scanning once on a miss."""
        path = self._paths.get(session_id)
        if path is not None:
            return path
        await self.build()
        return self._paths.get(session_id)

    async def rescan_if_stale(self, max_age: float) -> bool:
        """Rescan unless the last scan finished less than ``max_age`` seconds ago."""
        if self._built_at is not None and self._clock() - self._built_at < max_age:
            return False
        await self.build()
        return True

    def get(self, session_id: str) -> Path | None:
        return self._paths.get(session_id)

    def add(self, session_id: str, path: Path) -> None:
        self._paths[session_id] = Path(path)

    def items(self) -> list[tuple[str, Path]]:
        return list(self._paths.items())

    def __len__(self) -> int:
        return len(self._paths)
