"""Archived-session ids, persisted in a sidecar JSON file we own."""

import asyncio
import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class ArchiveStore:
    """Set of archived session ids backed by a JSON array on disk.

    The whole file is rewritten on every change. Saves run one at a time and
    each replaces the file atomically, so it always holds a complete array.
    """

    def __init__(self, path: Path):
        self.path = path
        self._ids: set[str] = set()
        self._lock = asyncio.Lock()

    def load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable archive file %s: %s", self.path, e)
            return

        if not isinstance(data, list):
            logger.warning("Ignoring archive file %s: expected a JSON array", self.path)
            return
        self._ids = {i for i in data if isinstance(i, str)}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._ids

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._ids)

    async def archive(self, session_id: str) -> None:
        self._ids.add(session_id)
        await self._save()

    async def unarchive(self, session_id: str) -> None:
        self._ids.discard(session_id)
        await self._save()

    async def _save(self) -> None:
        async with self._lock:
            payload = json.dumps(sorted(self._ids))
            try:
                await asyncio.to_thread(self._write, payload)
            except OSError as e:
                logger.warning("Failed to write archive file %s: %s", self.path, e)

    def _write(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self.path)
