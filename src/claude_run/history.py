"""Time-bounded cache over the append-only history log."""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable

from .cache import TTLCache
from .core import HistoryEntry

logger = logging.getLogger(__name__)

_KEY = "history"


def load_history(path: Path) -> list[HistoryEntry]:
    """Parse the history log in file order.

    Malformed lines are skipped. A missing file yields ``[]``; so does an
    unreadable one, after logging why.
    """
    entries: list[HistoryEntry] = []
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(HistoryEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.debug("Skipping history line %s:%d: %s", path, line_num, e)
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.warning("Failed to read history %s: %s", path, e)
        return []
    return entries


class HistoryCache:
    """Serves history entries, re-reading the log once the TTL has lapsed."""

    def __init__(
        self,
        path: Path,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = path
        self._cache: TTLCache[str, list[HistoryEntry]] = TTLCache(ttl_seconds, clock=clock)

    async def get_entries(self) -> list[HistoryEntry]:
        entries = self._cache.get(_KEY)
        if entries is not None:
            return entries
        entries = await asyncio.to_thread(load_history, self.path)
        self._cache.put(_KEY, entries)
        return entries

    def invalidate(self) -> None:
        self._cache.invalidate()
