"""Token accounting per transcript, cached against the file's size and mtime."""

import asyncio
import json
import logging
import os
from pathlib import Path

from .cache import ValidatedCache, stat_validator
from .core import SessionTokens, TokenUsage

logger = logging.getLogger(__name__)


def compute_session_tokens(path: Path) -> SessionTokens:
    """Stream a transcript and total its usage records.

    Only the latest usage record and a running output sum are kept, so memory
    stays flat for large transcripts. Raises OSError if the file is unreadable.
    """
    last: TokenUsage | None = None
    output_total = 0

    with path.open(encoding="utf-8", errors="replace") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            message = entry.get("message") if isinstance(entry, dict) else None
            usage = message.get("usage") if isinstance(message, dict) else None
            if not isinstance(usage, dict):
                continue
            last = TokenUsage.from_dict(usage)
            output_total += last.output_tokens

    if last is None:
        return SessionTokens(output_tokens=output_total)
    return SessionTokens(
        input_tokens=last.context_tokens,
        output_tokens=output_total,
        cache_creation_tokens=last.cache_creation_input_tokens,
        cache_read_tokens=last.cache_read_input_tokens,
    )


def _stat_stamp(path: Path) -> tuple[int, int]:
    st = os.stat(path)
    return st.st_size, st.st_mtime_ns


class TokenCache:
    """Caches :class:`SessionTokens` per session id.

    An entry is reused only while the transcript's size and modification time
    both match the values seen when it was computed.
    """

    def __init__(self):
        self._cache: ValidatedCache[str, SessionTokens] = ValidatedCache(stat_validator)

    async def get(self, session_id: str, path: Path) -> SessionTokens | None:
        try:
            stamp = await asyncio.to_thread(_stat_stamp, path)
        except OSError as e:
            logger.debug("Cannot stat transcript %s: %s", path, e)
            return None

        cached = self._cache.get(session_id, stamp)
        if cached is not None:
            return cached

        try:
            tokens = await asyncio.to_thread(compute_session_tokens, path)
        except OSError as e:
            logger.warning("Failed to read transcript %s: %s", path, e)
            return None
        self._cache.put(session_id, tokens, stamp)
        return tokens

    def invalidate(self, session_id: str | None = None) -> None:
        self._cache.invalidate(session_id)
