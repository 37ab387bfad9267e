"""Readers over a session transcript.

Transcripts are appended to by Claude Code while we read them. Lines are never
rewritten, so any fully written byte range reads the same every time. The
incremental reader relies on that to resume from a byte offset.
"""

import json
import logging
import os
from pathlib import Path

from .core import ConversationMessage, SearchMatch, StreamResult, parse_timestamp_ms

logger = logging.getLogger(__name__)

SNIPPET_BEFORE = 40
SNIPPET_AFTER = 80
SNIPPET_MAX = 120


def read_conversation(path: Path) -> list[ConversationMessage]:
    """Read a whole transcript.

    ``user`` and ``assistant`` lines are kept in file order. ``summary`` lines
    are moved to the front, since a summary describes what follows it.
    Malformed lines are skipped; a missing file gives ``[]``.
    """
    summaries: list[ConversationMessage] = []
    messages: list[ConversationMessage] = []

    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    msg = ConversationMessage.from_dict(json.loads(line))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.debug("Bad JSON at %s:%d: %s", path, line_num, e)
                    continue

                if msg.is_conversation:
                    messages.append(msg)
                elif msg.type == "summary":
                    summaries.append(msg)
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.warning("Failed to read transcript %s: %s", path, e)
        return []

    # Each summary is prepended in turn, so the last one in the file ends up first.
    summaries.reverse()
    return summaries + messages


def read_conversation_stream(path: Path, from_offset: int = 0) -> StreamResult:
    """Read the messages appended since ``from_offset``.

    Every complete, well-formed line advances the offset; only ``user`` and
    ``assistant`` lines are returned. The first line that does not decode or
    parse is taken to be still in the middle of being written, so reading
    stops there and ``next_offset`` points at its first byte.
    """
    from_offset = max(0, from_offset)
    try:
        with path.open("rb") as f:
            size = os.fstat(f.fileno()).st_size
            if from_offset >= size:
                return StreamResult(messages=[], next_offset=from_offset)
            f.seek(from_offset)
            data = f.read(size - from_offset)
    except FileNotFoundError:
        return StreamResult(messages=[], next_offset=from_offset)
    except OSError as e:
        logger.warning("Failed to read transcript stream %s: %s", path, e)
        return StreamResult(messages=[], next_offset=from_offset)

    messages: list[ConversationMessage] = []
    consumed = 0
    segments = data.split(b"\n")
    for i, segment in enumerate(segments):
        has_newline = i < len(segments) - 1
        length = len(segment) + (1 if has_newline else 0)
        if not segment.strip():
            if has_newline:
                consumed += length
            continue
        try:
            msg = ConversationMessage.from_dict(json.loads(segment.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValueError):
            break
        if msg.is_conversation:
            messages.append(msg)
        consumed += length

    return StreamResult(messages=messages, next_offset=from_offset + consumed)


def read_first_timestamp(path: Path) -> int | None:
    """Return the epoch-millisecond timestamp on a transcript's first line."""
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            first_line = f.readline()
    except OSError as e:
        logger.debug("Cannot read first line of %s: %s", path, e)
        return None

    if not first_line.strip():
        return None
    try:
        entry = json.loads(first_line)
    except json.JSONDecodeError:
        return None
    if not isinstance(entry, dict):
        return None
    return parse_timestamp_ms(entry.get("timestamp"))


def extract_snippet(text: str, query: str) -> str:
    """Cut a window of ``text`` around the first case-insensitive hit of ``query``."""
    idx = text.lower().find(query.lower())
    if idx == -1:
        return text[:SNIPPET_MAX]
    start = max(0, idx - SNIPPET_BEFORE)
    end = min(len(text), idx + len(query) + SNIPPET_AFTER)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def search_transcript(path: Path, query: str, limit: int = 3) -> list[SearchMatch]:
    """Return up to ``limit`` messages whose text contains ``query``."""
    needle = query.lower()
    matches: list[SearchMatch] = []
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            for line in f:
                if len(matches) >= limit:
                    break
                if not line.strip():
                    continue
                try:
                    msg = ConversationMessage.from_dict(json.loads(line))
                except (json.JSONDecodeError, ValueError):
                    continue
                if not msg.is_conversation:
                    continue
                text = msg.text_content()
                if needle in text.lower():
                    matches.append(SearchMatch(text=extract_snippet(text, query), role=msg.type))
    except OSError as e:
        logger.debug("Skipping transcript %s during search: %s", path, e)
    return matches
