"""Mapping between project paths and their directory names under ``projects/``.

Claude Code names each project directory by replacing every ``/`` and ``.`` in
the project's absolute path with ``-``. The encoding is lossy:
``/Users/a/app.name`` and ``/Users/a/app/name`` share one directory name, and a
literal ``-`` in a path is indistinguishable from either. Recovering a path from
a directory name therefore needs corroborating data (the history log, or the
``cwd`` recorded in a transcript); the naive decode is only a last resort.
"""

import json
import logging
import re
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_ENCODED_CHARS = re.compile(r"[/.]")

# Transcript lines that carry ``cwd`` appear near the top of the file.
_CWD_SCAN_LINES = 20


def encode_project_path(path: str) -> str:
    """Return the directory name Claude Code uses for ``path``."""
    return _ENCODED_CHARS.sub("-", path)


def decode_project_path(dir_name: str) -> str:
    """Best-effort inverse of :func:`encode_project_path`.

    Every ``-`` becomes ``/``, so paths containing ``.`` or ``-`` come back
    wrong. Only use this when nothing better is known.
    """
    if dir_name.startswith("-"):
        return dir_name.replace("-", "/")
    return dir_name


def get_project_name(project_path: str) -> str:
    """Return the last non-empty segment of a project path."""
    parts = [p for p in project_path.split("/") if p]
    return parts[-1] if parts else project_path


def resolve_project_path(
    dir_name: str,
    known_projects: Iterable[str],
    session_file: Path | None = None,
) -> str:
    """Resolve a project directory name to the project's absolute path.

    Checks, in order: project paths from the history log, the ``cwd`` recorded
    in ``session_file``, then falls back to :func:`decode_project_path`.
    """
    for project in known_projects:
        if encode_project_path(project) == dir_name:
            return project

    if session_file is not None:
        cwd = read_session_cwd(session_file)
        if cwd and encode_project_path(cwd) == dir_name:
            return cwd

    return decode_project_path(dir_name)


def read_session_cwd(path: Path) -> str | None:
    """Return the first ``cwd`` recorded in a transcript, if any."""
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            for i, line in enumerate(f):
                if i >= _CWD_SCAN_LINES:
                    break
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict) and isinstance(entry.get("cwd"), str):
                    return entry["cwd"]
    except OSError as e:
        logger.debug("Cannot read cwd from %s: %s", path, e)
    return None
