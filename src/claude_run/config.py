"""Environment-driven settings and path resolution for the Claude directory."""

import os
from pathlib import Path

HISTORY_FILENAME = "history.jsonl"
ARCHIVE_FILENAME = "claude-run-archived.json"

DEFAULT_HISTORY_TTL = 5.0
WATCH_DEBOUNCE_MS = 20
SEARCH_MAX_RESULTS = 20
SSE_HEARTBEAT_SECONDS = 15.0


def get_claude_dir() -> Path:
    """Return the root Claude directory (``~/.claude`` unless overridden)."""
    env = os.environ.get("CLAUDE_RUN_DIR")
    if env:
        return Path(env).expanduser()

    return Path.home() / ".claude"


def get_projects_dir(claude_dir: Path) -> Path:
    """Return the directory holding one sub-directory per project."""
    return claude_dir / "projects"


def get_history_path(claude_dir: Path) -> Path:
    """Return the path of the append-only history log."""
    return claude_dir / HISTORY_FILENAME


def get_archive_path(claude_dir: Path) -> Path:
    """Return the path of the archived-sessions sidecar file."""
    return claude_dir / ARCHIVE_FILENAME


def get_history_ttl() -> float:
    """Return the history cache lifetime in seconds."""
    env = os.environ.get("CLAUDE_RUN_HISTORY_TTL")
    if env:
        try:
            return max(0.0, float(env))
        except ValueError:
            pass
    return DEFAULT_HISTORY_TTL


def is_watch_enabled() -> bool:
    return _env_flag("CLAUDE_RUN_WATCH", default=True)


def is_watch_polling() -> bool:
    return _env_flag("CLAUDE_RUN_WATCH_POLLING", default=False)


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")
