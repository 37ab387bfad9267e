"""Shared test fixtures for claude-run."""

import json

import pytest

PROJECT_PATH = "/Users/testuser/dev/myapp"
PROJECT_DIR = "-Users-testuser-dev-myapp"

# 2025-01-20T10:00:00Z and later, in epoch milliseconds
T0 = 1737367200000


def write_jsonl(path, entries):
    """Write entries one JSON object per line, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(e) + "\n" for e in entries), encoding="utf-8")
    return path


def append_jsonl(path, entries):
    with path.open("a", encoding="utf-8") as f:
        for e in entries:
            f.write(json.dumps(e) + "\n")


def usage(input_tokens, output_tokens, cache_creation=0, cache_read=0):
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "cache_creation_input_tokens": cache_creation,
        "cache_read_input_tokens": cache_read,
    }


def session_001_lines():
    """A realistic transcript: prompts, tool calls, thinking and skipped entry types."""
    return [
        {
            "type": "user",
            "uuid": "uuid-001",
            "parentUuid": None,
            "sessionId": "session-001",
            "cwd": PROJECT_PATH,
            "timestamp": "2025-01-20T10:00:00Z",
            "message": {"role": "user", "content": "Help me refactor the auth module"},
        },
        {
            "type": "assistant",
            "uuid": "uuid-002",
            "parentUuid": "uuid-001",
            "timestamp": "2025-01-20T10:00:30Z",
            "message": {
                "role": "assistant",
                "model": "claude-sonnet-4-5",
                "content": [
                    {"type": "text", "text": "I'll read the current auth code first."},
                    {"type": "tool_use", "id": "toolu_001", "name": "Read", "input": {"file_path": "/src/auth.ts"}},
                ],
                "usage": usage(100, 20, cache_creation=50, cache_read=0),
            },
        },
        {
            "type": "user",
            "uuid": "uuid-003",
            "parentUuid": "uuid-002",
            "timestamp": "2025-01-20T10:00:31Z",
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "toolu_001", "content": "export function authenticate() {}", "is_error": False},
            ]},
        },
        {"type": "file-history-snapshot", "messageId": "uuid-003", "snapshot": {}},
        {
            "type": "assistant",
            "uuid": "uuid-004",
            "parentUuid": "uuid-003",
            "timestamp": "2025-01-20T10:01:00Z",
            "message": {
                "role": "assistant",
                "model": "claude-sonnet-4-5",
                "content": [
                    {"type": "thinking", "thinking": "Split validation from token refresh."},
                    {"type": "text", "text": "The auth module mixes validation and refresh logic."},
                    {"type": "tool_use", "id": "toolu_002", "name": "Bash", "input": {"command": "mkdir -p src/auth"}},
                ],
                "usage": usage(10, 30, cache_creation=5, cache_read=150),
            },
        },
        {"type": "summary", "summary": "Refactored auth module", "leafUuid": "uuid-004"},
    ]


def session_002_lines():
    return [
        {
            "type": "user",
            "uuid": "uuid-101",
            "parentUuid": None,
            "timestamp": "2025-01-21T09:00:00Z",
            "message": {"role": "user", "content": "Write tests for the API"},
        },
        {
            "type": "assistant",
            "uuid": "uuid-102",
            "parentUuid": "uuid-101",
            "timestamp": "2025-01-21T09:00:10Z",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Sure, starting with the API client."}]},
        },
    ]


@pytest.fixture
def claude_dir(tmp_path):
    """Create a synthetic ~/.claude directory with history and two transcripts.

    The history log references session-001 twice; the first entry is the one
    that should describe the session.
    """
    base = tmp_path / ".claude"
    project_dir = base / "projects" / PROJECT_DIR
    write_jsonl(project_dir / "session-001.jsonl", session_001_lines())
    write_jsonl(project_dir / "session-002.jsonl", session_002_lines())

    history = [
        {"display": "Help me refactor the auth module", "timestamp": T0, "project": PROJECT_PATH, "sessionId": "session-001"},
        {"display": "now split it into files", "timestamp": T0 + 300_000, "project": PROJECT_PATH, "sessionId": "session-001"},
        {"display": "Write tests for the API", "timestamp": T0 + 82_800_000, "project": PROJECT_PATH, "sessionId": "session-002"},
    ]
    write_jsonl(base / "history.jsonl", history)
    return base
