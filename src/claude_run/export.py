"""Export conversations to Markdown and JSON formats."""

import json
import re
from datetime import datetime, timezone
from typing import Optional

from .core import ContentBlock, ConversationMessage, Session

SEPARATOR = "\n\n---\n\n"
TASK_PROMPT_LIMIT = 200

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_COMMAND_TAGS = re.compile(
    r"</?(command-name|command-message|command-args|local-command-stdout|system-reminder)>"
)
_KEY_FIELDS = ("query", "url", "prompt", "path", "file_path", "pattern")


def sanitize_text(text: str) -> str:
    """Strip terminal escape codes and Claude Code command tags."""
    return _COMMAND_TAGS.sub("", _ANSI_ESCAPE.sub("", text))


def _format_tool_use(block: ContentBlock) -> str:
    name = block.name or "Unknown Tool"
    result = f"**[Tool: {name}]**\n"
    tool_input = block.input if isinstance(block.input, dict) else None
    if not tool_input:
        return result

    if name == "Bash" and tool_input.get("command"):
        result += f"```bash\n{tool_input['command']}\n```"
    elif name in ("Read", "Write", "Edit") and tool_input.get("file_path"):
        result += f"`{tool_input['file_path']}`"
    elif name in ("Glob", "Grep") and tool_input.get("pattern"):
        result += f"Pattern: `{tool_input['pattern']}`"
    elif name == "Task" and tool_input.get("prompt"):
        prompt = str(tool_input["prompt"])
        if len(prompt) > TASK_PROMPT_LIMIT:
            prompt = prompt[:TASK_PROMPT_LIMIT] + "..."
        result += prompt
    else:
        shown = {k: tool_input[k] for k in _KEY_FIELDS if k in tool_input}
        if shown:
            result += "```json\n" + json.dumps(shown, indent=2) + "\n```"
    return result


def _format_block(block: ContentBlock) -> Optional[str]:
    if block.type == "text":
        return sanitize_text(block.text) if block.text else None
    if block.type == "thinking":
        if not block.thinking:
            return None
        return f"<details>\n<summary>Thinking...</summary>\n\n{block.thinking}\n\n</details>"
    if block.type == "tool_use":
        return _format_tool_use(block)
    if block.type == "tool_result":
        # Only failed tool results are exported.
        if block.is_error and block.content:
            if isinstance(block.content, str):
                error = block.content
            else:
                error = "\n".join(b.text or "" for b in block.content)
            return f"**[Error]**\n```\n{error}\n```"
    return None


def format_message(msg: ConversationMessage) -> Optional[str]:
    """Render one message as a Markdown section, or None when it has no content."""
    if not msg.is_conversation or msg.message is None:
        return None

    content = msg.message.content
    if isinstance(content, str):
        body = sanitize_text(content)
    else:
        parts = [p for p in (_format_block(b) for b in content) if p]
        body = "\n\n".join(parts)

    if not body.strip():
        return None
    role = "User" if msg.type == "user" else "Assistant"
    return f"## {role}\n\n{body}"


def conversation_to_markdown(messages: list[ConversationMessage]) -> str:
    """Export messages as Markdown sections separated by horizontal rules."""
    parts = ["# Conversation"]
    for msg in messages:
        formatted = format_message(msg)
        if formatted:
            parts.append(formatted)
    return SEPARATOR.join(parts)


def session_to_markdown(session: Session, messages: list[ConversationMessage]) -> str:
    """Export a session with a metadata header followed by its conversation."""
    lines = [f"# {session.display or session.id}", ""]
    lines.append(f"**Project:** {session.project}")
    if session.first_timestamp:
        lines.append(f"**Started:** {_iso(session.first_timestamp)}")
    lines.append(f"**Date:** {_iso(session.timestamp)}")
    lines.append(f"**Session:** {session.id}")

    body = conversation_to_markdown(messages)
    return "\n".join(lines) + SEPARATOR + body


def session_to_json(session: Optional[Session], messages: list[ConversationMessage]) -> str:
    """Export a session and its raw transcript lines as structured JSON."""
    data = {
        "session": None if session is None else {
            "id": session.id,
            "display": session.display,
            "project": session.project,
            "projectName": session.project_name,
            "timestamp": session.timestamp,
            "firstTimestamp": session.first_timestamp,
            "archived": session.archived,
        },
        "messages": [msg.raw for msg in messages],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def _iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()
