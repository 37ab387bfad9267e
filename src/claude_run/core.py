"""Core data models for claude-run."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

MESSAGE_TYPES = ("user", "assistant")


@dataclass
class HistoryEntry:
    """One user-initiated turn recorded in the history log."""

    display: str
    timestamp: int  # epoch milliseconds
    project: str  # absolute project path, authoritative
    session_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "HistoryEntry":
        """Build an entry from one decoded history line.

        Raises ValueError when the line is not a usable entry.
        """
        if not isinstance(data, dict):
            raise ValueError("history entry is not an object")
        project = data.get("project")
        timestamp = data.get("timestamp")
        if not isinstance(project, str) or not isinstance(timestamp, (int, float)):
            raise ValueError("history entry lacks project or timestamp")
        session_id = data.get("sessionId")
        return cls(
            display=str(data.get("display") or ""),
            timestamp=int(timestamp),
            project=project,
            session_id=session_id if isinstance(session_id, str) and session_id else None,
        )


@dataclass
class Session:
    """A conversation thread."""

    id: str
    display: str
    timestamp: int  # epoch milliseconds
    project: str
    project_name: str
    first_timestamp: Optional[int] = None
    archived: bool = False


@dataclass
class TokenUsage:
    """Usage counters attached to an assistant message."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "TokenUsage":
        return cls(
            input_tokens=_as_int(data.get("input_tokens")),
            output_tokens=_as_int(data.get("output_tokens")),
            cache_creation_input_tokens=_as_int(data.get("cache_creation_input_tokens")),
            cache_read_input_tokens=_as_int(data.get("cache_read_input_tokens")),
        )

    @property
    def context_tokens(self) -> int:
        """Tokens resident in the context window for this turn."""
        return self.input_tokens + self.cache_creation_input_tokens + self.cache_read_input_tokens


@dataclass
class SessionTokens:
    """Token accounting for one transcript.

    ``input_tokens`` is the context occupancy of the last usage record, not a
    lifetime total. ``output_tokens`` is summed across the whole transcript.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass
class ContentBlock:
    """A node within message content: text, thinking, tool_use or tool_result."""

    type: str
    text: Optional[str] = None
    thinking: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Any = None
    tool_use_id: Optional[str] = None
    content: Any = None  # str | list[ContentBlock] for tool_result
    is_error: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "ContentBlock":
        content = data.get("content")
        if isinstance(content, list):
            content = [cls.from_dict(b) for b in content if isinstance(b, dict)]
        elif not isinstance(content, str):
            content = None
        return cls(
            type=str(data.get("type", "")),
            text=_as_str(data.get("text")),
            thinking=_as_str(data.get("thinking")),
            id=data.get("id"),
            name=data.get("name"),
            input=data.get("input"),
            tool_use_id=data.get("tool_use_id"),
            content=content,
            is_error=bool(data.get("is_error", False)),
        )


@dataclass
class MessagePayload:
    """The ``message`` field of a transcript line."""

    role: str
    content: Any  # str | list[ContentBlock]
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None

    @classmethod
    def from_dict(cls, data: dict) -> "MessagePayload":
        content = data.get("content", "")
        if isinstance(content, list):
            blocks = []
            for block in content:
                if isinstance(block, dict):
                    blocks.append(ContentBlock.from_dict(block))
                elif isinstance(block, str):
                    blocks.append(ContentBlock(type="text", text=block))
            content = blocks
        elif not isinstance(content, str):
            content = ""
        usage = data.get("usage")
        return cls(
            role=str(data.get("role", "")),
            content=content,
            model=data.get("model"),
            usage=TokenUsage.from_dict(usage) if isinstance(usage, dict) else None,
        )


@dataclass
class ConversationMessage:
    """One line of a session transcript.

    ``raw`` keeps the decoded JSON object so the transport layer can hand the
    line to clients exactly as it was written.
    """

    type: str
    uuid: Optional[str] = None
    parent_uuid: Optional[str] = None
    timestamp: Optional[str] = None
    session_id: Optional[str] = None
    message: Optional[MessagePayload] = None
    summary: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "ConversationMessage":
        if not isinstance(data, dict):
            raise ValueError("transcript line is not an object")
        payload = data.get("message")
        return cls(
            type=str(data.get("type", "")),
            uuid=data.get("uuid") or None,
            parent_uuid=data.get("parentUuid") or None,
            timestamp=data.get("timestamp"),
            session_id=data.get("sessionId"),
            message=MessagePayload.from_dict(payload) if isinstance(payload, dict) else None,
            summary=data.get("summary"),
            raw=data,
        )

    @property
    def is_conversation(self) -> bool:
        return self.type in MESSAGE_TYPES

    def text_content(self) -> str:
        """Return the message's plain text, text blocks joined by spaces."""
        if self.message is None:
            return ""
        content = self.message.content
        if isinstance(content, str):
            return content
        return " ".join(b.text for b in content if b.type == "text" and b.text)


@dataclass
class StreamResult:
    """Messages read from a byte offset, and the offset to resume from."""

    messages: list[ConversationMessage]
    next_offset: int


@dataclass
class SearchMatch:
    text: str
    role: str


@dataclass
class SearchResult:
    session_id: str
    display: str
    project_name: str
    project: str
    timestamp: int
    matches: list[SearchMatch] = field(default_factory=list)


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Convert an ISO 8601 string (or epoch number) to epoch milliseconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    if not isinstance(value, str) or not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return int(datetime.fromisoformat(value).timestamp() * 1000)
    except (ValueError, TypeError, OverflowError):
        return None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None
