"""Data models for parsed session transcripts.

Plain dataclasses; these never touch the database, only the analysis prompt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class BlockKind(str, Enum):
    """Kinds of content block inside a transcript message."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    UNKNOWN = "unknown"


@dataclass
class ContentBlock:
    """One block of message content; only fields relevant to its kind are set."""

    kind: BlockKind
    text: str = ""
    tool_name: str = ""

    def __post_init__(self) -> None:
        """Ensure kind is BlockKind enum."""
        if isinstance(self.kind, str):
            self.kind = BlockKind(self.kind)


@dataclass
class UserMessage:
    """Text the user typed (tool results excluded)."""

    text: str
    timestamp: datetime | None = None


@dataclass
class AssistantMessage:
    """Assistant reply reduced to text, a thinking digest and tool names."""

    text: str
    thinking_summary: str | None = None
    tools: list[str] = field(default_factory=list)
    timestamp: datetime | None = None


@dataclass
class SessionMetadata:
    """Environment captured from the first user entry."""

    cwd: str | None = None
    version: str | None = None
    git_branch: str | None = None
    model: str | None = None


@dataclass
class Session:
    """A parsed coding-assistant session."""

    session_id: str
    project: str
    session_path: str
    user_messages: list[UserMessage] = field(default_factory=list)
    assistant_messages: list[AssistantMessage] = field(default_factory=list)
    summaries: list[str] = field(default_factory=list)
    tools_used: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)

    @property
    def is_low_signal(self) -> bool:
        """Fewer than two user turns carries too little to learn from."""
        return len(self.user_messages) < 2
