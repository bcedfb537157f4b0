"""Parser for Claude Code JSONL session transcripts.

Claude Code stores transcripts at ~/.claude/projects/{encoded-path}/{uuid}.jsonl,
one JSON object per line. Only ``user``, ``assistant`` and ``summary`` entries
matter; bookkeeping entries and unknown future types are skipped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ..exceptions import FileOperationError
from ..util import parse_timestamp, truncate
from .models import (
    AssistantMessage,
    BlockKind,
    ContentBlock,
    Session,
    SessionMetadata,
    UserMessage,
)

logger = logging.getLogger(__name__)

KNOWN_TYPES = frozenset({"user", "assistant", "summary"})

THINKING_PREFIX_CHARS = 500
THINKING_SENTENCE_CHARS = 200
THINKING_MAX_CHARS = 2000
THINKING_KEYWORDS = ("error", "mistake", "wrong", "failed", "retry", "fix", "bug", "issue")

ERROR_MARKERS = ("error", "failed", "not found")


def parse_content_blocks(content: Any) -> list[ContentBlock]:
    """Normalise message content (string or block list) into ContentBlocks."""
    if isinstance(content, str):
        return [ContentBlock(kind=BlockKind.TEXT, text=content)]
    if not isinstance(content, list):
        return []

    blocks: list[ContentBlock] = []
    for raw in content:
        if not isinstance(raw, dict):
            continue
        block_type = raw.get("type")
        if block_type == "text":
            blocks.append(ContentBlock(kind=BlockKind.TEXT, text=str(raw.get("text") or "")))
        elif block_type == "thinking":
            blocks.append(
                ContentBlock(kind=BlockKind.THINKING, text=str(raw.get("thinking") or "")),
            )
        elif block_type == "tool_use":
            blocks.append(
                ContentBlock(kind=BlockKind.TOOL_USE, tool_name=str(raw.get("name") or "")),
            )
        elif block_type == "tool_result":
            blocks.append(
                ContentBlock(
                    kind=BlockKind.TOOL_RESULT,
                    text=_flatten_text(raw.get("content")),
                ),
            )
        else:
            blocks.append(ContentBlock(kind=BlockKind.UNKNOWN))
    return blocks


def _flatten_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(item.get("text") or "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return str(content)


def summarize_thinking(thinking: str) -> str:
    """Keep the opening of a thinking block plus any sentences about errors or fixes."""
    parts = [truncate(thinking, THINKING_PREFIX_CHARS)]
    rest = thinking[THINKING_PREFIX_CHARS:]
    for sentence in rest.split("."):
        lower = sentence.lower()
        if any(keyword in lower for keyword in THINKING_KEYWORDS):
            trimmed = sentence.strip()
            if trimmed:
                parts.append(truncate(trimmed, THINKING_SENTENCE_CHARS))
    return truncate(" ... ".join(parts), THINKING_MAX_CHARS)


class SessionParser:
    """Builds a Session from a transcript file."""

    def parse(self, path: Path, session_id: str, project: str) -> Session:
        """Parse a JSONL transcript.

        Args:
            path: Path to the .jsonl file
            session_id: Identifier to assign (normally the file stem)
            project: Project path the session belongs to

        Returns:
            Parsed session (possibly with no messages)

        Raises:
            FileOperationError: If the file cannot be read
        """
        session = Session(session_id=session_id, project=project, session_path=str(path))
        for entry in self._read_entries(path):
            entry_type = entry.get("type")
            if entry_type == "user":
                self._add_user(session, entry)
            elif entry_type == "assistant":
                self._add_assistant(session, entry)
            elif entry_type == "summary":
                self._add_summary(session, entry)
        return session

    def _read_entries(self, path: Path) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                for line_num, raw_line in enumerate(f, start=1):
                    line = raw_line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.debug("%s: line %d: %s", path, line_num, e)
                        continue
                    if isinstance(entry, dict) and entry.get("type") in KNOWN_TYPES:
                        entries.append(entry)
        except OSError as e:
            msg = f"Failed to read session {path}: {e}"
            raise FileOperationError(msg) from e
        return entries

    def _add_user(self, session: Session, entry: dict[str, Any]) -> None:
        if session.metadata.cwd is None:
            session.metadata = SessionMetadata(
                cwd=entry.get("cwd"),
                version=entry.get("version"),
                git_branch=entry.get("gitBranch"),
                model=session.metadata.model,
            )

        message = entry.get("message")
        if not isinstance(message, dict):
            return
        blocks = parse_content_blocks(message.get("content"))
        results = [b for b in blocks if b.kind == BlockKind.TOOL_RESULT]
        if results:
            for block in results:
                self._collect_error(session, block.text)
            return

        text = "\n".join(b.text for b in blocks if b.kind == BlockKind.TEXT and b.text)
        if text:
            session.user_messages.append(
                UserMessage(text=text, timestamp=parse_timestamp(entry.get("timestamp"))),
            )

    def _add_assistant(self, session: Session, entry: dict[str, Any]) -> None:
        message = entry.get("message")
        if not isinstance(message, dict):
            return

        text_parts: list[str] = []
        tools: list[str] = []
        thinking_summary: str | None = None

        for block in parse_content_blocks(message.get("content")):
            if block.kind == BlockKind.TEXT:
                text_parts.append(block.text)
            elif block.kind == BlockKind.THINKING:
                thinking_summary = summarize_thinking(block.text)
            elif block.kind == BlockKind.TOOL_USE:
                tools.append(block.tool_name)
                if block.tool_name not in session.tools_used:
                    session.tools_used.append(block.tool_name)
            elif block.kind == BlockKind.TOOL_RESULT:
                self._collect_error(session, block.text)

        if session.metadata.model is None and message.get("model"):
            session.metadata.model = str(message["model"])

        text = "\n".join(p for p in text_parts if p)
        if text or tools or thinking_summary:
            session.assistant_messages.append(
                AssistantMessage(
                    text=text,
                    thinking_summary=thinking_summary,
                    tools=tools,
                    timestamp=parse_timestamp(entry.get("timestamp")),
                ),
            )

    @staticmethod
    def _collect_error(session: Session, text: str) -> None:
        lower = text.lower()
        if any(marker in lower for marker in ERROR_MARKERS):
            session.errors.append(truncate(text, 200))

    def _add_summary(self, session: Session, entry: dict[str, Any]) -> None:
        summary = entry.get("summary")
        if isinstance(summary, str) and summary:
            session.summaries.append(summary)
        message = entry.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            session.summaries.append(message["content"])


def read_session_cwd(path: Path, max_lines: int = 5) -> str | None:
    """The ``cwd`` recorded in the first few lines of a transcript, if any."""
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            for _, raw_line in zip(range(max_lines), f, strict=False):
                try:
                    entry = json.loads(raw_line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict) and isinstance(entry.get("cwd"), str):
                    return entry["cwd"]
    except OSError:
        return None
    return None
