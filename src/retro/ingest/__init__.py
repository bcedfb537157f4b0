"""Session ingestion: transcript discovery, fingerprinting and parsing."""

from .models import (
    AssistantMessage,
    BlockKind,
    ContentBlock,
    Session,
    SessionMetadata,
    UserMessage,
)
from .parser import SessionParser, parse_content_blocks, summarize_thinking
from .scanner import SessionScanner, encode_project_path, recover_project_path

__all__ = [
    "AssistantMessage",
    "BlockKind",
    "ContentBlock",
    "Session",
    "SessionMetadata",
    "SessionParser",
    "SessionScanner",
    "UserMessage",
    "encode_project_path",
    "parse_content_blocks",
    "recover_project_path",
    "summarize_thinking",
]
