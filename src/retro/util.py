"""Small shared helpers: time, text trimming and file writes with backups."""

from __future__ import annotations

import shutil
from datetime import UTC, datetime
from pathlib import Path

from .exceptions import FileOperationError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def parse_timestamp(ts: str | float | None) -> datetime | None:
    """Parse timestamp from ISO strings or epoch seconds."""
    if ts is None or ts == "":
        return None
    if isinstance(ts, float | int):
        return datetime.fromtimestamp(ts, tz=UTC)
    try:
        parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def strip_code_fences(content: str) -> str:
    """Return the body of the first fenced block, or the trimmed text if unfenced."""
    trimmed = content.strip()
    if not trimmed.startswith("```"):
        return trimmed

    body: list[str] = []
    in_block = False
    for line in trimmed.splitlines():
        if line.startswith("```"):
            if in_block:
                break
            in_block = True
            continue
        if in_block:
            body.append(line)

    return "\n".join(body) if body else trimmed


def truncate(text: str, max_len: int) -> str:
    """Cut text to max_len characters, marking the cut with an ellipsis."""
    if len(text) <= max_len:
        return text
    return f"{text[:max_len]}..."


def shorten_path(path: str | Path) -> str:
    """Replace the home directory prefix with ~ for display."""
    text = str(path)
    home = str(Path.home())
    if text.startswith(home):
        return "~" + text[len(home):]
    return text


def backup_file(path: Path, backup_dir: Path) -> Path | None:
    """Copy an existing file into backup_dir before it is overwritten.

    Returns:
        Path of the backup, or None when there was nothing to back up.

    Raises:
        FileOperationError: If the copy fails
    """
    if not path.exists():
        return None

    stamp = utc_now().strftime("%Y%m%d-%H%M%S-%f")
    backup_path = backup_dir / f"{path.name}.{stamp}.bak"
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup_path)
    except OSError as e:
        msg = f"Failed to back up {path}: {e}"
        raise FileOperationError(msg) from e
    return backup_path


def write_text(path: Path, content: str) -> None:
    """Write a UTF-8 file, creating parent directories.

    Raises:
        FileOperationError: If the write fails
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        msg = f"Failed to write {path}: {e}"
        raise FileOperationError(msg) from e


def read_text(path: Path) -> str:
    """Read a UTF-8 file, returning an empty string when it does not exist.

    Raises:
        FileOperationError: If the file exists but cannot be read
    """
    if not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        msg = f"Failed to read {path}: {e}"
        raise FileOperationError(msg) from e
