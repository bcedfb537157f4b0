"""Append-only JSON Lines audit trail."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .exceptions import FileOperationError, RetroError
from .models import AuditEntry
from .util import utc_now

logger = logging.getLogger(__name__)


def append(path: Path, action: str, details: dict[str, Any] | None = None) -> AuditEntry:
    """Append one entry to the audit log.

    Raises:
        FileOperationError: If the log cannot be written
    """
    entry = AuditEntry(action=action, details=details or {})
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
    except OSError as e:
        msg = f"Failed to write audit log: {e}"
        raise FileOperationError(msg, details={"path": str(path)}) from e
    return entry


def read_entries(path: Path, since: datetime | None = None) -> list[AuditEntry]:
    """Entries in file order, optionally only those at or after ``since``.

    Corrupt lines are skipped with a warning.
    """
    if not path.exists():
        return []

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        msg = f"Failed to read audit log: {e}"
        raise FileOperationError(msg, details={"path": str(path)}) from e

    entries: list[AuditEntry] = []
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            entry = AuditEntry.model_validate(json.loads(line))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Skipping corrupt audit line %d: %s", number, e)
            continue
        if since is not None and entry.timestamp < since:
            continue
        entries.append(entry)
    return entries


def parse_since(value: str, now: datetime | None = None) -> datetime:
    """Cutoff for a window like ``7d`` or ``24h``; a bare number means days.

    Raises:
        RetroError: If the value is not a whole number of days or hours
    """
    text = value.strip()
    unit = "d"
    if text[-1:] in ("d", "h"):
        text, unit = text[:-1], text[-1]
    try:
        amount = int(text)
    except ValueError as e:
        msg = f"Invalid duration {value!r}. Use a format like '7d' or '24h'"
        raise RetroError(msg) from e
    delta = timedelta(days=amount) if unit == "d" else timedelta(hours=amount)
    return (now or utc_now()) - delta
