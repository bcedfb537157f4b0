"""Managed section editing for CLAUDE.md.

retro owns exactly one delimited block of the file::

    <!-- retro:managed:start -->
    ## Retro-Discovered Patterns

    - rule one
    - rule two

    <!-- retro:managed:end -->

Everything here is a pure string transform. Bytes outside the block are never
touched by ``replace``; structured edits only ever touch lines outside it.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import ValidationError

from ..models import ClaudeMdEdit, ClaudeMdEditType

logger = logging.getLogger(__name__)

MANAGED_START = "<!-- retro:managed:start -->"
MANAGED_END = "<!-- retro:managed:end -->"
MANAGED_HEADER = "## Retro-Discovered Patterns"

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")


def _one_line(rule: str) -> str:
    return " ".join(rule.split())


def render_block(rules: list[str]) -> str:
    """The delimited block for ``rules``, without a trailing newline."""
    bullets = "".join(f"- {_one_line(rule)}\n" for rule in rules)
    return f"{MANAGED_START}\n{MANAGED_HEADER}\n\n{bullets}\n{MANAGED_END}"


def split_managed(text: str) -> tuple[str, str, str] | None:
    """(before, interior, after) around the delimiters, or None if absent."""
    start = text.find(MANAGED_START)
    if start == -1:
        return None
    interior_start = start + len(MANAGED_START)
    end = text.find(MANAGED_END, interior_start)
    if end == -1:
        return None
    return text[:start], text[interior_start:end], text[end + len(MANAGED_END) :]


def has_managed_section(text: str) -> bool:
    return split_managed(text) is not None


def replace(text: str, rules: list[str]) -> str:
    """Render ``rules`` into the managed block.

    An existing block has only its interior rewritten. Without one, a new
    block is appended after a blank line, ending in a single newline.
    """
    parts = split_managed(text)
    block = render_block(rules)
    if parts is not None:
        before, _, after = parts
        return f"{before}{block}{after}"

    result = text
    if result and not result.endswith("\n"):
        result += "\n"
    if result:
        result += "\n"
    return f"{result}{block}\n"


def read_managed_section(text: str) -> list[str] | None:
    """Rules currently inside the block, or None if there is no block or it is empty."""
    parts = split_managed(text)
    if parts is None:
        return None
    rules = [
        line.strip()[2:]
        for line in parts[1].splitlines()
        if line.strip().startswith("- ")
    ]
    return rules or None


def dissolve(text: str) -> str:
    """Drop the delimiters and header, leaving the rule lines where they were."""
    parts = split_managed(text)
    if parts is None:
        return text
    before, interior, after = parts

    body = "\n".join(
        line for line in interior.splitlines() if line.strip() != MANAGED_HEADER
    ).strip("\n")
    if body:
        return f"{before}{body}{after}"
    if before.endswith("\n") and after.startswith("\n"):
        after = after[1:]
    return f"{before}{after}"


def is_edit_action(content: str) -> bool:
    """Whether projection content is a serialized structured edit."""
    trimmed = content.strip()
    return trimmed.startswith("{") and '"edit_type"' in trimmed


def parse_edit(content: str) -> ClaudeMdEdit | None:
    """Parse a serialized structured edit; None when malformed."""
    try:
        data = json.loads(content.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if "original_text" not in data and "original" in data:
        data["original_text"] = data.pop("original")
    try:
        return ClaudeMdEdit.model_validate(data)
    except ValidationError:
        return None


def serialize_edit(edit: ClaudeMdEdit) -> str:
    """Projection content form of a structured edit."""
    return json.dumps(edit.model_dump(mode="json", exclude_none=True))


def _protected_lines(lines: list[str]) -> set[int]:
    protected: set[int] = set()
    inside = False
    for idx, line in enumerate(lines):
        if MANAGED_START in line:
            inside = True
        if inside:
            protected.add(idx)
        if MANAGED_END in line:
            inside = False
    return protected


def _find_line(lines: list[str], needle: str, protected: set[int]) -> int | None:
    target = needle.strip()
    if not target:
        return None
    for idx, line in enumerate(lines):
        if idx not in protected and target in line:
            return idx
    return None


def _heading(line: str) -> tuple[int, str] | None:
    match = _HEADING_RE.match(line.rstrip("\n"))
    if match is None:
        return None
    return len(match.group(1)), match.group(2)


def _section_insert_point(lines: list[str], title: str, protected: set[int]) -> int | None:
    """Index just after the last non-blank line of the titled section."""
    wanted = title.strip().lstrip("#").strip().lower()
    for idx, line in enumerate(lines):
        if idx in protected:
            continue
        heading = _heading(line)
        if heading is None or heading[1].lower() != wanted:
            continue
        level = heading[0]
        end = len(lines)
        for nxt in range(idx + 1, len(lines)):
            other = _heading(lines[nxt])
            if nxt in protected or (other is not None and other[0] <= level):
                end = nxt
                break
        while end - 1 > idx and not lines[end - 1].strip():
            end -= 1
        return end
    return None


def _as_bullet(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith(("-", "*", "#")):
        return stripped
    return f"- {stripped}"


def _insert(lines: list[str], index: int, new_line: str) -> None:
    if index > 0 and not lines[index - 1].endswith("\n"):
        lines[index - 1] += "\n"
    lines.insert(index, new_line if new_line.endswith("\n") else f"{new_line}\n")


def _insert_into_section(lines: list[str], section: str | None, new_line: str) -> None:
    protected = _protected_lines(lines)
    point = _section_insert_point(lines, section, protected) if section else None
    if point is not None:
        _insert(lines, point, new_line)
        return

    if lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"
    if section:
        if lines and lines[-1].strip():
            lines.append("\n")
        lines.extend([f"## {section.strip().lstrip('#').strip()}\n", "\n"])
    lines.append(f"{new_line}\n")


def apply_edit(text: str, edit: ClaudeMdEdit) -> str:
    """Apply one structured edit to lines outside the managed block.

    Edits whose original text cannot be found leave the text unchanged.
    """
    lines = text.splitlines(keepends=True)
    protected = _protected_lines(lines)

    if edit.edit_type == ClaudeMdEditType.ADD:
        content = edit.replacement or edit.original_text
        if not content.strip():
            logger.warning("Ignoring add edit with no content")
            return text
        _insert_into_section(lines, edit.target_section, _as_bullet(content))
        return "".join(lines)

    idx = _find_line(lines, edit.original_text, protected)
    if idx is None:
        logger.warning("Edit target not found, skipping: %r", edit.original_text)
        return text

    if edit.edit_type == ClaudeMdEditType.REMOVE:
        del lines[idx]
    elif edit.edit_type == ClaudeMdEditType.REWORD:
        if edit.replacement is None:
            logger.warning("Ignoring reword edit with no replacement")
            return text
        lines[idx] = lines[idx].replace(edit.original_text.strip(), edit.replacement.strip(), 1)
    elif edit.edit_type == ClaudeMdEditType.MOVE:
        if not edit.target_section:
            logger.warning("Ignoring move edit with no target section")
            return text
        moved = lines.pop(idx).rstrip("\n")
        _insert_into_section(lines, edit.target_section, moved)

    return "".join(lines)


def apply_edits(text: str, edits: list[ClaudeMdEdit]) -> str:
    """Apply edits in order."""
    for edit in edits:
        text = apply_edit(text, edit)
    return text
