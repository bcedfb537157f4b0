"""YAML frontmatter helpers for generated skill and agent files."""

from __future__ import annotations

import re
from typing import Any

import yaml

NAME_RE = re.compile(r"^[a-z0-9-]+$")


def split_frontmatter(content: str) -> tuple[str, str] | None:
    """Split ``---`` delimited frontmatter from the body.

    Returns:
        (frontmatter, body), or None when the opening or closing fence is missing
    """
    lines = content.splitlines()
    if not lines or lines[0].strip() != "---":
        return None
    for idx, line in enumerate(lines[1:], start=1):
        if line.strip() == "---":
            return "\n".join(lines[1:idx]), "\n".join(lines[idx + 1 :])
    return None


def has_valid_frontmatter(content: str) -> bool:
    """Opening and closing fences are both present."""
    return split_frontmatter(content) is not None


def parse_frontmatter(content: str) -> dict[str, Any] | None:
    """Frontmatter as a mapping, or None if there is none."""
    parts = split_frontmatter(content)
    if parts is None:
        return None
    raw = parts[0]
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError:
        # Models often emit unquoted colons in descriptions.
        data = _parse_key_values(raw)
    if not isinstance(data, dict):
        return None
    return {str(k): v for k, v in data.items()}


def _parse_key_values(raw: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for line in raw.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() and not line.startswith((" ", "\t")):
            data[key.strip()] = value.strip().strip("\"'")
    return data


def parse_artifact_name(content: str) -> str | None:
    """The frontmatter ``name`` when it is lowercase letters, digits and hyphens."""
    data = parse_frontmatter(content)
    if not data:
        return None
    name = data.get("name")
    if not isinstance(name, str):
        return None
    name = name.strip()
    if name and NAME_RE.match(name):
        return name
    return None
