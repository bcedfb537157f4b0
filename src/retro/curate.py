"""Agentic full rewrite of a project's CLAUDE.md, delivered as a PR."""

from __future__ import annotations

import difflib
import os
from dataclasses import dataclass
from pathlib import Path

from .backend import AnalysisBackend
from .deploy import CURATE_BRANCH_PREFIX, ChangeRequest
from .exceptions import AnalysisError
from .models import Pattern
from .projection import managed_section
from .util import backup_file, read_text, strip_code_fences, write_text

MAX_TREE_ENTRIES = 500

IGNORED_DIRS = {
    ".git",
    "target",
    "node_modules",
    "__pycache__",
    ".venv",
    "dist",
    ".next",
    ".mypy_cache",
    ".pytest_cache",
}
IGNORED_SUFFIXES = (".lock", ".pyc")


@dataclass
class CurateDraft:
    """A proposed CLAUDE.md and what it cost to produce."""

    original: str
    content: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def lines_before(self) -> int:
        return len(self.original.splitlines())

    @property
    def lines_after(self) -> int:
        return len(self.content.splitlines())

    def diff(self) -> list[str]:
        return list(
            difflib.unified_diff(
                self.original.splitlines(),
                self.content.splitlines(),
                fromfile="CLAUDE.md (current)",
                tofile="CLAUDE.md (proposed)",
                lineterm="",
            ),
        )


def project_tree(root: Path, limit: int = MAX_TREE_ENTRIES) -> str:
    """Relative file listing without build and VCS noise."""
    entries: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        for filename in sorted(filenames):
            if filename.endswith(IGNORED_SUFFIXES):
                continue
            entries.append(str((Path(dirpath) / filename).relative_to(root)))
            if len(entries) >= limit:
                entries.append("...")
                return "\n".join(entries)
    return "\n".join(entries)


def dissolve_if_needed(path: Path, backup_dir: Path) -> bool:
    """Strip the managed block markers once, backing the file up first."""
    text = read_text(path)
    if not managed_section.has_managed_section(text):
        return False
    backup_file(path, backup_dir)
    write_text(path, managed_section.dissolve(text))
    return True


def build_curate_prompt(
    claude_md: str,
    patterns: list[Pattern],
    memory_md: str | None,
    tree: str,
) -> str:
    pattern_lines = "\n".join(
        f"- [{p.pattern_type.value}] {p.description} (confidence {p.confidence:.2f}, seen {p.times_seen}x)"
        for p in patterns
    ) or "(none)"
    memory_section = f"\n## MEMORY.md\n\n{memory_md}\n" if memory_md else ""

    return f"""You are rewriting a project's CLAUDE.md, the instruction file Claude Code reads at the start of every session.

Explore the codebase with your tools to verify what the current file claims, then produce a
complete replacement that is accurate, concise and organized by topic.

## Current CLAUDE.md

```markdown
{claude_md or "(empty)"}
```

## Patterns Observed Across Sessions

{pattern_lines}
{memory_section}
## Project Files

```
{tree}
```

## Rules

- Keep every instruction that is still true; drop ones the code contradicts.
- Fold the observed patterns in as rules where they are not already covered.
- Do not add commentary about the rewrite.

Return only the full new CLAUDE.md content."""


def generate_draft(
    backend: AnalysisBackend,
    project_root: Path,
    claude_md: str,
    patterns: list[Pattern],
    memory_md: str | None,
) -> CurateDraft:
    """Run the agentic rewrite.

    Raises:
        AnalysisError: If the call fails or returns nothing
    """
    prompt = build_curate_prompt(claude_md, patterns, memory_md, project_tree(project_root))
    response = backend.execute_agentic(prompt, cwd=project_root)
    content = strip_code_fences(response.text)
    if not content.strip():
        msg = "AI returned empty content"
        raise AnalysisError(msg)
    if not content.endswith("\n"):
        content += "\n"
    return CurateDraft(
        original=claude_md,
        content=content,
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
    )


def curate_request(draft: CurateDraft, patterns_used: int, threshold: float, has_memory: bool) -> ChangeRequest:
    sources = [
        f"- {patterns_used} discovered patterns (confidence >= {threshold:.1f})",
        "- Codebase exploration by AI",
    ]
    if has_memory:
        sources.append("- MEMORY.md context")
    body = (
        "## Retro Curate: CLAUDE.md Rewrite\n\n"
        "Agentic rewrite of CLAUDE.md based on:\n"
        + "\n".join(sources)
        + f"\n\n**Lines:** {draft.lines_before} -> {draft.lines_after}\n\n---\nGenerated by `retro curate`.\n"
    )
    return ChangeRequest(
        branch_prefix=CURATE_BRANCH_PREFIX,
        commit_message="retro curate: rewrite CLAUDE.md\n\nAgentic rewrite generated by retro curate.",
        title="retro curate: rewrite CLAUDE.md",
        body=body,
    )


def audit_details(draft: CurateDraft, project_root: Path, **extra: object) -> dict[str, object]:
    details: dict[str, object] = {
        "project": str(project_root),
        "claude_md_lines_before": draft.lines_before,
        "claude_md_lines_after": draft.lines_after,
        "input_tokens": draft.input_tokens,
        "output_tokens": draft.output_tokens,
    }
    details.update(extra)
    return details
