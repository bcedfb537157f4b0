"""Analysis prompt construction and size budgeting."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .ingest.models import Session
from .models import Pattern
from .projection.frontmatter import parse_frontmatter
from .projection.managed_section import read_managed_section
from .util import truncate

MAX_PROMPT_CHARS = 150_000
BASE_PROMPT_CHARS = 3000
MAX_USER_MSG_LEN = 500
MAX_USER_MSGS_PER_SESSION = 300
MAX_CONTEXT_SUMMARY_CHARS = 5000


def compact_session(session: Session) -> dict[str, Any]:
    """Prompt-sized view of a session."""
    return {
        "session_id": session.session_id,
        "project": session.project,
        "user_messages": [
            truncate(m.text, MAX_USER_MSG_LEN)
            for m in session.user_messages[:MAX_USER_MSGS_PER_SESSION]
        ],
        "thinking_highlights": [
            m.thinking_summary for m in session.assistant_messages if m.thinking_summary
        ],
        "tools_used": session.tools_used,
        "errors": session.errors,
        "summaries": session.summaries,
    }


def compact_pattern(pattern: Pattern) -> dict[str, Any]:
    """Prompt-sized view of an existing pattern."""
    return {
        "id": pattern.id,
        "pattern_type": pattern.pattern_type.value,
        "description": pattern.description,
        "confidence": pattern.confidence,
        "times_seen": pattern.times_seen,
        "suggested_target": pattern.suggested_target.value,
    }


def fit_sessions(
    sessions: list[dict[str, Any]],
    budget: int,
) -> tuple[list[dict[str, Any]], str]:
    """Drop sessions from the tail until the JSON fits or one remains.

    Returns:
        The kept sessions and their serialized form
    """
    kept = list(sessions)
    serialized = json.dumps(kept, indent=2)
    while len(serialized) > budget and len(kept) > 1:
        kept.pop()
        serialized = json.dumps(kept, indent=2)
    return kept, serialized


@dataclass
class AnalysisPrompt:
    """Prompt text plus the ids of the sessions that made it in."""

    text: str
    session_ids: list[str]


def build_analysis_prompt(
    sessions: list[Session],
    existing_patterns: list[Pattern],
    context_summary: str | None = None,
    max_chars: int = MAX_PROMPT_CHARS,
) -> AnalysisPrompt:
    """Build the pattern discovery prompt for one batch."""
    patterns_json = json.dumps([compact_pattern(p) for p in existing_patterns], indent=2)
    context_section = ""
    if context_summary:
        context_section = (
            "\n## Installed Context\n\n"
            "This context is already installed. A finding it already covers is either "
            "skipped or reported with suggested_target `db_only`.\n\n"
            f"{context_summary}\n"
        )

    base_size = BASE_PROMPT_CHARS + len(patterns_json) + len(context_section)
    budget = max(max_chars - base_size, 0)
    kept, sessions_json = fit_sessions([compact_session(s) for s in sessions], budget)

    text = f"""You analyze AI coding assistant session histories to find real, recurring patterns.

A pattern is a behavior, preference or workflow that appears in two or more sessions.
Look for:

1. Repetitive instructions the user gives across sessions ("always use uv, not pip").
2. Recurring mistakes: the same class of error the assistant keeps making.
3. Workflow patterns: multi-step procedures the user walks the assistant through repeatedly.
4. Explicit directives: "always", "never" or "must" statements of a project rule. These count
   even from a single session (confidence 0.7-0.85, target `claude_md`).

Do not report one-time bug fixes or task-specific instructions.

Confidence: single session without directive language 0.4-0.5; two sessions 0.6-0.75;
three or more sessions 0.7-1.0.

suggested_target:
- `claude_md`: simple rules and project conventions
- `skill`: multi-step procedures (needs 2+ sessions)
- `global_agent`: cross-project personal preferences (needs 2+ sessions)
- `db_only`: real but already covered by installed context

## Existing Patterns

Before proposing a "new" pattern, check these. If a finding is about the same behavior, even
in completely different words, return an "update" with that pattern's id instead.

```json
{patterns_json}
```
{context_section}
## Session Data

```json
{sessions_json}
```

## Response Format

Return only a JSON object:

{{
  "reasoning": "one or two sentences on what you observed",
  "patterns": [
    {{
      "action": "new",
      "pattern_type": "repetitive_instruction",
      "description": "specific observed behavior",
      "confidence": 0.85,
      "source_sessions": ["session-id-1", "session-id-2"],
      "related_files": ["path/to/file"],
      "suggested_content": "the rule or instruction exactly as it should appear",
      "suggested_target": "claude_md"
    }},
    {{
      "action": "update",
      "existing_id": "existing-pattern-id",
      "new_sessions": ["session-id-3"],
      "new_confidence": 0.92
    }}
  ]
}}

Only include patterns with confidence >= 0.4. If nothing qualifies, return
{{"reasoning": "...", "patterns": []}}."""

    return AnalysisPrompt(text=text, session_ids=[s["session_id"] for s in kept])


def build_context_summary(project_root: Path | None, claude_dir: Path) -> str:
    """Summary of skills, managed rules and agents already installed."""
    sections: list[str] = []

    if project_root is not None:
        skills = []
        for skill_file in sorted((project_root / ".claude" / "skills").glob("*/SKILL.md")):
            meta = _read_frontmatter(skill_file)
            if meta.get("name"):
                skills.append(f"- {meta['name']}: {meta.get('description', '')}")
        if skills:
            sections.append("### Project Skills\n" + "\n".join(skills) + "\n")

        claude_md = project_root / "CLAUDE.md"
        if claude_md.exists():
            rules = read_managed_section(claude_md.read_text(encoding="utf-8", errors="replace"))
            if rules:
                bullets = "\n".join(f"- {r}" for r in rules)
                sections.append(f"### Existing CLAUDE.md Rules (retro-managed)\n{bullets}\n")

    agents = [f"- {p.stem}" for p in sorted((claude_dir / "agents").glob("*.md"))]
    if agents:
        sections.append("### Global Agents\n" + "\n".join(agents) + "\n")

    return "\n".join(sections)[:MAX_CONTEXT_SUMMARY_CHARS]


def _read_frontmatter(path: Path) -> dict[str, str]:
    try:
        return parse_frontmatter(path.read_text(encoding="utf-8", errors="replace")) or {}
    except OSError:
        return {}
