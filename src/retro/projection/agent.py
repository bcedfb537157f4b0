"""Global agent prompts and placement."""

from __future__ import annotations

from pathlib import Path

from ..models import Pattern


def agent_path(claude_dir: Path, name: str) -> Path:
    """{claude_dir}/agents/{name}.md"""
    return claude_dir / "agents" / f"{name}.md"


def build_generation_prompt(pattern: Pattern, feedback: str | None = None) -> str:
    related = ", ".join(pattern.related_files) or "None"
    feedback_section = ""
    if feedback:
        feedback_section = (
            "\n## Previous Attempt Feedback\n\n"
            f"Your previous attempt was rejected: {feedback}\n"
        )

    return f"""You write Claude Code global agents: personal agent definitions that apply across every project.

Write an agent for this discovered pattern:

**Pattern Type:** {pattern.pattern_type.value}
**Description:** {pattern.description}
**Suggested Content:** {pattern.suggested_content}
**Related Files:** {related}
**Times Seen:** {pattern.times_seen}
{feedback_section}
## Format

---
name: lowercase-letters-numbers-hyphens-only
description: When and how to use this agent
model: sonnet
color: blue
---

[Body: clear instructions for the agent's behavior.]

Return only the agent file content."""


def build_validation_prompt(content: str, pattern: Pattern) -> str:
    return f"""Review this Claude Code global agent against the pattern it was written for.

```
{content}
```

**Pattern:** {pattern.description}

Criteria: name is lowercase letters, digits and hyphens; description says when to use the agent;
the body gives concrete behavior; the agent is useful across projects.

Return only JSON: {{"valid": true, "feedback": ""}} or {{"valid": false, "feedback": "what to fix"}}"""
