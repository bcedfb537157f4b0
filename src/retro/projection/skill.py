"""Skill prompts and placement."""

from __future__ import annotations

from pathlib import Path

from ..models import Pattern


def skill_path(project_root: Path, name: str) -> Path:
    """{project}/.claude/skills/{name}/SKILL.md"""
    return project_root / ".claude" / "skills" / name / "SKILL.md"


def build_generation_prompt(pattern: Pattern, feedback: str | None = None) -> str:
    related = ", ".join(pattern.related_files) or "None"
    feedback_section = ""
    if feedback:
        feedback_section = (
            "\n## Previous Attempt Feedback\n\n"
            f"Your previous attempt was rejected: {feedback}\n"
            "Address this feedback in the new attempt.\n"
        )

    return f"""You write Claude Code skills: reusable instruction files Claude Code discovers and applies on its own.

Write a skill for this discovered pattern:

**Pattern Type:** {pattern.pattern_type.value}
**Description:** {pattern.description}
**Suggested Content:** {pattern.suggested_content}
**Related Files:** {related}
**Times Seen:** {pattern.times_seen}
{feedback_section}
## Format

---
name: lowercase-letters-numbers-hyphens-only
description: Use when [triggering conditions, with keywords such as error messages, tools, file types].
---

[Body: numbered, actionable steps with concrete commands and paths.]

## Requirements

- name: lowercase letters, digits and hyphens only
- description: starts with "Use when" and states triggering conditions, not what the skill does
- frontmatter under 1024 characters

Return only the skill file content."""


def build_validation_prompt(content: str, pattern: Pattern) -> str:
    return f"""Review this Claude Code skill against the pattern it was written for.

## Skill

```
{content}
```

## Pattern

**Description:** {pattern.description}
**Suggested Content:** {pattern.suggested_content}

## Criteria

1. name is lowercase letters, digits and hyphens only
2. description starts with "Use when" and describes triggering conditions
3. frontmatter is under 1024 characters
4. body is specific and actionable
5. the skill addresses the pattern

Return only JSON: {{"valid": true, "feedback": ""}} or {{"valid": false, "feedback": "what to fix"}}"""
