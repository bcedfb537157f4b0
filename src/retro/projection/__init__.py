"""Projection of patterns into rules, skills and agents."""

from .executor import (
    ExecuteResult,
    PlanExecutor,
    action_from_projection,
    render_claude_md,
    save_plan_for_review,
    track_for,
)
from .managed_section import (
    apply_edits,
    dissolve,
    has_managed_section,
    is_edit_action,
    parse_edit,
    read_managed_section,
    replace,
)
from .planner import ProjectionPlanner, qualifying_patterns

__all__ = [
    "ExecuteResult",
    "PlanExecutor",
    "ProjectionPlanner",
    "action_from_projection",
    "apply_edits",
    "dissolve",
    "has_managed_section",
    "is_edit_action",
    "parse_edit",
    "qualifying_patterns",
    "read_managed_section",
    "render_claude_md",
    "replace",
    "save_plan_for_review",
    "track_for",
]
