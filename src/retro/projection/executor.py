"""Plan execution: file writes with backups and projection bookkeeping."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from ..models import (
    ApplyAction,
    ApplyPlan,
    ApplyTrack,
    ClaudeMdEdit,
    PatternStatus,
    Projection,
    ProjectionStatus,
    SuggestedTarget,
)
from ..store import PatternStore
from ..util import backup_file, read_text, utc_now, write_text
from . import managed_section

logger = logging.getLogger(__name__)


@dataclass
class ExecuteResult:
    """What a write pass produced."""

    files_written: list[Path] = field(default_factory=list)
    recorded: list[ApplyAction] = field(default_factory=list)
    skipped: list[ApplyAction] = field(default_factory=list)

    @property
    def patterns_activated(self) -> int:
        return len(self.recorded)


def track_for(target_type: SuggestedTarget) -> ApplyTrack:
    """Agents are personal; rules and skills are shared with the repository."""
    if target_type == SuggestedTarget.GLOBAL_AGENT:
        return ApplyTrack.PERSONAL
    return ApplyTrack.SHARED


def action_from_projection(projection: Projection, description: str) -> ApplyAction:
    """Rebuild an action from a pending-review projection."""
    return ApplyAction(
        pattern_id=projection.pattern_id,
        pattern_description=description,
        target_type=projection.target_type,
        target_path=projection.target_path,
        content=projection.content,
        track=track_for(projection.target_type),
        projection_id=projection.id,
    )


def render_claude_md(
    existing: str,
    edits: list[ClaudeMdEdit],
    rules: list[str],
    full_management: bool = False,
) -> str:
    """New CLAUDE.md text: structured edits first, then the plain rules.

    Plain rules join those already in the managed block. Under full
    management the block is dissolved and rules are appended as bullets.
    """
    text = existing
    if full_management and managed_section.has_managed_section(text):
        text = managed_section.dissolve(text)

    if edits:
        text = managed_section.apply_edits(text, edits)

    rules = [line for line in (" ".join(rule.split()) for rule in rules) if line]
    if not rules:
        return text

    if full_management:
        present = {line.strip() for line in text.splitlines()}
        for rule in rules:
            bullet = f"- {rule}"
            if bullet in present:
                continue
            text = managed_section.apply_edit(
                text,
                ClaudeMdEdit(edit_type="add", original_text=rule, reasoning="retro rule"),
            )
            present.add(bullet)
        return text

    merged = list(managed_section.read_managed_section(text) or [])
    for rule in rules:
        if rule not in merged:
            merged.append(rule)
    return managed_section.replace(text, merged)


class PlanExecutor:
    """Writes plan actions to disk and records them in the store."""

    def __init__(
        self,
        store: PatternStore,
        backup_dir: Path,
        full_management: bool = False,
    ) -> None:
        self.store = store
        self.backup_dir = backup_dir
        self.full_management = full_management

    def write_files(self, actions: list[ApplyAction]) -> ExecuteResult:
        """Write every action's file. Rules for one file are folded into one write.

        Raises:
            FileOperationError: If a read, backup or write fails
        """
        result = ExecuteResult()

        rules_by_file: dict[str, list[ApplyAction]] = {}
        for action in actions:
            if action.target_type == SuggestedTarget.CLAUDE_MD:
                rules_by_file.setdefault(action.target_path, []).append(action)

        for target, rule_actions in rules_by_file.items():
            edits: list[ClaudeMdEdit] = []
            rules: list[str] = []
            for action in rule_actions:
                if managed_section.is_edit_action(action.content):
                    edit = managed_section.parse_edit(action.content)
                    if edit is None:
                        logger.warning("Skipping malformed edit for pattern %s", action.pattern_id)
                        result.skipped.append(action)
                        continue
                    edits.append(edit)
                else:
                    rules.append(action.content)
                result.recorded.append(action)

            if not edits and not rules:
                continue

            path = Path(target)
            existing = read_text(path)
            backup_file(path, self.backup_dir)
            write_text(path, render_claude_md(existing, edits, rules, self.full_management))
            result.files_written.append(path)

        for action in actions:
            if action.target_type == SuggestedTarget.CLAUDE_MD:
                continue
            path = Path(action.target_path)
            backup_file(path, self.backup_dir)
            write_text(path, action.content)
            result.files_written.append(path)
            result.recorded.append(action)

        return result

    def record(self, actions: list[ApplyAction], pr_url: str | None = None) -> None:
        """Mark actions applied: projection rows, pattern status, last_projected."""
        now = utc_now()
        for action in actions:
            if action.projection_id is not None:
                self.store.update_projection_status(action.projection_id, ProjectionStatus.APPLIED)
                if pr_url:
                    self.store.update_projection_pr_url(action.projection_id, pr_url)
            else:
                self.store.insert_projection(
                    Projection(
                        id=str(uuid.uuid4()),
                        pattern_id=action.pattern_id,
                        target_type=action.target_type,
                        target_path=action.target_path,
                        content=action.content,
                        applied_at=now,
                        pr_url=pr_url,
                        status=ProjectionStatus.APPLIED,
                    ),
                )
            self.store.update_pattern_status(action.pattern_id, PatternStatus.ACTIVE)
            self.store.update_pattern_last_projected(action.pattern_id, now)

    def execute(self, actions: list[ApplyAction]) -> ExecuteResult:
        """Write then record, for tracks that need no review branch."""
        result = self.write_files(actions)
        self.record(result.recorded)
        return result


def save_plan_for_review(store: PatternStore, plan: ApplyPlan) -> int:
    """Record every action as a pending-review projection without writing files."""
    now = utc_now()
    for action in plan.actions:
        store.insert_projection(
            Projection(
                id=str(uuid.uuid4()),
                pattern_id=action.pattern_id,
                target_type=action.target_type,
                target_path=action.target_path,
                content=action.content,
                applied_at=now,
                status=ProjectionStatus.PENDING_REVIEW,
            ),
        )
    return len(plan.actions)
