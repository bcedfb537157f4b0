"""Projection planner: which patterns to deliver, and as what."""

from __future__ import annotations

import logging
from pathlib import Path

from ..backend import AnalysisBackend
from ..config import RetroConfig
from ..exceptions import AnalysisError
from ..models import (
    ApplyAction,
    ApplyPlan,
    ApplyTrack,
    Pattern,
    PatternStatus,
    ProjectionStatus,
    SuggestedTarget,
)
from ..store import PatternStore
from .agent import agent_path
from .generation import AGENT, MAX_RETRIES, SKILL, generate_with_retry
from .skill import skill_path

logger = logging.getLogger(__name__)

NON_TERMINAL = [ProjectionStatus.APPLIED, ProjectionStatus.PENDING_REVIEW]


def qualifying_patterns(
    patterns: list[Pattern],
    confidence_threshold: float,
    already_projected_ids: set[str],
) -> list[Pattern]:
    """Patterns eligible for projection, in input order."""
    return [
        p
        for p in patterns
        if p.confidence >= confidence_threshold
        and p.suggested_target != SuggestedTarget.DB_ONLY
        and not p.generation_failed
        and p.id not in already_projected_ids
    ]


def claude_md_path(project_root: Path) -> Path:
    return project_root / "CLAUDE.md"


class ProjectionPlanner:
    """Builds an ApplyPlan, generating skill and agent content as needed."""

    def __init__(
        self,
        store: PatternStore,
        config: RetroConfig,
        backend: AnalysisBackend,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.store = store
        self.config = config
        self.backend = backend
        self.max_retries = max_retries

    def find_qualifying(self, project: str | None) -> list[Pattern]:
        """Qualifying patterns, re-checking projections at call time."""
        patterns = self.store.get_patterns(
            [PatternStatus.DISCOVERED, PatternStatus.ACTIVE],
            project,
        )
        projected = self.store.get_projected_pattern_ids(NON_TERMINAL)
        return qualifying_patterns(
            patterns,
            self.config.analysis.confidence_threshold,
            projected,
        )

    def build_plan(self, project: str | None, project_root: Path) -> ApplyPlan:
        """Plan every qualifying pattern.

        Generation failures mark the pattern and leave it out of the plan.

        Args:
            project: Pattern scope to plan for
            project_root: Repository that shared artifacts land in

        Returns:
            Ordered plan: rules, then skills, then agents
        """
        qualifying = self.find_qualifying(project)
        plan = ApplyPlan()
        if not qualifying:
            return plan

        by_target: dict[SuggestedTarget, list[Pattern]] = {}
        for pattern in qualifying:
            by_target.setdefault(pattern.suggested_target, []).append(pattern)

        rules_file = claude_md_path(project_root)
        for pattern in by_target.get(SuggestedTarget.CLAUDE_MD, []):
            plan.actions.append(
                ApplyAction(
                    pattern_id=pattern.id,
                    pattern_description=pattern.description,
                    target_type=SuggestedTarget.CLAUDE_MD,
                    target_path=str(rules_file),
                    content=pattern.suggested_content or pattern.description,
                    track=ApplyTrack.SHARED,
                ),
            )

        for pattern in by_target.get(SuggestedTarget.SKILL, []):
            action = self._generate(pattern, project_root)
            if action is not None:
                plan.actions.append(action)

        for pattern in by_target.get(SuggestedTarget.GLOBAL_AGENT, []):
            action = self._generate(pattern, project_root)
            if action is not None:
                plan.actions.append(action)

        return plan

    def _generate(self, pattern: Pattern, project_root: Path) -> ApplyAction | None:
        is_skill = pattern.suggested_target == SuggestedTarget.SKILL
        kind = SKILL if is_skill else AGENT
        try:
            draft = generate_with_retry(self.backend, pattern, kind, self.max_retries)
        except AnalysisError as e:
            logger.warning("%s generation failed for pattern %s: %s", kind.label, pattern.id, e)
            self.store.set_generation_failed(pattern.id, True)
            return None

        if is_skill:
            path = skill_path(project_root, draft.name)
            track = ApplyTrack.SHARED
        else:
            path = agent_path(self.config.claude_dir(), draft.name)
            track = ApplyTrack.PERSONAL

        return ApplyAction(
            pattern_id=pattern.id,
            pattern_description=pattern.description,
            target_type=pattern.suggested_target,
            target_path=str(path),
            content=draft.content,
            track=track,
        )
