"""Automatic-mode sequencing: ingest, then analyze, then apply.

Every stage is gated on its own cooldown, read from the store. A stage that
fails or is skipped is written to the audit log and the next stage still
gets its own chance to run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from . import audit_log
from .analysis import AnalysisScheduler
from .backend import AnalysisBackend
from .config import DataPaths, RetroConfig
from .exceptions import RetroError
from .ingest.scanner import SessionScanner
from .lock import ProcessLock
from .projection.executor import save_plan_for_review
from .projection.planner import ProjectionPlanner
from .prompts import build_context_summary
from .store import PatternStore
from .util import utc_now

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    INGEST = "ingest"
    ANALYZE = "analyze"
    APPLY = "apply"


class SkipReason(str, Enum):
    COOLDOWN = "cooldown"
    SESSION_CAP = "session_cap"
    NO_DATA = "no_data"
    NO_QUALIFYING_PATTERNS = "no_qualifying_patterns"


@dataclass
class StageOutcome:
    stage: Stage
    ran: bool = False
    skip_reason: SkipReason | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class AutoRunReport:
    """Per-stage outcomes of one automatic run."""

    lock_acquired: bool = True
    outcomes: list[StageOutcome] = field(default_factory=list)

    def outcome(self, stage: Stage) -> StageOutcome | None:
        for outcome in self.outcomes:
            if outcome.stage == stage:
                return outcome
        return None


def within_cooldown(last: datetime | None, minutes: int, now: datetime | None = None) -> bool:
    """Whether an action last run at ``last`` must still wait."""
    if last is None:
        return False
    return (now or utc_now()) - last < timedelta(minutes=minutes)


def interactive_lock(paths: DataPaths) -> ProcessLock:
    """Lock for a user-driven command.

    Raises:
        LockError: If another live process holds the lock
    """
    return ProcessLock.acquire(paths.lock)


class OrchestrationController:
    """Runs the automatic pipeline under the process lock."""

    def __init__(
        self,
        store: PatternStore,
        config: RetroConfig,
        paths: DataPaths,
        backend: AnalysisBackend,
        scanner: SessionScanner | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.paths = paths
        self.backend = backend
        self.scanner = scanner or SessionScanner(store, config)
        self.clock = clock

    def default_stages(self) -> list[Stage]:
        """Ingest, chained to analyze and apply when ``hooks.auto_apply`` is on."""
        if self.config.hooks.auto_apply:
            return [Stage.INGEST, Stage.ANALYZE, Stage.APPLY]
        return [Stage.INGEST]

    def run_auto(
        self,
        project_root: Path | None,
        stages: list[Stage] | None = None,
    ) -> AutoRunReport:
        """One hook-triggered run; a held lock makes it a silent no-op.

        Args:
            project_root: Project to work on, or None for every project
            stages: Stages to attempt, in order; defaults to default_stages()
        """
        lock = ProcessLock.try_acquire(self.paths.lock)
        if lock is None:
            logger.info("Another retro process holds the lock; skipping")
            return AutoRunReport(lock_acquired=False)

        project = str(project_root) if project_root is not None else None
        runners: dict[Stage, Callable[[], StageOutcome]] = {
            Stage.INGEST: lambda: self.ingest(project),
            Stage.ANALYZE: lambda: self.analyze(project, project_root),
            Stage.APPLY: lambda: self.apply(project, project_root),
        }

        report = AutoRunReport()
        with lock:
            for stage in stages if stages is not None else self.default_stages():
                report.outcomes.append(self._stage(stage, runners[stage]))
        return report

    def ingest(self, project: str | None) -> StageOutcome:
        outcome = StageOutcome(Stage.INGEST)
        if self._cooling_down(self.store.last_ingested_at(), self.config.hooks.ingest_cooldown_minutes):
            outcome.skip_reason = SkipReason.COOLDOWN
            return outcome

        if project is None:
            result = self.scanner.ingest_all()
        else:
            result = self.scanner.ingest_project(project)
        outcome.ran = True
        outcome.details = {
            "sessions_ingested": result.sessions_ingested,
            "sessions_skipped": result.sessions_skipped,
            "errors": len(result.errors),
        }
        return outcome

    def analyze(self, project: str | None, project_root: Path | None) -> StageOutcome:
        outcome = StageOutcome(Stage.ANALYZE)
        if self._cooling_down(self.store.last_analyzed_at(), self.config.hooks.analyze_cooldown_minutes):
            outcome.skip_reason = SkipReason.COOLDOWN
            return outcome

        pending = self.store.unanalyzed_session_count(project)
        cap = self.config.hooks.auto_analyze_max_sessions
        if pending == 0:
            outcome.skip_reason = SkipReason.NO_DATA
            return outcome
        if pending > cap:
            outcome.skip_reason = SkipReason.SESSION_CAP
            outcome.details = {"unanalyzed_count": pending, "cap": cap}
            return outcome

        scheduler = AnalysisScheduler(self.store, self.config, self.backend)
        context = build_context_summary(project_root, self.config.claude_dir())
        result = scheduler.run(project, context_summary=context)
        outcome.ran = True
        outcome.details = result.model_dump()
        return outcome

    def apply(self, project: str | None, project_root: Path | None) -> StageOutcome:
        outcome = StageOutcome(Stage.APPLY)
        if self._cooling_down(self.store.last_applied_at(), self.config.hooks.apply_cooldown_minutes):
            outcome.skip_reason = SkipReason.COOLDOWN
            return outcome

        planner = ProjectionPlanner(self.store, self.config, self.backend)
        if not planner.find_qualifying(project):
            outcome.skip_reason = SkipReason.NO_QUALIFYING_PATTERNS
            return outcome

        plan = planner.build_plan(project, project_root or Path.cwd())
        if plan.is_empty():
            outcome.skip_reason = SkipReason.NO_QUALIFYING_PATTERNS
            return outcome

        saved = save_plan_for_review(self.store, plan)
        outcome.ran = True
        outcome.details = {"pending_review": saved}
        return outcome

    def _cooling_down(self, last: datetime | None, minutes: int) -> bool:
        return within_cooldown(last, minutes, self.clock())

    def _stage(self, stage: Stage, body: Callable[[], StageOutcome]) -> StageOutcome:
        try:
            outcome = body()
        except RetroError as e:
            logger.warning("Automatic %s failed: %s", stage.value, e)
            outcome = StageOutcome(stage, error=str(e))
        except Exception as e:
            logger.exception("Automatic %s failed unexpectedly", stage.value)
            outcome = StageOutcome(stage, error=f"{type(e).__name__}: {e}")
        self._audit(outcome)
        return outcome

    def _audit(self, outcome: StageOutcome) -> None:
        details: dict[str, Any] = {"auto": True, **outcome.details}
        if outcome.error is not None:
            action = f"{outcome.stage.value}_error"
            details["error"] = outcome.error
        elif outcome.skip_reason is not None:
            action = f"{outcome.stage.value}_skipped"
            details["reason"] = outcome.skip_reason.value
        else:
            action = outcome.stage.value
        try:
            audit_log.append(self.paths.audit_log, action, details)
        except RetroError as e:
            logger.warning("Could not write audit entry %s: %s", action, e)
