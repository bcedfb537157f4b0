"""Delivery of an apply plan: personal files directly, shared files via PR."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .deploy import DeployItem, DeploymentWorkflow, DeployResult, updates_request
from .exceptions import RetroError
from .git import GitClient
from .models import ApplyAction, ApplyPlan, SuggestedTarget
from .projection.executor import ExecuteResult, PlanExecutor

logger = logging.getLogger(__name__)

ITEM_LABELS = {
    SuggestedTarget.SKILL: "skill",
    SuggestedTarget.CLAUDE_MD: "rule",
}


@dataclass
class DeliveryReport:
    """What happened to each track of a plan."""

    personal: ExecuteResult | None = None
    shared: DeployResult | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def patterns_activated(self) -> int:
        count = self.personal.patterns_activated if self.personal else 0
        if self.shared:
            count += self.shared.patterns_activated
        return count

    @property
    def pr_url(self) -> str | None:
        return self.shared.pr_url if self.shared else None


def deploy_items(actions: list[ApplyAction]) -> list[DeployItem]:
    return [
        DeployItem(ITEM_LABELS.get(a.target_type, "item"), a.pattern_description)
        for a in actions
    ]


def deliver_plan(
    plan: ApplyPlan,
    executor: PlanExecutor,
    project_root: Path,
    git: GitClient | None = None,
) -> DeliveryReport:
    """Run both tracks. A shared-track failure never blocks the personal track.

    Args:
        plan: Actions to deliver
        executor: Writes files and records projections
        project_root: Working tree the shared files belong to
        git: Client for that tree; built from project_root when omitted

    Returns:
        Per-track results and any errors that stopped a track
    """
    report = DeliveryReport()

    if plan.personal:
        try:
            report.personal = executor.execute(plan.personal)
        except RetroError as e:
            logger.warning("Personal track failed: %s", e)
            report.errors.append(f"personal: {e}")

    shared = plan.shared
    if not shared:
        return report

    written: list[ExecuteResult] = []

    def write() -> list[Path]:
        result = executor.write_files(shared)
        written.append(result)
        return result.files_written

    workflow = DeploymentWorkflow(git or GitClient(project_root))
    report.shared = workflow.run(write, updates_request(deploy_items(shared)))
    for warning in report.shared.warnings:
        logger.warning("%s", warning)

    if report.shared.error:
        report.errors.append(f"shared: {report.shared.error}")
        return report

    if written:
        try:
            executor.record(written[0].recorded, report.shared.pr_url)
        except RetroError as e:
            report.errors.append(f"shared: {e}")
            return report
        report.shared.patterns_activated = len(written[0].recorded)
    return report
