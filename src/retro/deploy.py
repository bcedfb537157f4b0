"""Shared-track delivery through a review branch and pull request.

The workflow moves through::

    original branch -> fetched -> stashed? -> branched -> written
        -> committed -> (pushed -> PR opened)? -> original branch restored

Failures before a branch exists fall back to writing on the current branch.
Failures after it exists are reported with the branch name. Whatever happens,
the final step returns to the original branch and restores the stash.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .exceptions import GitError, RetroError
from .git import GitClient
from .util import utc_now

logger = logging.getLogger(__name__)

UPDATES_BRANCH_PREFIX = "retro/updates-"
CURATE_BRANCH_PREFIX = "retro/curate-"


class DeployMode(str, Enum):
    """How the files ended up on disk."""

    DIRECT = "direct"  # on the current branch
    BRANCH = "branch"  # on a fresh review branch


@dataclass
class DeployItem:
    """One entry of the PR summary."""

    label: str  # "skill" or "rule"
    description: str


@dataclass
class ChangeRequest:
    """Branch naming plus commit and PR text for one delivery."""

    branch_prefix: str
    commit_message: str
    title: str
    body: str


@dataclass
class DeployResult:
    """Outcome of one workflow run."""

    mode: DeployMode
    files_written: list[Path] = field(default_factory=list)
    branch: str | None = None
    committed: bool = False
    pushed: bool = False
    pr_url: str | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    patterns_activated: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.files_written)


def branch_name(prefix: str, now: datetime) -> str:
    return f"{prefix}{now.strftime('%Y%m%d-%H%M%S')}"


def updates_request(items: list[DeployItem]) -> ChangeRequest:
    """Commit and PR text for shared rules and skills."""
    count = len(items)
    lines = "\n".join(f"- **[{item.label}]** {item.description}" for item in items)
    return ChangeRequest(
        branch_prefix=UPDATES_BRANCH_PREFIX,
        commit_message=f"retro: update {count} shared context items\n\nAuto-generated by retro apply.",
        title=f"retro: update {count} context items",
        body=f"## Retro Auto-Generated Updates\n\n{lines}\n\n---\nGenerated by `retro apply`.\n",
    )


class DeploymentWorkflow:
    """Branch, commit, push and PR state machine."""

    def __init__(
        self,
        git: GitClient,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.git = git
        self.clock = clock

    def run(self, write: Callable[[], list[Path]], request: ChangeRequest) -> DeployResult:
        """Deliver shared files.

        Args:
            write: Writes the files and returns their paths; may raise RetroError
            request: Branch prefix, commit message and PR text

        Returns:
            Result describing what happened; never raises for git failures
        """
        result = DeployResult(mode=DeployMode.DIRECT)
        if not self.git.is_repo():
            return self._write_direct(write, result)

        try:
            original = self.git.current_branch()
            default = self.git.default_branch()
            self.git.fetch(default)
        except GitError as e:
            result.warnings.append(f"Could not prepare review branch ({e}); writing on current branch")
            return self._write_direct(write, result)

        try:
            stashed = self.git.stash_push()
        except GitError as e:
            result.warnings.append(f"Could not stash local changes ({e}); writing on current branch")
            return self._write_direct(write, result)

        name = branch_name(request.branch_prefix, self.clock())
        try:
            self.git.create_branch(name, f"origin/{default}")
        except GitError as e:
            result.warnings.append(f"Could not create branch {name} ({e}); writing on current branch")
            if stashed:
                self._best_effort(self.git.stash_pop, "restore stash")
            return self._write_direct(write, result)

        result.mode = DeployMode.BRANCH
        result.branch = name
        try:
            self._deliver(write, request, default, result)
        finally:
            self._restore(original, stashed, result)
        return result

    def _deliver(
        self,
        write: Callable[[], list[Path]],
        request: ChangeRequest,
        default: str,
        result: DeployResult,
    ) -> None:
        try:
            result.files_written = write()
        except RetroError as e:
            # Branch and stash are left as they are for manual cleanup.
            result.error = f"Writing files on branch {result.branch} failed: {e}"
            return

        if not result.files_written:
            return

        try:
            self.git.commit_files(result.files_written, request.commit_message)
        except GitError as e:
            result.warnings.append(f"Commit on {result.branch} failed: {e}")
            return
        result.committed = True

        if not self.git.is_pr_tool_available():
            result.warnings.append(
                f"Changes committed to branch `{result.branch}`. Install `gh` to open PRs automatically.",
            )
            return

        try:
            self.git.push_current_branch()
        except GitError as e:
            result.warnings.append(
                f"Push failed ({e}). Changes committed to branch `{result.branch}`. "
                "Push and create PR manually.",
            )
            return
        result.pushed = True

        try:
            result.pr_url = self.git.create_pr(request.title, request.body, default) or None
        except GitError as e:
            result.warnings.append(
                f"PR creation failed ({e}). Branch `{result.branch}` is pushed; create PR manually.",
            )

    def _restore(self, original: str, stashed: bool, result: DeployResult) -> None:
        if not self._best_effort(lambda: self.git.checkout(original), "return to original branch"):
            result.warnings.append(f"Could not switch back to {original}")
        if stashed and not self._best_effort(self.git.stash_pop, "restore stash"):
            result.warnings.append("Could not restore stashed changes; run `git stash pop`")

    def _write_direct(self, write: Callable[[], list[Path]], result: DeployResult) -> DeployResult:
        try:
            result.files_written = write()
        except RetroError as e:
            result.error = f"Writing files failed: {e}"
        return result

    @staticmethod
    def _best_effort(step: Callable[[], None], what: str) -> bool:
        try:
            step()
        except GitError as e:
            logger.warning("Failed to %s: %s", what, e)
            return False
        return True
