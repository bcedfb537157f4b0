"""Thin wrapper around the git and gh command-line tools.

Every method blocks on a subprocess. Failures raise GitError, which callers
are expected to recover from.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from .exceptions import GitError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120


class GitClient:
    """git/gh operations scoped to one working directory."""

    def __init__(self, cwd: Path) -> None:
        self.cwd = Path(cwd)

    def _run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        logger.debug("Running %s in %s", " ".join(args), self.cwd)
        try:
            completed = subprocess.run(
                args,
                cwd=str(self.cwd),
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as e:
            msg = f"{args[0]} not found on PATH"
            raise GitError(msg, details={"command": args}) from e
        except (subprocess.TimeoutExpired, OSError) as e:
            msg = f"{' '.join(args[:3])} failed: {e}"
            raise GitError(msg, details={"command": args}) from e

        if check and completed.returncode != 0:
            stderr = completed.stderr.strip() or completed.stdout.strip()
            msg = f"{' '.join(args[:3])} failed: {stderr}"
            raise GitError(msg, details={"command": args, "returncode": completed.returncode})
        return completed

    def _git(self, *args: str) -> str:
        return self._run(["git", *args]).stdout.strip()

    def is_repo(self) -> bool:
        try:
            result = self._run(["git", "rev-parse", "--is-inside-work-tree"], check=False)
        except GitError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def repo_root(self) -> Path:
        return Path(self._git("rev-parse", "--show-toplevel"))

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD")

    def default_branch(self) -> str:
        """Default branch of the GitHub remote."""
        name = self._run(
            [
                "gh",
                "repo",
                "view",
                "--json",
                "defaultBranchRef",
                "-q",
                ".defaultBranchRef.name",
            ],
        ).stdout.strip()
        if not name:
            msg = "gh returned an empty default branch"
            raise GitError(msg)
        return name

    def fetch(self, branch: str) -> None:
        self._git("fetch", "origin", branch)

    def stash_push(self) -> bool:
        """Stash local changes; False when there was nothing to stash."""
        output = self._run(
            ["git", "stash", "push", "-m", "retro: auto-stash before applying changes"],
        ).stdout
        return "No local changes" not in output

    def stash_pop(self) -> None:
        self._git("stash", "pop")

    def create_branch(self, name: str, start_point: str | None = None) -> None:
        args = ["checkout", "-b", name]
        if start_point:
            args.append(start_point)
        self._git(*args)

    def checkout(self, name: str) -> None:
        self._git("checkout", name)

    def commit_files(self, paths: list[Path], message: str) -> None:
        """Stage exactly these paths and commit them."""
        self._git("add", "--", *[str(p) for p in paths])
        self._git("commit", "-m", message)

    def push_current_branch(self) -> None:
        self._git("push", "-u", "origin", "HEAD")

    def create_pr(self, title: str, body: str, base: str) -> str:
        """Open a pull request and return its URL."""
        output = self._run(
            ["gh", "pr", "create", "--title", title, "--body", body, "--base", base],
        ).stdout.strip()
        lines = output.splitlines()
        return lines[-1].strip() if lines else ""

    def pr_state(self, url: str) -> str:
        """OPEN, CLOSED or MERGED."""
        return self._run(["gh", "pr", "view", url, "--json", "state", "-q", ".state"]).stdout.strip()

    def is_pr_tool_available(self) -> bool:
        return shutil.which("gh") is not None


def git_root_or_cwd(cwd: Path | None = None) -> Path:
    """Top of the enclosing repository, or the directory itself."""
    base = Path(cwd or Path.cwd())
    client = GitClient(base)
    if client.is_repo():
        try:
            return client.repo_root()
        except GitError:
            return base
    return base
