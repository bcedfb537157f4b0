"""Shared fixtures and fakes for retro tests."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from retro.backend import AnalysisBackend
from retro.config import DataPaths
from retro.exceptions import AnalysisError, GitError
from retro.git import GitClient
from retro.models import BackendResponse, Pattern, PatternType, SuggestedTarget
from retro.store import PatternStore


class FakeBackend(AnalysisBackend):
    """Scripted stand-in for the claude CLI.

    Each call pops the next reply. A reply is a string, a dict (sent as JSON)
    or an exception instance to raise.
    """

    def __init__(self, replies: list[Any] | None = None) -> None:
        self.replies = list(replies or [])
        self.prompts: list[str] = []
        self.schemas: list[str | None] = []
        self.agentic_calls: list[tuple[str, Path | None]] = []

    def _next(self) -> BackendResponse:
        if not self.replies:
            msg = "FakeBackend ran out of replies"
            raise AnalysisError(msg)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return BackendResponse(text=reply, input_tokens=100, output_tokens=10)

    def execute(self, prompt: str, json_schema: str | None = None) -> BackendResponse:
        self.prompts.append(prompt)
        self.schemas.append(json_schema)
        return self._next()

    def execute_agentic(self, prompt: str, cwd: Path | None = None) -> BackendResponse:
        self.agentic_calls.append((prompt, cwd))
        return self._next()


class FakeGit(GitClient):
    """Records git/gh calls; methods named in ``failing`` raise GitError."""

    def __init__(
        self,
        repo: bool = True,
        gh: bool = True,
        failing: set[str] | None = None,
        stash_has_changes: bool = True,
        pr_url: str = "https://github.com/acme/app/pull/42",
        pr_states: dict[str, str] | None = None,
    ) -> None:
        super().__init__(Path("."))
        self.repo = repo
        self.gh = gh
        self.failing = failing or set()
        self.stash_has_changes = stash_has_changes
        self.pr_url = pr_url
        self.pr_states = pr_states or {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.failing:
            msg = f"{name} failed"
            raise GitError(msg)

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def is_repo(self) -> bool:
        self.calls.append(("is_repo", ()))
        return self.repo

    def current_branch(self) -> str:
        self._call("current_branch")
        return "feature"

    def default_branch(self) -> str:
        self._call("default_branch")
        return "main"

    def fetch(self, branch: str) -> None:
        self._call("fetch", branch)

    def stash_push(self) -> bool:
        self._call("stash_push")
        return self.stash_has_changes

    def stash_pop(self) -> None:
        self._call("stash_pop")

    def create_branch(self, name: str, start_point: str | None = None) -> None:
        self._call("create_branch", name, start_point)

    def checkout(self, name: str) -> None:
        self._call("checkout", name)

    def commit_files(self, paths: list[Path], message: str) -> None:
        self._call("commit_files", paths, message)

    def push_current_branch(self) -> None:
        self._call("push_current_branch")

    def create_pr(self, title: str, body: str, base: str) -> str:
        self._call("create_pr", title, body, base)
        return self.pr_url

    def pr_state(self, url: str) -> str:
        self._call("pr_state", url)
        return self.pr_states.get(url, "OPEN")

    def is_pr_tool_available(self) -> bool:
        return self.gh


@pytest.fixture
def store(tmp_path: Path) -> Iterator[PatternStore]:
    """Migrated store in a temporary directory."""
    with PatternStore.open(tmp_path / "retro.db") as s:
        yield s


@pytest.fixture
def data_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> DataPaths:
    """Data directory redirected through RETRO_HOME."""
    home = tmp_path / "retro-home"
    monkeypatch.setenv("RETRO_HOME", str(home))
    return DataPaths(home)


@pytest.fixture
def make_pattern() -> Callable[..., Pattern]:
    """Factory for patterns with sensible defaults."""
    counter = {"n": 0}

    def factory(**overrides: Any) -> Pattern:
        counter["n"] += 1
        fields: dict[str, Any] = {
            "id": f"p{counter['n']}",
            "pattern_type": PatternType.REPETITIVE_INSTRUCTION,
            "description": f"Pattern number {counter['n']}",
            "confidence": 0.8,
            "suggested_target": SuggestedTarget.CLAUDE_MD,
            "suggested_content": f"Rule number {counter['n']}",
        }
        fields.update(overrides)
        return Pattern(**fields)

    return factory


def skill_content(name: str = "run-tests") -> str:
    return (
        f"---\nname: {name}\n"
        "description: Use when committing changes that touch Python code\n---\n\n"
        "1. Run `pytest`.\n2. Commit only when green.\n"
    )


def agent_content(name: str = "reviewer") -> str:
    return (
        f"---\nname: {name}\ndescription: Reviews diffs before commit\n"
        "model: sonnet\ncolor: blue\n---\n\nReview every diff for missing tests.\n"
    )
