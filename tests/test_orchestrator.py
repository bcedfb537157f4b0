"""Tests for automatic-mode sequencing."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from conftest import FakeBackend

from retro import audit_log
from retro.config import DataPaths, HooksConfig, PathsConfig, RetroConfig
from retro.exceptions import AnalysisError, LockError
from retro.models import IngestedSession, Pattern, Projection, SuggestedTarget
from retro.orchestrator import (
    OrchestrationController,
    SkipReason,
    Stage,
    interactive_lock,
    within_cooldown,
)
from retro.store import PatternStore
from retro.util import utc_now


@pytest.fixture
def config(tmp_path: Path) -> RetroConfig:
    return RetroConfig(paths=PathsConfig(claude_dir=str(tmp_path / "claude")))


def record_sessions(
    store: PatternStore,
    root: Path,
    count: int,
    write_files: bool = False,
    project: str = "/work/app",
) -> None:
    for i in range(count):
        path = root / f"s{i}.jsonl"
        if write_files:
            path.parent.mkdir(parents=True, exist_ok=True)
            lines = [
                {"type": "user", "message": {"role": "user", "content": "first"}},
                {"type": "user", "message": {"role": "user", "content": "second"}},
            ]
            path.write_text("\n".join(json.dumps(line) for line in lines) + "\n")
        store.record_ingested_session(
            IngestedSession(
                session_id=f"s{i}",
                project=project,
                session_path=str(path),
                file_size=10,
                file_mtime=utc_now().isoformat(),
            ),
        )


def actions(data_paths: DataPaths) -> list[str]:
    return [e.action for e in audit_log.read_entries(data_paths.audit_log)]


class TestCooldown:
    """Tests for the cooldown predicate."""

    def test_within_cooldown(self) -> None:
        """Strictly less than the cooldown still waits."""
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert not within_cooldown(None, 5, now)
        assert within_cooldown(now - timedelta(minutes=4), 5, now)
        assert not within_cooldown(now - timedelta(minutes=5), 5, now)
        assert not within_cooldown(now, 0, now)


class TestOrchestrationController:
    """Tests for stage gating, auditing and locking."""

    def test_held_lock_is_silent_noop(
        self,
        store: PatternStore,
        config: RetroConfig,
        data_paths: DataPaths,
    ) -> None:
        """A live holder makes the run do nothing at all."""
        data_paths.root.mkdir(parents=True)
        data_paths.lock.write_text(f"{os.getpid()}\n")

        report = OrchestrationController(store, config, data_paths, FakeBackend()).run_auto(None)

        assert not report.lock_acquired
        assert report.outcomes == []
        assert not data_paths.audit_log.exists()

    def test_interactive_lock_fails_loudly(self, data_paths: DataPaths) -> None:
        """User commands get an error instead of a silent skip."""
        with interactive_lock(data_paths), pytest.raises(LockError):
            interactive_lock(data_paths)

    def test_ingest_cooldown_lets_chain_continue(
        self,
        store: PatternStore,
        config: RetroConfig,
        data_paths: DataPaths,
        tmp_path: Path,
    ) -> None:
        """A cooling ingest stage is skipped while analyze and apply still run."""
        record_sessions(store, tmp_path / "logs", 1)
        controller = OrchestrationController(store, config, data_paths, FakeBackend())

        report = controller.run_auto(None)

        assert [o.stage for o in report.outcomes] == [Stage.INGEST, Stage.ANALYZE, Stage.APPLY]
        assert report.outcome(Stage.INGEST).skip_reason == SkipReason.COOLDOWN  # type: ignore[union-attr]
        assert report.outcome(Stage.ANALYZE).ran  # type: ignore[union-attr]
        assert report.outcome(Stage.APPLY).skip_reason == SkipReason.NO_QUALIFYING_PATTERNS  # type: ignore[union-attr]
        assert actions(data_paths) == ["ingest_skipped", "analyze", "apply_skipped"]
        first = audit_log.read_entries(data_paths.audit_log)[0]
        assert first.details == {"auto": True, "reason": "cooldown"}
        assert not data_paths.lock.exists()

    def test_session_cap(
        self,
        store: PatternStore,
        config: RetroConfig,
        data_paths: DataPaths,
        tmp_path: Path,
    ) -> None:
        """Too many pending sessions skip analysis with the counts recorded."""
        record_sessions(store, tmp_path / "logs", 16)
        backend = FakeBackend()
        report = OrchestrationController(store, config, data_paths, backend).run_auto(None, [Stage.ANALYZE])

        outcome = report.outcome(Stage.ANALYZE)
        assert outcome is not None
        assert outcome.skip_reason == SkipReason.SESSION_CAP
        assert outcome.details == {"unanalyzed_count": 16, "cap": 15}
        assert backend.prompts == []
        (entry,) = audit_log.read_entries(data_paths.audit_log)
        assert entry.details["reason"] == "session_cap"
        assert entry.details["unanalyzed_count"] == 16

    def test_no_data(self, store: PatternStore, config: RetroConfig, data_paths: DataPaths) -> None:
        """Nothing pending means nothing to analyze."""
        report = OrchestrationController(store, config, data_paths, FakeBackend()).run_auto(None, [Stage.ANALYZE])
        assert report.outcome(Stage.ANALYZE).skip_reason == SkipReason.NO_DATA  # type: ignore[union-attr]

    def test_stage_error_does_not_stop_next_stage(
        self,
        store: PatternStore,
        config: RetroConfig,
        data_paths: DataPaths,
        make_pattern: Callable[..., Pattern],
        tmp_path: Path,
    ) -> None:
        """An analysis failure is audited and apply still saves for review."""
        record_sessions(store, tmp_path / "logs", 1, write_files=True, project=str(tmp_path / "repo"))
        store.insert_pattern(make_pattern(id="rule"))
        backend = FakeBackend([AnalysisError("claude CLI timed out after 300s")])
        controller = OrchestrationController(store, config, data_paths, backend)

        report = controller.run_auto(tmp_path / "repo", [Stage.ANALYZE, Stage.APPLY])

        assert report.outcome(Stage.ANALYZE).error == "claude CLI timed out after 300s"  # type: ignore[union-attr]
        apply_outcome = report.outcome(Stage.APPLY)
        assert apply_outcome is not None
        assert apply_outcome.ran
        assert apply_outcome.details == {"pending_review": 1}
        assert actions(data_paths) == ["analyze_error", "apply"]
        (pending,) = store.get_pending_review_projections()
        assert pending.target_path == str(tmp_path / "repo" / "CLAUDE.md")

    def test_unexpected_stage_error_does_not_stop_next_stage(
        self,
        store: PatternStore,
        config: RetroConfig,
        data_paths: DataPaths,
        make_pattern: Callable[..., Pattern],
        tmp_path: Path,
    ) -> None:
        """A filesystem error in analysis is audited like any other failure."""
        repo = tmp_path / "repo"
        (repo / "CLAUDE.md").mkdir(parents=True)
        record_sessions(store, tmp_path / "logs", 1, write_files=True, project=str(repo))
        store.insert_pattern(make_pattern(id="rule"))
        controller = OrchestrationController(store, config, data_paths, FakeBackend())

        report = controller.run_auto(repo, [Stage.ANALYZE, Stage.APPLY])

        analyze_outcome = report.outcome(Stage.ANALYZE)
        assert analyze_outcome is not None
        assert analyze_outcome.error is not None
        assert not analyze_outcome.ran
        apply_outcome = report.outcome(Stage.APPLY)
        assert apply_outcome is not None
        assert apply_outcome.ran
        assert actions(data_paths) == ["analyze_error", "apply"]
        (entry, _) = audit_log.read_entries(data_paths.audit_log)
        assert entry.details["error"] == analyze_outcome.error
        assert not data_paths.lock.exists()

    def test_apply_cooldown(
        self,
        store: PatternStore,
        config: RetroConfig,
        data_paths: DataPaths,
        make_pattern: Callable[..., Pattern],
    ) -> None:
        """A recent projection holds apply back."""
        store.insert_pattern(make_pattern(id="a"))
        store.insert_projection(
            Projection(
                id="x",
                pattern_id="a",
                target_type=SuggestedTarget.CLAUDE_MD,
                target_path="/repo/CLAUDE.md",
                content="c",
            ),
        )
        report = OrchestrationController(store, config, data_paths, FakeBackend()).run_auto(None, [Stage.APPLY])
        assert report.outcome(Stage.APPLY).skip_reason == SkipReason.COOLDOWN  # type: ignore[union-attr]

    def test_auto_apply_off_only_ingests(
        self,
        store: PatternStore,
        tmp_path: Path,
        data_paths: DataPaths,
    ) -> None:
        """Without chaining, only ingest runs."""
        config = RetroConfig(
            paths=PathsConfig(claude_dir=str(tmp_path / "claude")),
            hooks=HooksConfig(auto_apply=False),
        )
        report = OrchestrationController(store, config, data_paths, FakeBackend()).run_auto(None)
        assert [o.stage for o in report.outcomes] == [Stage.INGEST]
        assert report.outcomes[0].ran
        assert report.outcomes[0].details == {"sessions_ingested": 0, "sessions_skipped": 0, "errors": 0}
