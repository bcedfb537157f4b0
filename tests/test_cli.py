"""Tests for CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from retro import audit_log, cli, hooks
from retro.cli import app
from retro.config import DataPaths, RetroConfig
from retro.models import Pattern, PatternStatus
from retro.store import PatternStore


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Project directory used as cwd, outside any git repository."""
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    monkeypatch.setattr(cli, "git_root_or_cwd", lambda cwd=None: project)
    return project


@pytest.fixture
def initialized(runner: CliRunner, data_paths: DataPaths, workdir: Path) -> DataPaths:
    """Data directory after `retro init`."""
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output
    return data_paths


class TestBasics:
    """Tests for init, status and version."""

    def test_version(self, runner: CliRunner) -> None:
        """--version prints the version and exits."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "retro version" in result.output

    def test_init_creates_files(self, runner: CliRunner, data_paths: DataPaths, workdir: Path) -> None:
        """init writes the config, database and backups directory."""
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "retro initialized successfully" in result.output
        assert data_paths.database.exists()
        assert data_paths.backups.is_dir()
        assert RetroConfig.load(data_paths.config) == RetroConfig()

    def test_init_keeps_existing_config(self, runner: CliRunner, data_paths: DataPaths, workdir: Path) -> None:
        """A second init does not overwrite user settings."""
        data_paths.root.mkdir(parents=True)
        data_paths.config.write_text(yaml.safe_dump({"analysis": {"window_days": 3}}))

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Exists" in result.output
        assert RetroConfig.load(data_paths.config).analysis.window_days == 3

    def test_status(self, runner: CliRunner, initialized: DataPaths) -> None:
        """status renders the statistics table."""
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "retro status" in result.output
        assert "Sessions ingested" in result.output

    @pytest.mark.parametrize("command", [["status"], ["patterns"], ["ingest"], ["sync"]])
    def test_requires_init(
        self,
        runner: CliRunner,
        data_paths: DataPaths,
        workdir: Path,
        command: list[str],
    ) -> None:
        """Commands fail cleanly before init."""
        result = runner.invoke(app, command)
        assert result.exit_code == 1
        assert "Error" in result.output
        assert "retro init" in result.output


class TestAutoMode:
    """Tests for hook-invoked commands."""

    def test_ingest_auto_without_database(self, runner: CliRunner, data_paths: DataPaths, workdir: Path) -> None:
        """Hook mode before init is a silent no-op."""
        result = runner.invoke(app, ["ingest", "--auto"])
        assert result.exit_code == 0
        assert result.output == ""
        assert not data_paths.database.exists()

    def test_auto_swallows_failures(
        self,
        runner: CliRunner,
        initialized: DataPaths,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Unexpected errors never change the exit code."""

        def explode(self: object, project_root: object, stages: object) -> None:
            raise RuntimeError("boom")

        monkeypatch.setattr(cli.OrchestrationController, "run_auto", explode)
        result = runner.invoke(app, ["apply", "--auto"])
        assert result.exit_code == 0


class TestPatterns:
    """Tests for listing patterns."""

    def test_empty(self, runner: CliRunner, initialized: DataPaths) -> None:
        """No patterns prints a notice."""
        result = runner.invoke(app, ["patterns"])
        assert result.exit_code == 0
        assert "No patterns found" in result.output

    def test_lists_matching_status(
        self,
        runner: CliRunner,
        initialized: DataPaths,
        workdir: Path,
        make_pattern: Callable[..., Pattern],
    ) -> None:
        """Default filter shows discovered and active patterns only."""
        with PatternStore.open(initialized.database) as store:
            store.insert_pattern(make_pattern(project=str(workdir)))
            store.insert_pattern(make_pattern(status=PatternStatus.DISMISSED))

        result = runner.invoke(app, ["patterns"])
        assert result.exit_code == 0
        assert "Patterns (1)" in result.output

        result = runner.invoke(app, ["patterns", "--status", "dismissed"])
        assert "Patterns (1)" in result.output


class TestCurate:
    """Tests for the curate command gate."""

    def test_requires_full_management(self, runner: CliRunner, initialized: DataPaths) -> None:
        """curate refuses to run in managed-section mode."""
        result = runner.invoke(app, ["curate", "--dry-run"])
        assert result.exit_code == 1
        assert "full_management" in result.output

    def test_dry_run(self, runner: CliRunner, initialized: DataPaths, workdir: Path) -> None:
        """Dry run summarizes inputs without calling the AI."""
        config = RetroConfig.load(initialized.config)
        config.claude_md.full_management = True
        config.save(initialized.config)
        (workdir / "CLAUDE.md").write_text("# App\n\n- Use uv\n")

        result = runner.invoke(app, ["curate", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "CLAUDE.md: 3 lines" in result.output
        assert "Dry run" in result.output


class TestHooksCommands:
    """Tests for hook install and remove."""

    def test_outside_repository(
        self,
        runner: CliRunner,
        workdir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Hook commands need a git repository."""
        monkeypatch.setattr(cli.GitClient, "is_repo", lambda self: False)
        result = runner.invoke(app, ["hooks", "install"])
        assert result.exit_code == 1
        assert "Not inside a git repository" in result.output

    def test_install_and_remove(
        self,
        runner: CliRunner,
        workdir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Install is idempotent and remove cleans up."""
        (workdir / ".git" / "hooks").mkdir(parents=True)
        monkeypatch.setattr(cli, "_repo_root", lambda: workdir)

        assert runner.invoke(app, ["hooks", "install"]).exit_code == 0
        assert hooks.is_installed(workdir)
        assert "already installed" in runner.invoke(app, ["hooks", "install"]).output

        result = runner.invoke(app, ["hooks", "remove"])
        assert result.exit_code == 0
        assert not hooks.hook_path(workdir).exists()


class TestLog:
    """Tests for viewing the audit log."""

    def test_no_log_yet(self, runner: CliRunner, data_paths: DataPaths) -> None:
        """A missing log is reported, not an error."""
        result = runner.invoke(app, ["log"])
        assert result.exit_code == 0
        assert "No audit log found" in result.output

    def test_lists_entries_in_window(self, runner: CliRunner, data_paths: DataPaths) -> None:
        """--since hides older entries."""
        data_paths.root.mkdir(parents=True)
        data_paths.audit_log.write_text('{"timestamp": "2020-01-01T00:00:00Z", "action": "old", "details": {}}\n')
        audit_log.append(data_paths.audit_log, "ingest", {"sessions": 2})
        audit_log.append(data_paths.audit_log, "apply_error", {"error": "boom"})

        result = runner.invoke(app, ["log"])
        assert result.exit_code == 0
        assert "Audit log (3 entries)" in result.output

        result = runner.invoke(app, ["log", "--since", "24h"])
        assert result.exit_code == 0
        assert "Audit log (2 entries)" in result.output
        assert "apply_error" in result.output
        assert "2020-01-01" not in result.output

    def test_empty_window(self, runner: CliRunner, data_paths: DataPaths) -> None:
        """No entries in the window prints a notice."""
        data_paths.root.mkdir(parents=True)
        data_paths.audit_log.write_text('{"timestamp": "2020-01-01T00:00:00Z", "action": "old", "details": {}}\n')
        result = runner.invoke(app, ["log", "--since", "7d"])
        assert result.exit_code == 0
        assert "No audit log entries found in the last 7d" in result.output

    def test_invalid_since(self, runner: CliRunner, data_paths: DataPaths) -> None:
        """A malformed window exits with an error."""
        audit_log.append(data_paths.audit_log, "ingest")
        result = runner.invoke(app, ["log", "--since", "7x"])
        assert result.exit_code == 1
        assert "Invalid duration" in result.output
