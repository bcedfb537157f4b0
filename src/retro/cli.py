"""retro command-line interface."""

from __future__ import annotations

import logging
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__, audit_log, hooks
from .analysis import AnalysisScheduler
from .backend import ClaudeCliBackend
from .config import DataPaths, RetroConfig
from .curate import audit_details, curate_request, dissolve_if_needed, generate_draft
from .delivery import DeliveryReport, deliver_plan
from .deploy import DeploymentWorkflow
from .exceptions import RetroError
from .git import GitClient, git_root_or_cwd
from .ingest.scanner import SessionScanner
from .models import (
    ApplyPlan,
    PatternStatus,
    ProjectionStatus,
    SuggestedTarget,
)
from .orchestrator import OrchestrationController, Stage, interactive_lock
from .projection.executor import PlanExecutor, action_from_projection
from .projection.planner import ProjectionPlanner, claude_md_path
from .prompts import build_context_summary
from .store import PatternStore
from .sync import sync_closed_prs, take_pr_nudges
from .util import read_text, shorten_path, truncate, write_text

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="retro",
    help="retro: turn AI coding session history into rules, skills and agents",
    add_completion=False,
)
hooks_app = typer.Typer(help="Manage the git post-commit hook", add_completion=False)
app.add_typer(hooks_app, name="hooks")
console = Console()

TARGET_LABELS = {
    SuggestedTarget.CLAUDE_MD: "rule",
    SuggestedTarget.SKILL: "skill",
    SuggestedTarget.GLOBAL_AGENT: "agent",
    SuggestedTarget.DB_ONLY: "db only",
}


def _get_version_string() -> str:
    try:
        return get_version("retro")
    except PackageNotFoundError:
        return __version__


def version_callback(value: bool) -> None:
    """Callback for --version flag."""
    if value:
        console.print(f"retro version {_get_version_string()}")
        raise typer.Exit


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr"),
) -> None:
    """retro: turn AI coding session history into rules, skills and agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _fail(e: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {e}")
    raise typer.Exit(1) from e


def _open(paths: DataPaths) -> tuple[RetroConfig, PatternStore]:
    """Config and store for an initialized data directory.

    Raises:
        RetroError: If ``retro init`` has not been run
    """
    if not paths.database.exists():
        msg = "retro not initialized. Run `retro init` first."
        raise RetroError(msg, details={"path": str(paths.database)})
    config = RetroConfig.load(paths.config)
    return config, PatternStore.open(paths.database)


def _project_root(global_scope: bool) -> Path | None:
    return None if global_scope else git_root_or_cwd()


def _require_backend() -> None:
    if not ClaudeCliBackend.is_available():
        msg = "claude CLI not found on PATH. Install Claude Code to run AI analysis."
        raise RetroError(msg)


def _audit(paths: DataPaths, action: str, details: dict[str, object]) -> None:
    try:
        audit_log.append(paths.audit_log, action, details)
    except RetroError as e:
        logger.warning("Could not write audit entry %s: %s", action, e)


def _show_nudges(store: PatternStore) -> None:
    for url in take_pr_nudges(store):
        console.print(f"  [yellow]retro auto-created a PR:[/yellow] [cyan underline]{url}[/cyan underline]")


def _run_auto(stages: list[Stage] | None, global_scope: bool) -> None:
    """Hook entry point. Automatic mode always exits 0."""
    paths = DataPaths.default()
    if not paths.database.exists():
        return
    try:
        config, store = _open(paths)
        with store:
            backend = ClaudeCliBackend.from_config(config.ai)
            controller = OrchestrationController(store, config, paths, backend)
            controller.run_auto(_project_root(global_scope), stages)
    except Exception:
        logger.exception("Automatic run failed")


def _print_delivery(report: DeliveryReport) -> None:
    if report.personal and report.personal.files_written:
        console.print("[bold]Personal[/bold]")
        for path in report.personal.files_written:
            console.print(f"  [green]✓[/green] {shorten_path(path)}")

    shared = report.shared
    if shared is not None:
        console.print("[bold]Shared[/bold]")
        for path in shared.files_written:
            console.print(f"  [green]✓[/green] {shorten_path(path)}")
        if shared.branch:
            console.print(f"  Branch: [cyan]{shared.branch}[/cyan]")
        if shared.pr_url:
            console.print(f"  [green]PR created:[/green] [cyan underline]{shared.pr_url}[/cyan underline]")
        for warning in shared.warnings:
            console.print(f"  [yellow]Warning:[/yellow] {warning}")

    for error in report.errors:
        console.print(f"  [red]Failed:[/red] {error}")
    console.print(f"\n{report.patterns_activated} pattern(s) activated")


@app.command()
def init() -> None:
    """Create the data directory, default config and database."""
    paths = DataPaths.default()
    try:
        paths.backups.mkdir(parents=True, exist_ok=True)

        if paths.config.exists():
            console.print(f"  [yellow]Exists[/yellow] {paths.config}")
        else:
            RetroConfig().save(paths.config)
            console.print(f"  [green]Created[/green] {paths.config}")

        existed = paths.database.exists()
        with PatternStore.open(paths.database) as store:
            wal = store.is_wal()
        label = "[yellow]Exists[/yellow]" if existed else "[green]Created[/green]"
        mode = "WAL mode" if wal else "warning: WAL mode not enabled"
        console.print(f"  {label} {paths.database} ({mode})")
    except (RetroError, OSError) as e:
        _fail(e)

    console.print("\n[bold green]retro initialized successfully[/bold green]")
    console.print("  Run [cyan]retro ingest[/cyan] to parse Claude Code sessions")


@app.command()
def status() -> None:
    """Show database, session and pattern statistics."""
    paths = DataPaths.default()
    try:
        config, store = _open(paths)
        with store:
            table = Table(title="retro status")
            table.add_column("Setting", style="cyan")
            table.add_column("Value", style="green")

            table.add_row("Database", str(paths.database))
            table.add_row("WAL mode", "enabled" if store.is_wal() else "disabled")
            table.add_row("Config", str(paths.config))
            table.add_row("Sessions ingested", str(store.ingested_session_count()))
            table.add_row("Sessions analyzed", str(store.analyzed_session_count()))
            last_ingested = store.last_ingested_at()
            last_analyzed = store.last_analyzed_at()
            table.add_row("Last ingested", last_ingested.isoformat() if last_ingested else "never")
            table.add_row("Last analyzed", last_analyzed.isoformat() if last_analyzed else "never")
            for pattern_status in PatternStatus:
                table.add_row(
                    f"Patterns {pattern_status.value}",
                    str(store.pattern_count_by_status(pattern_status)),
                )
            table.add_row("Pending review", str(len(store.get_pending_review_projections())))
            table.add_row("Analysis window", f"{config.analysis.window_days} days")
            table.add_row("Confidence threshold", str(config.analysis.confidence_threshold))
            table.add_row("AI backend", f"{config.ai.backend} ({config.ai.model})")
            console.print(table)

            projects = store.list_projects()
            if projects:
                console.print("\n[bold]Projects:[/bold]")
                for project in projects:
                    count = store.ingested_session_count(project)
                    console.print(f"  {shorten_path(project)} ([cyan]{count}[/cyan] sessions)")
            _show_nudges(store)
    except RetroError as e:
        _fail(e)


@app.command()
def ingest(
    auto: bool = typer.Option(False, "--auto", help="Hook mode: silent, gated, never fails"),
    global_scope: bool = typer.Option(False, "--global", help="Ingest every project"),
) -> None:
    """Record new or changed Claude Code session transcripts."""
    if auto:
        _run_auto(None, global_scope)
        return

    paths = DataPaths.default()
    try:
        config, store = _open(paths)
        with store, interactive_lock(paths):
            scanner = SessionScanner(store, config)
            project_root = _project_root(global_scope)
            if project_root is None:
                result = scanner.ingest_all()
            else:
                result = scanner.ingest_project(str(project_root))
            _audit(
                paths,
                "ingest",
                {
                    "sessions_ingested": result.sessions_ingested,
                    "sessions_skipped": result.sessions_skipped,
                    "auto": False,
                },
            )
            console.print(
                f"[green]✓[/green] Ingested {result.sessions_ingested} session(s) "
                f"({result.sessions_skipped} unchanged, {result.sessions_found} found)",
            )
            for error in result.errors:
                console.print(f"  [yellow]Warning:[/yellow] {error}")
            _show_nudges(store)
    except RetroError as e:
        _fail(e)


@app.command()
def analyze(
    global_scope: bool = typer.Option(False, "--global", help="Analyze every project"),
    since: int | None = typer.Option(None, "--since", help="Window in days (default: analysis.window_days)"),
) -> None:
    """Find recurring patterns in ingested sessions."""
    paths = DataPaths.default()
    try:
        config, store = _open(paths)
        with store, interactive_lock(paths):
            _require_backend()
            project_root = _project_root(global_scope)
            project = str(project_root) if project_root is not None else None
            scheduler = AnalysisScheduler(store, config, ClaudeCliBackend.from_config(config.ai))
            context = build_context_summary(project_root, config.claude_dir())

            with console.status("Analyzing sessions..."):
                result = scheduler.run(project, window_days=since, context_summary=context)

            if result.sessions_analyzed == 0:
                console.print("[yellow]No sessions to analyze in the window.[/yellow]")
                return

            _audit(
                paths,
                "analyze",
                {**result.model_dump(), "project": project, "global": global_scope},
            )
            table = Table(title="Analysis")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="green")
            table.add_row("Sessions analyzed", str(result.sessions_analyzed))
            table.add_row("Batches", str(result.batches))
            table.add_row("New patterns", str(result.new_patterns))
            table.add_row("Updated patterns", str(result.updated_patterns))
            table.add_row("Total patterns", str(result.total_patterns))
            table.add_row("Tokens (in/out)", f"{result.input_tokens}/{result.output_tokens}")
            console.print(table)
    except RetroError as e:
        _fail(e)


@app.command()
def apply(
    global_scope: bool = typer.Option(False, "--global", help="Apply patterns from every project"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without writing"),
    auto: bool = typer.Option(False, "--auto", help="Hook mode: save the plan for review"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Project qualifying patterns into CLAUDE.md, skills and agents."""
    if auto:
        _run_auto([Stage.APPLY], global_scope)
        return

    paths = DataPaths.default()
    try:
        config, store = _open(paths)
        with store, interactive_lock(paths):
            project_root = git_root_or_cwd()
            project = None if global_scope else str(project_root)
            sync_closed_prs(store, GitClient(project_root), paths.audit_log)

            backend = ClaudeCliBackend.from_config(config.ai)
            planner = ProjectionPlanner(store, config, backend)
            qualifying = planner.find_qualifying(project)
            if not qualifying:
                console.print("[green]No patterns qualify for projection.[/green]")
                return
            if any(p.suggested_target != SuggestedTarget.CLAUDE_MD for p in qualifying):
                _require_backend()

            with console.status("Generating content..."):
                plan = planner.build_plan(project, project_root)
            if plan.is_empty():
                console.print("[yellow]Nothing to apply; content generation failed for every pattern.[/yellow]")
                return

            _print_plan(plan)
            if dry_run:
                console.print("\n[bold blue]Dry run[/bold blue]: nothing written")
                return
            if not yes and not typer.confirm("Apply these changes?"):
                console.print("[yellow]Aborted.[/yellow]")
                return

            executor = PlanExecutor(store, paths.backups, config.claude_md.full_management)
            report = deliver_plan(plan, executor, project_root)
            _audit(
                paths,
                "apply",
                {
                    "actions": len(plan.actions),
                    "project": project,
                    "global": global_scope,
                    "auto": False,
                    "pr_url": report.pr_url,
                },
            )
            _print_delivery(report)
            if report.errors:
                raise typer.Exit(1)
    except RetroError as e:
        _fail(e)


def _print_plan(plan: ApplyPlan) -> None:
    table = Table(title="Apply plan")
    table.add_column("Kind", style="cyan")
    table.add_column("Track")
    table.add_column("Target", style="green")
    table.add_column("Pattern")
    for action in plan.actions:
        table.add_row(
            TARGET_LABELS[action.target_type],
            action.track.value,
            shorten_path(action.target_path),
            truncate(action.pattern_description, 60),
        )
    console.print(table)


@app.command()
def review() -> None:
    """Apply, skip or dismiss items saved for review by automatic mode."""
    paths = DataPaths.default()
    try:
        config, store = _open(paths)
        with store, interactive_lock(paths):
            project_root = git_root_or_cwd()
            sync_closed_prs(store, GitClient(project_root), paths.audit_log)

            pending = store.get_pending_review_projections()
            if not pending:
                console.print("[green]Nothing pending review.[/green]")
                return

            plan = ApplyPlan()
            dismissed = skipped = 0
            for index, projection in enumerate(pending, start=1):
                pattern = store.get_pattern(projection.pattern_id)
                description = pattern.description if pattern else projection.pattern_id
                console.print(
                    f"\n[bold]{index}/{len(pending)}[/bold] "
                    f"[cyan]{TARGET_LABELS[projection.target_type]}[/cyan] "
                    f"{shorten_path(projection.target_path)}",
                )
                console.print(f"  {description}")
                console.print(f"[dim]{truncate(projection.content, 400)}[/dim]")

                choice = typer.prompt("[a]pply, [s]kip, [d]ismiss", default="s").strip().lower()
                if choice.startswith("a"):
                    plan.actions.append(action_from_projection(projection, description))
                elif choice.startswith("d"):
                    store.update_projection_status(projection.id, ProjectionStatus.DISMISSED)
                    store.update_pattern_status(projection.pattern_id, PatternStatus.DISMISSED)
                    dismissed += 1
                else:
                    skipped += 1

            report = None
            if not plan.is_empty():
                executor = PlanExecutor(store, paths.backups, config.claude_md.full_management)
                report = deliver_plan(plan, executor, project_root)
                _print_delivery(report)

            _audit(
                paths,
                "review",
                {
                    "applied": len(plan.actions),
                    "dismissed": dismissed,
                    "skipped": skipped,
                    "pr_url": report.pr_url if report else None,
                },
            )
            console.print(f"\nApplied {len(plan.actions)}, dismissed {dismissed}, skipped {skipped}")
            if report is not None and report.errors:
                raise typer.Exit(1)
    except RetroError as e:
        _fail(e)


@app.command()
def sync() -> None:
    """Reopen patterns whose pull request was closed without merging."""
    paths = DataPaths.default()
    try:
        _, store = _open(paths)
        with store, interactive_lock(paths):
            result = sync_closed_prs(store, GitClient(git_root_or_cwd()), paths.audit_log)
            if result.reset_patterns:
                console.print(
                    f"[green]Reset {len(result.reset_patterns)} pattern(s) from closed PRs "
                    "back to discoverable.[/green]",
                )
            else:
                console.print(f"No closed PRs found ({result.checked} checked).")
            for url in result.failed_urls:
                console.print(f"  [yellow]Warning:[/yellow] could not check {url}")
    except RetroError as e:
        _fail(e)


ACTION_STYLES = {"analyze": "cyan", "apply": "green", "review": "magenta", "curate_applied": "green"}


@app.command()
def log(
    since: str | None = typer.Option(None, "--since", help="Only entries in this window, e.g. 7d or 24h"),
) -> None:
    """Show the audit log."""
    paths = DataPaths.default()
    if not paths.audit_log.exists():
        console.print("[yellow]No audit log found. Run `retro analyze` or `retro apply` first.[/yellow]")
        return

    try:
        cutoff = audit_log.parse_since(since) if since is not None else None
        entries = audit_log.read_entries(paths.audit_log, since=cutoff)
    except RetroError as e:
        _fail(e)

    if not entries:
        window = f" in the last {since}" if since is not None else ""
        console.print(f"[yellow]No audit log entries found{window}.[/yellow]")
        return

    table = Table(title=f"Audit log ({len(entries)} entries)")
    table.add_column("Time", style="dim")
    table.add_column("Action")
    table.add_column("Details", style="dim")
    for entry in entries:
        style = ACTION_STYLES.get(entry.action, "red" if entry.action.endswith("_error") else "white")
        details = ", ".join(f"{key}={value}" for key, value in entry.details.items())
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC"),
            f"[{style}]{entry.action}[/{style}]",
            escape(details),
        )
    console.print(table)


@app.command()
def patterns(
    status_filter: list[PatternStatus] | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Only show patterns in these states (default: discovered, active)",
    ),
    global_scope: bool = typer.Option(False, "--global", help="Show patterns from every project"),
) -> None:
    """List discovered patterns."""
    paths = DataPaths.default()
    try:
        config, store = _open(paths)
        with store:
            statuses = status_filter or [PatternStatus.DISCOVERED, PatternStatus.ACTIVE]
            project = None if global_scope else str(git_root_or_cwd())
            found = store.get_patterns(statuses, project)
            if not found:
                console.print("[yellow]No patterns found.[/yellow]")
                return

            table = Table(title=f"Patterns ({len(found)})")
            table.add_column("ID", style="dim")
            table.add_column("Type", style="cyan")
            table.add_column("Conf", justify="right")
            table.add_column("Seen", justify="right")
            table.add_column("Target")
            table.add_column("Status")
            table.add_column("Description")
            threshold = config.analysis.confidence_threshold
            for pattern in sorted(found, key=lambda p: (-p.confidence, p.first_seen)):
                color = "green" if pattern.confidence >= threshold else "yellow"
                table.add_row(
                    pattern.id[:8],
                    pattern.pattern_type.value,
                    f"[{color}]{pattern.confidence:.2f}[/{color}]",
                    str(pattern.times_seen),
                    TARGET_LABELS[pattern.suggested_target],
                    pattern.status.value + (" (gen failed)" if pattern.generation_failed else ""),
                    truncate(pattern.description, 70),
                )
            console.print(table)
    except RetroError as e:
        _fail(e)


@app.command()
def curate(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be sent without calling the AI"),
) -> None:
    """Rewrite the whole CLAUDE.md with an agentic AI run, delivered as a PR."""
    paths = DataPaths.default()
    try:
        config = RetroConfig.load(paths.config)
        if not config.claude_md.full_management:
            msg = (
                "retro curate requires full_management mode. Enable it in "
                f"{paths.config}:\n\n  claude_md:\n    full_management: true"
            )
            raise RetroError(msg)

        _, store = _open(paths)
        with store, interactive_lock(paths):
            project_root = git_root_or_cwd()
            target = claude_md_path(project_root)
            if dissolve_if_needed(target, paths.backups):
                console.print("Dissolved managed section delimiters (full_management mode).")

            current = read_text(target)
            threshold = config.analysis.confidence_threshold
            qualifying = [
                p
                for p in store.get_patterns(
                    [PatternStatus.DISCOVERED, PatternStatus.ACTIVE],
                    str(project_root),
                )
                if p.confidence >= threshold
            ]
            memory_path = config.claude_dir() / "MEMORY.md"
            memory = read_text(memory_path) or None

            console.print("[bold cyan]retro curate[/bold cyan]: agentic CLAUDE.md rewrite\n")
            console.print(f"  CLAUDE.md: {len(current.splitlines())} lines")
            console.print(f"  Patterns: {len(qualifying)} (confidence >= {threshold:.1f})")
            if memory:
                console.print("  MEMORY.md: available")
            if dry_run:
                console.print("\n[bold yellow]Dry run: no AI calls made.[/bold yellow]")
                return

            _require_backend()
            backend = ClaudeCliBackend.from_config(config.ai)
            with console.status("Running agentic rewrite (this may take several minutes)..."):
                draft = generate_draft(backend, project_root, current, qualifying, memory)

            _print_diff(draft.diff())
            console.print(f"\n  CLAUDE.md: {draft.lines_before} -> {draft.lines_after} lines")

            if not typer.confirm("Create a PR with this rewrite?"):
                console.print("[dim]Discarded.[/dim]")
                _audit(paths, "curate_rejected", audit_details(draft, project_root))
                return

            def write() -> list[Path]:
                write_text(target, draft.content)
                return [target]

            workflow = DeploymentWorkflow(GitClient(project_root))
            result = workflow.run(write, curate_request(draft, len(qualifying), threshold, memory is not None))
            for warning in result.warnings:
                console.print(f"  [yellow]Warning:[/yellow] {warning}")
            if result.error:
                raise RetroError(result.error)
            if result.pr_url:
                console.print(f"\n  [bold green]PR created:[/bold green] [cyan underline]{result.pr_url}[/cyan underline]")
            _audit(
                paths,
                "curate_applied",
                audit_details(
                    draft,
                    project_root,
                    pr_url=result.pr_url,
                    patterns_used=len(qualifying),
                ),
            )
    except RetroError as e:
        _fail(e)


def _print_diff(lines: list[str]) -> None:
    if not lines:
        console.print("[dim](no changes)[/dim]")
        return
    for line in lines:
        if line.startswith(("+++", "---")):
            console.print(line, style="bold", markup=False, highlight=False)
        elif line.startswith("+"):
            console.print(line, style="green", markup=False, highlight=False)
        elif line.startswith("-"):
            console.print(line, style="red", markup=False, highlight=False)
        elif line.startswith("@@"):
            console.print(line, style="cyan", markup=False, highlight=False)
        else:
            console.print(line, markup=False, highlight=False)


@hooks_app.command("install")
def hooks_install() -> None:
    """Add the post-commit hook that runs `retro ingest --auto`."""
    try:
        repo_root = _repo_root()
        if hooks.install(repo_root):
            console.print(f"[green]✓[/green] Installed post-commit hook in {hooks.hook_path(repo_root)}")
        else:
            console.print("[yellow]Hook already installed.[/yellow]")
    except RetroError as e:
        _fail(e)


@hooks_app.command("remove")
def hooks_remove() -> None:
    """Remove the retro lines from the post-commit hook."""
    try:
        repo_root = _repo_root()
        if hooks.remove(repo_root):
            console.print("[green]✓[/green] Removed retro post-commit hook")
        else:
            console.print("[yellow]No retro hook installed.[/yellow]")
    except RetroError as e:
        _fail(e)


def _repo_root() -> Path:
    client = GitClient(Path.cwd())
    if not client.is_repo():
        msg = "Not inside a git repository"
        raise RetroError(msg)
    return client.repo_root()


def main() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
