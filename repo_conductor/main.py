"""CLI entry point for repo-conductor."""

import asyncio
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import click
import structlog

from repo_conductor.config.settings import ConductorSettings, load_settings
from repo_conductor.engine.context import RunContext, RunOptions
from repo_conductor.engine.log_rotation import get_log_stats, rotate_logs
from repo_conductor.engine.metrics import MetricsWriter
from repo_conductor.engine.orchestrator import RunOrchestrator, RunReport
from repo_conductor.engine.package_manager import detect_package_manager
from repo_conductor.engine.phase_executor import PhaseExecutor, format_duration
from repo_conductor.engine.run_log import LogWriter, list_run_logs, read_run_log
from repo_conductor.engine.shutdown import ShutdownCoordinator
from repo_conductor.engine.state_manager import StateManager
from repo_conductor.engine.state_utils import (
    cleanup_stale_entries,
    discover_untracked_worktrees,
    rebuild_state_from_logs,
)
from repo_conductor.engine.worktree_manager import WorktreeManager
from repo_conductor.enums import ExecutionMode, Phase
from repo_conductor.exceptions import ConfigurationError, RepoConductorError, StateError
from repo_conductor.git.discovery import RepositoryDiscovery
from repo_conductor.models.domain import ExecutionConfig
from repo_conductor.providers.agent import AgentCliRunner
from repo_conductor.providers.github_cli import GitHubCli
from repo_conductor.utils.logging_config import clear_run_context, configure_logging

log = structlog.get_logger(__name__)

INTERRUPTED_EXIT_CODE = 130


def _repo_root() -> Path:
    return RepositoryDiscovery(".").root


def _execute(coro: Coroutine[Any, Any, Any], command: str) -> Any:
    """Run a command coroutine with the CLI's error handling."""
    try:
        return asyncio.run(coro)
    except RepoConductorError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(INTERRUPTED_EXIT_CODE)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{command}_unexpected", exc_info=True)
        sys.exit(1)
    finally:
        clear_run_context()


def parse_phase_list(value: str) -> tuple[Phase, ...]:
    """Parse ``spec,exec,qa``.

    Raises:
        ConfigurationError: On an unknown phase name or an empty list
    """
    phases = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        phase = Phase.parse(token)
        if phase is None:
            raise ConfigurationError(f"Unknown phase: {token}")
        phases.append(phase)
    if not phases:
        raise ConfigurationError("--phases must name at least one phase")
    return tuple(phases)


def parse_batches(values: tuple[str, ...]) -> list[list[int]]:
    """``("1 2", "3")`` -> ``[[1, 2], [3]]``.

    Raises:
        click.BadParameter: On a token that is not an issue number
    """
    batches = []
    for value in values:
        tokens = value.replace(",", " ").split()
        for token in tokens:
            if not token.isdigit():
                raise click.BadParameter(f"{token!r} is not an issue number", param_hint="'--batch'")
        numbers = [int(token) for token in tokens]
        if numbers:
            batches.append(numbers)
    return batches


@click.group()
@click.option("--config", "config_path", default=None, help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--console-logs", is_flag=True, help="Human-readable log output instead of JSON")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str, console_logs: bool) -> None:
    """repo-conductor: drive issues through agent workflow phases."""
    configure_logging(log_level, json_output=not console_logs)

    try:
        settings = load_settings(config_path)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("issues", nargs=-1, type=int)
@click.option("--phases", help="Comma-separated phases, e.g. spec,exec,qa (disables auto-detection)")
@click.option("--sequential", is_flag=True, help="Stop at the first failed issue")
@click.option("--chain", is_flag=True, help="Branch each issue from the previous one (requires --sequential)")
@click.option("--qa-gate", is_flag=True, help="Pause the chain when QA fails (requires --chain)")
@click.option("--batch", "batches", multiple=True, help='Issue group run together, e.g. --batch "1 2"')
@click.option("--timeout", type=click.IntRange(min=1), help="Per-phase timeout in seconds")
@click.option("--quality-loop", is_flag=True, help="Re-run exec/qa until QA passes")
@click.option("--max-iterations", type=click.IntRange(1, 10), help="Quality loop iteration cap")
@click.option("--no-mcp", is_flag=True, help="Disable agent tool integrations")
@click.option("--no-retry", is_flag=True, help="Do not retry cold-start failures")
@click.option("--testgen", is_flag=True, help="Run testgen after spec")
@click.option("--force", is_flag=True, help="Re-run issues already ready for merge or merged")
@click.option("--resume", is_flag=True, help="Skip phases already completed")
@click.option("--no-rebase", is_flag=True, help="Do not rebase onto trunk before the PR")
@click.option("--no-pr", is_flag=True, help="Do not open a PR")
@click.option("--base", "base_branch", help="Branch the first worktree starts from")
@click.option("--dry-run", is_flag=True, help="Plan without executing any phase")
@click.option("--no-log", is_flag=True, help="Do not write a run log")
@click.pass_context
def run(
    ctx: click.Context,
    issues: tuple[int, ...],
    phases: str | None,
    sequential: bool,
    chain: bool,
    qa_gate: bool,
    batches: tuple[str, ...],
    timeout: int | None,
    quality_loop: bool,
    max_iterations: int | None,
    no_mcp: bool,
    no_retry: bool,
    testgen: bool,
    force: bool,
    resume: bool,
    no_rebase: bool,
    no_pr: bool,
    base_branch: str | None,
    dry_run: bool,
    no_log: bool,
) -> None:
    """Run workflow phases for one or more ISSUES."""
    settings: ConductorSettings = ctx.obj["settings"]
    run_settings = settings.run

    try:
        explicit_phases = parse_phase_list(phases) if phases else None
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    if explicit_phases is None and "phases" in run_settings.model_fields_set:
        explicit_phases = tuple(run_settings.phases)

    config = ExecutionConfig(
        phases=explicit_phases or tuple(run_settings.phases),
        mode=ExecutionMode.STOP_ON_FAILURE if sequential else ExecutionMode.CONTINUE_ON_FAILURE,
        phase_timeout=timeout or run_settings.phase_timeout,
        quality_loop=quality_loop or run_settings.quality_loop,
        max_iterations=max_iterations or run_settings.max_iterations,
        enhanced_mode=run_settings.enhanced_mode and not no_mcp,
        retry=run_settings.retry and not no_retry,
        dry_run=dry_run,
        smart_tests=run_settings.smart_tests,
    )
    options = RunOptions(
        explicit_phases=explicit_phases,
        auto_detect=run_settings.auto_detect_phases and explicit_phases is None,
        chain=chain,
        qa_gate=qa_gate,
        batches=parse_batches(batches) or None,
        base_branch=base_branch,
        force=force,
        resume=resume,
        testgen=testgen,
        no_rebase=no_rebase,
        no_pr=no_pr,
    )

    report: RunReport = _execute(_run_issues(settings, list(issues), config, options, not no_log), "run")
    _print_report(report)
    if report.interrupted:
        sys.exit(INTERRUPTED_EXIT_CODE)
    sys.exit(report.exit_code)


async def _run_issues(
    settings: ConductorSettings,
    issues: list[int],
    config: ExecutionConfig,
    options: RunOptions,
    write_log: bool,
) -> RunReport:
    """Wire the collaborators of one run and execute it.

    Args:
        settings: Loaded configuration
        issues: Issue numbers from the command line
        config: Execution configuration built from flags and settings
        options: Run options built from flags
        write_log: Write a JSON run log
    """
    root = _repo_root()
    github = GitHubCli(cwd=root)
    runner = AgentCliRunner(
        command=settings.agent.command,
        model=settings.agent.model,
        extra_args=settings.agent.extra_args,
    )

    async with ShutdownCoordinator() as shutdown:
        context = RunContext(
            repo_root=root,
            config=config,
            executor=PhaseExecutor(runner, root, shutdown=shutdown),
            github=github,
            shutdown=shutdown,
            options=options,
            worktrees=WorktreeManager(root, settings.git, github, detect_package_manager(root)),
            state=None if config.dry_run else StateManager(root / settings.state_path),
            log_writer=(
                LogWriter(root / settings.log_dir, settings.logging.rotation)
                if write_log and settings.logging.json_logs
                else None
            ),
            metrics=MetricsWriter(root / settings.metrics_path),
            model=settings.agent.model,
        )
        return await RunOrchestrator(context).run(issues)


def _print_report(report: RunReport) -> None:
    click.echo(f"\nResults: {report.passed} passed, {report.failed} failed")
    for number, status in report.skipped:
        click.echo(f"  ⏭️  #{number}: already {status} (use --force to re-run)")
    for result in report.results:
        icon = "✅" if result.success else "❌"
        phases = " → ".join(
            str(p.phase) if p.success else f"{p.phase} (failed)" for p in result.phase_results
        )
        loop = " [loop]" if result.loop_triggered else ""
        pr = f" → PR #{result.pr.number}" if result.pr and result.pr.number else ""
        click.echo(f"  {icon} #{result.issue}: {phases}{loop}{pr} ({format_duration(result.duration)})")

    if report.log_path is not None:
        click.echo(f"\nLog: {report.log_path}")
    if report.dry_run:
        click.echo("\nThis was a dry run. Run without --dry-run to execute.")
    if report.interrupted:
        click.echo("\nRun interrupted; cleanup completed.", err=True)


@cli.group()
def state() -> None:
    """Inspect and maintain the workflow state file."""


@state.command("show")
@click.pass_context
def state_show(ctx: click.Context) -> None:
    """Show tracked issues."""
    settings: ConductorSettings = ctx.obj["settings"]
    _execute(_show_state(settings), "state_show")


async def _show_state(settings: ConductorSettings) -> None:
    manager = StateManager(_repo_root() / settings.state_path)
    issues = await manager.get_all_issue_states()
    if not issues:
        click.echo("No tracked issues.")
        return

    click.echo(f"Tracked issues ({len(issues)}):\n")
    for number, issue_state in sorted(issues.items()):
        current = f" [{issue_state.current_phase}]" if issue_state.current_phase else ""
        click.echo(f"  #{number} {issue_state.status}{current}: {issue_state.title}")
        for phase, phase_state in issue_state.phases.items():
            error = f" ({phase_state.error})" if phase_state.error else ""
            click.echo(f"      {phase}: {phase_state.status}{error}")
        if issue_state.pr is not None:
            click.echo(f"      PR #{issue_state.pr.number}: {issue_state.pr.url}")


@state.command("init")
@click.option("--dry-run", is_flag=True, help="Report without writing the state file")
@click.pass_context
def state_init(ctx: click.Context, dry_run: bool) -> None:
    """Start tracking worktrees that are missing from the state file."""
    settings: ConductorSettings = ctx.obj["settings"]
    _execute(_discover(settings, dry_run), "state_init")


async def _discover(settings: ConductorSettings, dry_run: bool) -> None:
    root = _repo_root()
    github = GitHubCli(cwd=root)
    result = await discover_untracked_worktrees(
        StateManager(root / settings.state_path),
        WorktreeManager(root, settings.git, github),
        github,
        root / settings.log_dir,
        dry_run=dry_run,
    )

    click.echo(f"Scanned {result.worktrees_scanned} worktrees, {result.already_tracked} already tracked")
    for found in result.discovered:
        phase = f" (phase: {found.inferred_phase})" if found.inferred_phase else ""
        click.echo(f"  + #{found.issue}: {found.title}{phase}")
    for path, reason in result.skipped:
        click.echo(f"  - {path}: {reason}")
    if dry_run and result.discovered:
        click.echo("\nDry run: state file not changed.")


@state.command("rebuild")
@click.option("--yes", is_flag=True, help="Replace the state file without asking")
@click.pass_context
def state_rebuild(ctx: click.Context, yes: bool) -> None:
    """Rebuild the state file from run logs."""
    settings: ConductorSettings = ctx.obj["settings"]
    if not yes:
        click.confirm("Replace the state file with one rebuilt from run logs?", abort=True)
    _execute(_rebuild(settings), "state_rebuild")


async def _rebuild(settings: ConductorSettings) -> None:
    root = _repo_root()
    result = await rebuild_state_from_logs(StateManager(root / settings.state_path), root / settings.log_dir)
    if not result.success:
        raise StateError(f"Cannot rebuild state: {result.error}")

    click.echo(f"Processed {result.logs_processed} logs, found {result.issues_found} issues")
    for name in result.incomplete_logs:
        click.echo(f"  ⚠️  Incomplete run log (crashed run?): {name}")


@state.command("clean")
@click.option("--dry-run", is_flag=True, help="Report without writing the state file")
@click.option("--max-age", "max_age_days", type=click.FloatRange(min=0), help="Also remove merged/abandoned entries older than DAYS")
@click.option("--all", "remove_all", is_flag=True, help="Remove orphaned entries instead of marking them abandoned")
@click.pass_context
def state_clean(ctx: click.Context, dry_run: bool, max_age_days: float | None, remove_all: bool) -> None:
    """Clean entries whose worktree no longer exists."""
    settings: ConductorSettings = ctx.obj["settings"]
    _execute(_clean(settings, dry_run, max_age_days, remove_all), "state_clean")


async def _clean(settings: ConductorSettings, dry_run: bool, max_age_days: float | None, remove_all: bool) -> None:
    root = _repo_root()
    github = GitHubCli(cwd=root)
    result = await cleanup_stale_entries(
        StateManager(root / settings.state_path),
        WorktreeManager(root, settings.git, github),
        github,
        dry_run=dry_run,
        max_age_days=max_age_days,
        remove_all=remove_all,
    )

    if not result.changed:
        click.echo("Nothing to clean.")
        return
    prefix = "Would clean" if dry_run else "Cleaned"
    click.echo(f"{prefix}: {len(result.removed)} removed, {len(result.orphaned)} orphaned, {len(result.merged)} merged")
    for number in result.removed:
        click.echo(f"  - #{number} removed")
    for number in result.orphaned:
        if number not in result.removed:
            click.echo(f"  ~ #{number} marked abandoned")


@cli.group()
def logs() -> None:
    """Inspect and rotate run logs."""


@logs.command("list")
@click.option("--limit", default=10, type=click.IntRange(min=1), help="Number of runs to show")
@click.pass_context
def logs_list(ctx: click.Context, limit: int) -> None:
    """List recent runs, newest first."""
    settings: ConductorSettings = ctx.obj["settings"]
    _execute(_list_logs(settings, limit), "logs_list")


async def _list_logs(settings: ConductorSettings, limit: int) -> None:
    log_dir = _repo_root() / settings.log_dir
    paths = list_run_logs(log_dir)
    if not paths:
        click.echo(f"No run logs in {log_dir}")
        return

    for path in paths[:limit]:
        run_log = await read_run_log(path)
        if run_log is None:
            click.echo(f"  ❌ {path.name}: unreadable")
            continue
        issues = ", ".join(f"#{i.issue_number}" for i in run_log.issues)
        if run_log.summary is None or run_log.end_time is None:
            click.echo(f"  ⚠️  {run_log.start_time:%Y-%m-%d %H:%M} incomplete: {issues}")
            continue
        summary = run_log.summary
        click.echo(
            f"  {run_log.start_time:%Y-%m-%d %H:%M} {summary.passed}/{summary.total_issues} passed "
            f"({format_duration(summary.total_duration_seconds)}): {issues}"
        )


@logs.command("rotate")
@click.option("--dry-run", is_flag=True, help="Report what would be deleted")
@click.pass_context
def logs_rotate(ctx: click.Context, dry_run: bool) -> None:
    """Delete the oldest run logs beyond the configured limits."""
    settings: ConductorSettings = ctx.obj["settings"]
    _execute(_rotate_logs(settings, dry_run), "logs_rotate")


async def _rotate_logs(settings: ConductorSettings, dry_run: bool) -> None:
    log_dir = _repo_root() / settings.log_dir
    rotation = settings.logging.rotation

    stats = get_log_stats(log_dir, rotation)
    click.echo(f"{stats.file_count} logs, {stats.total_size_mb:.2f} MB")

    result = rotate_logs(log_dir, rotation, dry_run=dry_run)
    if result.error:
        raise RepoConductorError(f"Log rotation failed: {result.error}")
    if not result.deleted_count:
        click.echo("Nothing to rotate.")
        return
    verb = "Would delete" if dry_run else "Deleted"
    click.echo(f"{verb} {result.deleted_count} logs ({result.bytes_reclaimed / 1024:.1f} KB)")


if __name__ == "__main__":
    cli()
