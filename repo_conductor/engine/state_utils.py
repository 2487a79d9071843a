"""
State maintenance: rebuild, cleanup, discovery and startup reconciliation.

Every operation here is idempotent. Running it twice in a row with nothing
changing in between makes no further change the second time.
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import structlog

from repo_conductor.engine.run_log import list_run_logs, read_run_log
from repo_conductor.engine.state_manager import StateManager
from repo_conductor.engine.worktree_manager import WorktreeManager
from repo_conductor.enums import IssueLogStatus, IssueStatus, Phase, PhaseLogStatus, PhaseStatus
from repo_conductor.git.commands import git
from repo_conductor.models.state import IssueState, PhaseState, WorkflowState, utcnow
from repo_conductor.providers.github_cli import GitHubCli

log = structlog.get_logger(__name__)

BRANCH_ISSUE_PATTERNS = (
    re.compile(r"^feature/(\d+)(?:-|$)"),
    re.compile(r"^issue-(\d+)$"),
    re.compile(r"^(\d+)-"),
)
TRUNK_BRANCHES = ("main", "master")
MERGE_CHECK_TIMEOUT_SECONDS = 10

_PHASE_LOG_TO_STATE = {
    PhaseLogStatus.SUCCESS: PhaseStatus.COMPLETED,
    PhaseLogStatus.FAILURE: PhaseStatus.FAILED,
    PhaseLogStatus.TIMEOUT: PhaseStatus.FAILED,
    PhaseLogStatus.SKIPPED: PhaseStatus.SKIPPED,
}


@dataclass
class RebuildResult:
    success: bool = True
    logs_processed: int = 0
    issues_found: int = 0
    incomplete_logs: list[str] = field(default_factory=list)
    error: str | None = None


async def rebuild_state_from_logs(manager: StateManager, log_dir: Path) -> RebuildResult:
    """Replace the state file with one reconstructed from run logs.

    Logs are replayed newest first and the newest record of each issue
    wins. A successful issue becomes ``ready_for_merge``, anything else
    ``in_progress``. Incomplete logs still contribute but are reported.
    """
    if not log_dir.is_dir():
        return RebuildResult(success=False, error=f"Log directory not found: {log_dir}")

    result = RebuildResult()
    issues: dict[str, IssueState] = {}

    for path in list_run_logs(log_dir):
        run_log = await read_run_log(path)
        result.logs_processed += 1
        if run_log is None:
            continue
        if not run_log.is_complete:
            result.incomplete_logs.append(path.name)

        for issue_log in run_log.issues:
            key = str(issue_log.issue_number)
            if key in issues:
                continue

            status = (
                IssueStatus.READY_FOR_MERGE if issue_log.status == IssueLogStatus.SUCCESS else IssueStatus.IN_PROGRESS
            )
            phases = {
                str(p.phase): PhaseState(
                    status=_PHASE_LOG_TO_STATE[p.status],
                    started_at=p.start_time,
                    completed_at=p.end_time,
                    error=p.error,
                )
                for p in issue_log.phases
            }
            last_activity = issue_log.phases[-1].end_time if issue_log.phases else run_log.start_time
            issues[key] = IssueState(
                number=issue_log.issue_number,
                title=issue_log.title,
                status=status,
                phases=phases,
                last_activity=last_activity,
                created_at=run_log.start_time,
            )

    await manager.save_state(WorkflowState(issues=issues))
    result.issues_found = len(issues)
    log.info(
        "state_rebuilt",
        logs_processed=result.logs_processed,
        issues_found=result.issues_found,
        incomplete_logs=len(result.incomplete_logs),
    )
    return result


@dataclass
class CleanupResult:
    removed: list[int] = field(default_factory=list)
    orphaned: list[int] = field(default_factory=list)
    merged: list[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.orphaned or self.merged)


async def cleanup_stale_entries(
    manager: StateManager,
    worktrees: WorktreeManager,
    github: GitHubCli,
    dry_run: bool = False,
    max_age_days: float | None = None,
    remove_all: bool = False,
) -> CleanupResult:
    """Mark or remove state entries whose worktree is gone.

    For an issue whose recorded worktree no longer exists:
        - a merged PR (or ``merged`` status) removes the entry
        - an ``abandoned`` entry, or any entry with ``remove_all``, is removed
        - anything else is marked ``abandoned`` and kept for review

    With ``max_age_days``, merged and abandoned entries whose last
    activity is older than that are removed as well.
    """
    result = CleanupResult()
    if not manager.state_exists():
        return result

    state = await manager.get_state()
    active = {str(entry.path) for entry in await worktrees.list_worktrees()}
    now = utcnow()

    for key, issue_state in list(state.issues.items()):
        number = issue_state.number
        if issue_state.worktree and issue_state.worktree not in active:
            pr_merged = False
            if issue_state.pr is not None:
                pr_merged = await github.pr_state(issue_state.pr.number) == "MERGED"

            if pr_merged or issue_state.status == IssueStatus.MERGED:
                result.merged.append(number)
                result.removed.append(number)
                log.info("stale_entry_merged", issue=number, dry_run=dry_run)
                if not dry_run:
                    del state.issues[key]
            elif issue_state.status == IssueStatus.ABANDONED or remove_all:
                result.orphaned.append(number)
                result.removed.append(number)
                log.info("stale_entry_removed", issue=number, dry_run=dry_run)
                if not dry_run:
                    del state.issues[key]
            else:
                result.orphaned.append(number)
                log.info("stale_entry_abandoned", issue=number, worktree=issue_state.worktree, dry_run=dry_run)
                if not dry_run:
                    issue_state.status = IssueStatus.ABANDONED
            continue

        if max_age_days is not None and issue_state.status in (IssueStatus.MERGED, IssueStatus.ABANDONED):
            if now - issue_state.last_activity > timedelta(days=max_age_days):
                result.removed.append(number)
                log.info("stale_entry_expired", issue=number, dry_run=dry_run)
                if not dry_run:
                    del state.issues[key]

    if result.changed and not dry_run:
        await manager.save_state(state)
    return result


@dataclass(frozen=True)
class DiscoveredWorktree:
    issue: int
    title: str
    path: Path
    branch: str
    inferred_phase: Phase | None = None


@dataclass
class DiscoverResult:
    worktrees_scanned: int = 0
    already_tracked: int = 0
    discovered: list[DiscoveredWorktree] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    """(worktree path, reason) pairs."""


def parse_issue_number_from_branch(branch: str) -> int | None:
    """``feature/42-x``, ``issue-42`` and ``42-x`` all name issue 42."""
    for pattern in BRANCH_ISSUE_PATTERNS:
        match = pattern.match(branch)
        if match:
            return int(match.group(1))
    return None


async def infer_phase_from_logs(log_dir: Path, issue: int) -> Phase | None:
    """Last phase run for the issue in the newest log that mentions it."""
    for path in list_run_logs(log_dir):
        run_log = await read_run_log(path)
        if run_log is None:
            continue
        for issue_log in run_log.issues:
            if issue_log.issue_number == issue and issue_log.phases:
                return issue_log.phases[-1].phase
    return None


async def discover_untracked_worktrees(
    manager: StateManager,
    worktrees: WorktreeManager,
    github: GitHubCli,
    log_dir: Path,
    dry_run: bool = False,
) -> DiscoverResult:
    """Start tracking issue worktrees that the state file does not know about.

    Issue numbers come from the branch name. Detached worktrees and trunk
    checkouts are skipped. A phase inferred from the logs is recorded as
    in progress and the issue as ``in_progress``; without one the issue is
    ``not_started``.
    """
    result = DiscoverResult()
    entries = await worktrees.list_worktrees()
    result.worktrees_scanned = len(entries)
    tracked = set((await manager.get_all_issue_states()).keys())

    for entry in entries:
        if not entry.branch:
            result.skipped.append((str(entry.path), "detached HEAD (no branch)"))
            continue
        if entry.branch in TRUNK_BRANCHES:
            result.skipped.append((str(entry.path), "trunk branch (not a feature worktree)"))
            continue
        number = parse_issue_number_from_branch(entry.branch)
        if number is None:
            result.skipped.append((str(entry.path), f"branch name doesn't match issue pattern: {entry.branch}"))
            continue
        if number in tracked:
            result.already_tracked += 1
            continue

        title = await github.get_issue_title(number) or f"(title unavailable for #{number})"
        phase = await infer_phase_from_logs(log_dir, number)
        result.discovered.append(
            DiscoveredWorktree(issue=number, title=title, path=entry.path, branch=entry.branch, inferred_phase=phase)
        )
        tracked.add(number)

    if result.discovered and not dry_run:
        async with manager.transaction() as state:
            for found in result.discovered:
                issue_state = IssueState(
                    number=found.issue,
                    title=found.title,
                    worktree=str(found.path),
                    branch=found.branch,
                )
                if found.inferred_phase is not None:
                    issue_state.status = IssueStatus.IN_PROGRESS
                    issue_state.current_phase = found.inferred_phase
                    issue_state.phases[str(found.inferred_phase)] = PhaseState(
                        status=PhaseStatus.IN_PROGRESS, started_at=utcnow()
                    )
                state.issues[str(found.issue)] = issue_state
        log.info("worktrees_discovered", count=len(result.discovered))

    return result


async def is_branch_merged_into_trunk(repo_root: Path, branch: str, trunk: str = "main") -> bool:
    result = await git("branch", "--merged", trunk).run(cwd=repo_root, timeout=MERGE_CHECK_TIMEOUT_SECONDS)
    if not result.ok:
        return False
    merged = {line.lstrip("*+ ").strip() for line in result.stdout.splitlines()}
    return branch in merged or f"remotes/origin/{branch}" in merged


async def is_issue_merged_into_trunk(
    repo_root: Path, issue: int, branch: str | None = None, trunk: str = "main"
) -> bool:
    """Detect an issue's work on trunk via its branch or a commit mentioning it."""
    candidates = [branch] if branch else []
    listing = await git("branch", "-a").run(cwd=repo_root, timeout=MERGE_CHECK_TIMEOUT_SECONDS)
    if listing.ok:
        candidates.extend(re.findall(rf"feature/{issue}-\S+", listing.stdout))

    for candidate in dict.fromkeys(candidates):
        if await is_branch_merged_into_trunk(repo_root, candidate, trunk):
            return True

    # "#1" must not match "#12".
    commits = await git("log", trunk, "--oneline", "-20", "-E", "--grep", rf"#{issue}([^0-9]|$)").run(
        cwd=repo_root, timeout=MERGE_CHECK_TIMEOUT_SECONDS
    )
    return commits.ok and bool(commits.output)


@dataclass
class ReconcileResult:
    advanced: list[int] = field(default_factory=list)
    still_pending: list[int] = field(default_factory=list)


async def reconcile_state_at_startup(
    manager: StateManager,
    repo_root: Path,
    github: GitHubCli,
    trunk: str = "main",
) -> ReconcileResult:
    """Advance ``ready_for_merge`` issues whose work has landed to ``merged``."""
    result = ReconcileResult()
    if not manager.state_exists():
        return result

    for number, issue_state in sorted((await manager.get_all_issue_states()).items()):
        if issue_state.status != IssueStatus.READY_FOR_MERGE:
            continue

        merged = False
        if issue_state.pr is not None:
            merged = await github.pr_state(issue_state.pr.number) == "MERGED"
        if not merged:
            merged = await is_issue_merged_into_trunk(repo_root, number, issue_state.branch, trunk)

        if merged:
            result.advanced.append(number)
        else:
            result.still_pending.append(number)

    for number in result.advanced:
        await manager.update_issue_status(number, IssueStatus.MERGED)
        log.info("issue_reconciled_merged", issue=number)

    return result
