"""Tests for state rebuild, cleanup, discovery and reconciliation."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import git
import pytest

from repo_conductor.engine.state_manager import StateManager
from repo_conductor.engine.state_utils import (
    cleanup_stale_entries,
    discover_untracked_worktrees,
    infer_phase_from_logs,
    is_branch_merged_into_trunk,
    is_issue_merged_into_trunk,
    parse_issue_number_from_branch,
    rebuild_state_from_logs,
    reconcile_state_at_startup,
)
from repo_conductor.engine.worktree_manager import WorktreeEntry
from repo_conductor.enums import IssueLogStatus, IssueStatus, Phase, PhaseLogStatus, PhaseStatus
from repo_conductor.git.commands import CommandResult
from repo_conductor.models.run_log import IssueLog, PhaseLog, RunConfigSnapshot, RunLog, RunSummary
from repo_conductor.models.state import IssueState, PullRequestInfo, utcnow

START = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)


def phase_log(issue: int, phase: Phase, status: PhaseLogStatus, start: datetime) -> PhaseLog:
    return PhaseLog(
        phase=phase,
        issue_number=issue,
        start_time=start,
        end_time=start + timedelta(minutes=5),
        duration_seconds=300,
        status=status,
    )


def write_run_log(log_dir: Path, run_id: str, start: datetime, issues: list[IssueLog], complete: bool = True) -> Path:
    run_log = RunLog(
        run_id=run_id,
        start_time=start,
        config=RunConfigSnapshot(phases=[Phase.EXEC, Phase.QA], sequential=False, quality_loop=False, max_iterations=3),
        issues=issues,
    )
    if complete:
        run_log.end_time = start + timedelta(hours=1)
        run_log.summary = RunSummary(total_issues=len(issues), passed=0, failed=0, total_duration_seconds=3600)
    path = log_dir / run_log.filename
    path.write_text(run_log.to_json())
    return path


@pytest.fixture
def github() -> MagicMock:
    mock = MagicMock()
    mock.pr_state = AsyncMock(return_value=None)
    mock.get_issue_title = AsyncMock(return_value=None)
    return mock


def worktree_manager(*entries: WorktreeEntry) -> MagicMock:
    mock = MagicMock()
    mock.list_worktrees = AsyncMock(return_value=list(entries))
    return mock


class TestRebuildStateFromLogs:
    """Tests for rebuild_state_from_logs."""

    @pytest.mark.asyncio
    async def test_newest_log_wins(self, state_manager: StateManager, log_dir: Path):
        """Test issues take their status from the newest log mentioning them."""
        older = START
        newer = START + timedelta(days=1)
        write_run_log(
            log_dir,
            "old",
            older,
            [
                IssueLog(
                    issue_number=42,
                    title="Add login",
                    status=IssueLogStatus.FAILURE,
                    phases=[phase_log(42, Phase.EXEC, PhaseLogStatus.FAILURE, older)],
                ),
                IssueLog(
                    issue_number=43,
                    title="Fix crash",
                    status=IssueLogStatus.PARTIAL,
                    phases=[phase_log(43, Phase.EXEC, PhaseLogStatus.TIMEOUT, older)],
                ),
            ],
        )
        write_run_log(
            log_dir,
            "new",
            newer,
            [
                IssueLog(
                    issue_number=42,
                    title="Add login",
                    status=IssueLogStatus.SUCCESS,
                    phases=[
                        phase_log(42, Phase.EXEC, PhaseLogStatus.SUCCESS, newer),
                        phase_log(42, Phase.QA, PhaseLogStatus.SUCCESS, newer),
                    ],
                )
            ],
        )

        result = await rebuild_state_from_logs(state_manager, log_dir)
        issues = await state_manager.get_all_issue_states()

        assert result.success
        assert result.logs_processed == 2
        assert result.issues_found == 2
        assert issues[42].status == IssueStatus.READY_FOR_MERGE
        assert issues[42].completed_phases() == [Phase.EXEC, Phase.QA]
        assert issues[43].status == IssueStatus.IN_PROGRESS
        assert issues[43].phases["exec"].status == PhaseStatus.FAILED
        assert issues[43].current_phase is None

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, state_manager: StateManager, log_dir: Path):
        """Test rebuilding twice yields the same issues."""
        write_run_log(
            log_dir,
            "r1",
            START,
            [
                IssueLog(
                    issue_number=42,
                    title="Add login",
                    phases=[phase_log(42, Phase.EXEC, PhaseLogStatus.SUCCESS, START)],
                )
            ],
        )

        await rebuild_state_from_logs(state_manager, log_dir)
        first = (await state_manager.get_state()).issues
        await rebuild_state_from_logs(state_manager, log_dir)
        second = (await state_manager.get_state()).issues

        assert first == second

    @pytest.mark.asyncio
    async def test_incomplete_logs_are_reported(self, state_manager: StateManager, log_dir: Path):
        """Test crashed runs still contribute but are listed."""
        path = write_run_log(
            log_dir, "crashed", START, [IssueLog(issue_number=7, title="Crash", status=IssueLogStatus.FAILURE)],
            complete=False,
        )

        result = await rebuild_state_from_logs(state_manager, log_dir)

        assert result.incomplete_logs == [path.name]
        assert result.issues_found == 1

    @pytest.mark.asyncio
    async def test_missing_log_dir(self, state_manager: StateManager, tmp_path: Path):
        """Test a missing log directory is reported, not raised."""
        result = await rebuild_state_from_logs(state_manager, tmp_path / "nope")

        assert not result.success
        assert "not found" in result.error
        assert not state_manager.state_exists()


class TestCleanupStaleEntries:
    """Tests for cleanup_stale_entries."""

    async def _seed(self, manager: StateManager) -> None:
        await manager.initialize_issue(1, "Orphan", worktree="/gone/1", branch="feature/1-orphan")
        await manager.initialize_issue(2, "Active", worktree="/active/2", branch="feature/2-active")
        await manager.initialize_issue(3, "Merged", worktree="/gone/3", branch="feature/3-merged")
        await manager.update_pr_info(3, 9, "https://github.com/o/r/pull/9")
        for number in (1, 2, 3):
            await manager.update_issue_status(number, IssueStatus.IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_three_passes_converge(self, state_manager: StateManager, github: MagicMock):
        """Test mark abandoned, then remove, then nothing to do."""
        await self._seed(state_manager)
        github.pr_state = AsyncMock(return_value="MERGED")
        worktrees = worktree_manager(WorktreeEntry(path=Path("/active/2"), branch="feature/2-active"))

        first = await cleanup_stale_entries(state_manager, worktrees, github)
        after_first = await state_manager.get_all_issue_states()

        assert first.merged == [3]
        assert first.removed == [3]
        assert first.orphaned == [1]
        assert after_first[1].status == IssueStatus.ABANDONED
        assert sorted(after_first) == [1, 2]

        second = await cleanup_stale_entries(state_manager, worktrees, github)

        assert second.removed == [1]
        assert sorted(await state_manager.get_all_issue_states()) == [2]

        third = await cleanup_stale_entries(state_manager, worktrees, github)

        assert not third.changed

    @pytest.mark.asyncio
    async def test_dry_run_does_not_write(self, state_manager: StateManager, github: MagicMock):
        """Test dry runs report without touching the state file."""
        await self._seed(state_manager)
        worktrees = worktree_manager()
        before = (await state_manager.get_state()).model_dump()

        result = await cleanup_stale_entries(state_manager, worktrees, github, dry_run=True)

        assert result.changed
        assert (await state_manager.get_state()).model_dump() == before

    @pytest.mark.asyncio
    async def test_remove_all_deletes_orphans(self, state_manager: StateManager, github: MagicMock):
        """Test --all removes orphans instead of marking them."""
        await state_manager.initialize_issue(1, "Orphan", worktree="/gone/1")

        result = await cleanup_stale_entries(state_manager, worktree_manager(), github, remove_all=True)

        assert result.removed == [1]
        assert await state_manager.get_all_issue_states() == {}

    @pytest.mark.asyncio
    async def test_max_age_removes_old_finished_entries(self, state_manager: StateManager, github: MagicMock):
        """Test merged entries older than the limit are removed."""
        async with state_manager.transaction() as state:
            state.issues["5"] = IssueState(
                number=5, title="Old", status=IssueStatus.MERGED, last_activity=utcnow() - timedelta(days=10)
            )
            state.issues["6"] = IssueState(number=6, title="Recent", status=IssueStatus.MERGED)

        result = await cleanup_stale_entries(state_manager, worktree_manager(), github, max_age_days=7)

        assert result.removed == [5]
        assert sorted(await state_manager.get_all_issue_states()) == [6]

    @pytest.mark.asyncio
    async def test_no_state_file(self, state_manager: StateManager, github: MagicMock):
        """Test a missing state file is nothing to clean."""
        worktrees = worktree_manager()

        result = await cleanup_stale_entries(state_manager, worktrees, github)

        assert not result.changed
        worktrees.list_worktrees.assert_not_awaited()


class TestDiscoverUntrackedWorktrees:
    """Tests for discover_untracked_worktrees."""

    @pytest.mark.parametrize(
        "branch,expected",
        [
            ("feature/42-add-login", 42),
            ("feature/42", 42),
            ("issue-7", 7),
            ("15-quick-fix", 15),
            ("main", None),
            ("feature/login", None),
        ],
    )
    def test_parse_issue_number_from_branch(self, branch, expected):
        """Test the supported branch naming patterns."""
        assert parse_issue_number_from_branch(branch) == expected

    @pytest.mark.asyncio
    async def test_discovers_once(self, state_manager: StateManager, github: MagicMock, log_dir: Path):
        """Test new worktrees are tracked and a second scan finds nothing."""
        await state_manager.initialize_issue(7, "Tracked")
        write_run_log(
            log_dir,
            "r1",
            START,
            [
                IssueLog(
                    issue_number=42,
                    title="Add login",
                    phases=[
                        phase_log(42, Phase.SPEC, PhaseLogStatus.SUCCESS, START),
                        phase_log(42, Phase.EXEC, PhaseLogStatus.FAILURE, START),
                    ],
                )
            ],
        )
        github.get_issue_title = AsyncMock(side_effect=lambda n: "Add login" if n == 42 else None)
        worktrees = worktree_manager(
            WorktreeEntry(path=Path("/repo"), branch="main"),
            WorktreeEntry(path=Path("/wt/detached")),
            WorktreeEntry(path=Path("/wt/feature/42-add-login"), branch="feature/42-add-login"),
            WorktreeEntry(path=Path("/wt/15-docs"), branch="15-docs"),
            WorktreeEntry(path=Path("/wt/experiment"), branch="experiment"),
            WorktreeEntry(path=Path("/wt/issue-7"), branch="issue-7"),
        )

        first = await discover_untracked_worktrees(state_manager, worktrees, github, log_dir)
        issues = await state_manager.get_all_issue_states()

        assert first.worktrees_scanned == 6
        assert first.already_tracked == 1
        assert [d.issue for d in first.discovered] == [42, 15]
        assert len(first.skipped) == 3
        assert issues[42].status == IssueStatus.IN_PROGRESS
        assert issues[42].current_phase == Phase.EXEC
        assert issues[42].branch == "feature/42-add-login"
        assert issues[15].status == IssueStatus.NOT_STARTED
        assert issues[15].title == "(title unavailable for #15)"

        second = await discover_untracked_worktrees(state_manager, worktrees, github, log_dir)

        assert second.discovered == []
        assert second.already_tracked == 3

    @pytest.mark.asyncio
    async def test_dry_run_does_not_write(self, state_manager: StateManager, github: MagicMock, log_dir: Path):
        """Test dry runs report without creating state."""
        worktrees = worktree_manager(WorktreeEntry(path=Path("/wt/a"), branch="feature/3-a"))

        result = await discover_untracked_worktrees(state_manager, worktrees, github, log_dir, dry_run=True)

        assert [d.issue for d in result.discovered] == [3]
        assert not state_manager.state_exists()

    @pytest.mark.asyncio
    async def test_infer_phase_without_logs(self, log_dir: Path):
        """Test no log means no inferred phase."""
        assert await infer_phase_from_logs(log_dir, 99) is None


class TestReconcile:
    """Tests for startup reconciliation and merge detection."""

    @pytest.mark.asyncio
    async def test_branch_merged(self, tmp_path: Path):
        """Test local and remote branches in ``git branch --merged``."""
        listing = CommandResult(("git",), "  main\n* feature/42-x\n  remotes/origin/feature/43-y\n", "", 0)
        with patch("repo_conductor.engine.state_utils.git") as mock_git:
            mock_git.return_value.run = AsyncMock(return_value=listing)

            assert await is_branch_merged_into_trunk(tmp_path, "feature/42-x")
            assert await is_branch_merged_into_trunk(tmp_path, "feature/43-y")
            assert not await is_branch_merged_into_trunk(tmp_path, "feature/44-z")

    @pytest.mark.asyncio
    async def test_reconcile_advances_merged(self, state_manager: StateManager, github: MagicMock, tmp_path: Path):
        """Test merged work moves to merged and the rest stays pending."""
        await state_manager.initialize_issue(42, "Merged PR")
        await state_manager.update_pr_info(42, 7, "https://github.com/o/r/pull/7")
        await state_manager.initialize_issue(43, "Still open", branch="feature/43-still-open")
        await state_manager.initialize_issue(44, "Blocked")
        for number in (42, 43):
            await state_manager.update_issue_status(number, IssueStatus.READY_FOR_MERGE)
        await state_manager.update_issue_status(44, IssueStatus.BLOCKED)
        github.pr_state = AsyncMock(return_value="MERGED")

        with patch(
            "repo_conductor.engine.state_utils.is_issue_merged_into_trunk", new=AsyncMock(return_value=False)
        ) as merged_check:
            first = await reconcile_state_at_startup(state_manager, tmp_path, github)
            second = await reconcile_state_at_startup(state_manager, tmp_path, github)

        assert first.advanced == [42]
        assert first.still_pending == [43]
        assert second.advanced == []
        assert (await state_manager.get_issue_state(42)).status == IssueStatus.MERGED
        assert (await state_manager.get_issue_state(44)).status == IssueStatus.BLOCKED
        merged_check.assert_any_await(tmp_path, 43, "feature/43-still-open", "main")

    @pytest.mark.asyncio
    async def test_reconcile_without_state(self, state_manager: StateManager, github: MagicMock, tmp_path: Path):
        """Test nothing happens without a state file."""
        result = await reconcile_state_at_startup(state_manager, tmp_path, github)

        assert result.advanced == []
        github.pr_state.assert_not_awaited()


class TestIssueMergeDetection:
    """Tests for finding an issue's commits on trunk."""

    @pytest.fixture
    def trunk_repo(self, tmp_path: Path) -> tuple[Path, str]:
        repo = git.Repo.init(tmp_path)
        author = git.Actor("Test", "test@example.com")
        repo.index.commit("feat: login (#12)", author=author, committer=author)
        return tmp_path, repo.active_branch.name

    @pytest.mark.asyncio
    async def test_issue_reference_is_exact(self, trunk_repo: tuple[Path, str]):
        """Test issue 1 is not merged by a commit for issue 12."""
        root, trunk = trunk_repo

        assert await is_issue_merged_into_trunk(root, 1, "feature/1-add-thing", trunk) is False
        assert await is_issue_merged_into_trunk(root, 12, None, trunk) is True
