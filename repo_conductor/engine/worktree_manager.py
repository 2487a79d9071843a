"""
Per-issue git worktree lifecycle.

Each issue gets its own worktree on a ``feature/<issue>-<slug>`` branch,
created under the ``worktrees`` directory next to the repository root.
In chain mode each issue's branch starts from the previous issue's branch.

Failure policy:
    - Creating a worktree that does not exist yet raises GitOperationError;
      callers decide whether to continue without one.
    - Rebase conflicts are never raised. The rebase is aborted and the
      outcome is reported as ``rebased=False`` / ``RebaseResult.success``.
    - Stale worktrees are only recreated when nothing would be lost.

Example:
    >>> manager = WorktreeManager(repo_root, GitConfig(), GitHubCli())
    >>> info = await manager.ensure_worktree(Issue(42, "Add login"))
    >>> info.branch
    'feature/42-add-login'
"""

import re
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from repo_conductor.config.settings import GitConfig
from repo_conductor.engine.package_manager import PackageManager
from repo_conductor.exceptions import GitOperationError
from repo_conductor.git.commands import CommandResult, git
from repo_conductor.models.domain import (
    DiffStats,
    FreshnessResult,
    Issue,
    PullRequestResult,
    RebaseResult,
    WorktreeInfo,
)
from repo_conductor.providers.github_cli import GitHubCli

log = structlog.get_logger(__name__)

SLUG_MAX_LENGTH = 50
FETCH_TIMEOUT_SECONDS = 30
PUSH_TIMEOUT_SECONDS = 60
ENV_FILE = ".env.local"


def slugify(title: str) -> str:
    """Lowercase, non-alphanumeric runs to ``-``, trimmed, at most 50 chars."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def branch_name(issue: int, title: str) -> str:
    slug = slugify(title)
    return f"feature/{issue}-{slug}" if slug else f"feature/{issue}"


def _is_conflict(result: CommandResult) -> bool:
    text = result.combined
    return "CONFLICT" in text or "could not apply" in text


@dataclass(frozen=True)
class WorktreeEntry:
    """One line group of ``git worktree list --porcelain``."""

    path: Path
    head: str | None = None
    branch: str | None = None


def parse_worktree_list(output: str) -> list[WorktreeEntry]:
    entries: list[WorktreeEntry] = []
    path: Path | None = None
    head: str | None = None
    branch: str | None = None
    for line in [*output.splitlines(), ""]:
        if line.startswith("worktree "):
            path = Path(line[len("worktree ") :])
        elif line.startswith("HEAD "):
            head = line[len("HEAD ") :]
        elif line.startswith("branch "):
            branch = line[len("branch ") :].removeprefix("refs/heads/")
        elif not line.strip() and path is not None:
            entries.append(WorktreeEntry(path=path, head=head, branch=branch))
            path, head, branch = None, None, None
    return entries


class WorktreeManager:
    """Creates, reuses, refreshes and publishes issue worktrees.

    Attributes:
        repo_root: Main working tree of the repository
        config: Trunk, remote and staleness threshold
        github: Used to find and open pull requests
        package_manager: Detected package manager, if any
    """

    def __init__(
        self,
        repo_root: Path,
        config: GitConfig | None = None,
        github: GitHubCli | None = None,
        package_manager: PackageManager | None = None,
    ):
        self.repo_root = repo_root
        self.config = config or GitConfig()
        self.github = github or GitHubCli(cwd=repo_root)
        self.package_manager = package_manager

    @property
    def worktrees_dir(self) -> Path:
        return self.repo_root.parent / "worktrees"

    @property
    def trunk_ref(self) -> str:
        return f"{self.config.remote}/{self.config.trunk}"

    def worktree_path(self, branch: str) -> Path:
        return self.worktrees_dir / branch

    async def list_worktrees(self) -> list[WorktreeEntry]:
        result = await git("worktree", "list", "--porcelain").run(cwd=self.repo_root)
        if not result.ok:
            log.warning("worktree_list_failed", error=result.error_text())
            return []
        return parse_worktree_list(result.stdout)

    async def find_existing_worktree(self, branch: str) -> Path | None:
        for entry in await self.list_worktrees():
            if entry.branch == branch:
                return entry.path
        return None

    async def check_worktree_freshness(self, path: Path) -> FreshnessResult:
        """Compare a worktree against trunk.

        A worktree more than ``stale_threshold`` commits behind is stale.
        Commands that fail simply leave the corresponding field at its
        default; freshness is advisory.
        """
        await git("fetch", self.config.remote, self.config.trunk).run(cwd=path, timeout=FETCH_TIMEOUT_SECONDS)

        status = await git("status", "--porcelain").run(cwd=path)
        uncommitted = status.ok and bool(status.output)

        unpushed_result = await git("log", "--oneline", "@{u}..HEAD").run(cwd=path)
        unpushed = unpushed_result.ok and bool(unpushed_result.output)

        behind = 0
        merge_base = await git("merge-base", "HEAD", self.trunk_ref).run(cwd=path)
        trunk_head = await git("rev-parse", self.trunk_ref).run(cwd=path)
        if merge_base.ok and trunk_head.ok and merge_base.output != trunk_head.output:
            count = await git("rev-list", "--count", f"{merge_base.output}..{trunk_head.output}").run(cwd=path)
            if count.ok and count.output.isdigit():
                behind = int(count.output)

        stale = behind > self.config.stale_threshold
        if stale:
            log.info("worktree_behind_trunk", path=str(path), commits_behind=behind)
        return FreshnessResult(
            is_stale=stale,
            commits_behind=behind,
            has_uncommitted_changes=uncommitted,
            has_unpushed_commits=unpushed,
        )

    async def remove_stale_worktree(self, path: Path, branch: str) -> bool:
        """Remove a worktree and force-delete its local branch.

        Returns False only if the worktree itself could not be removed. A
        branch that cannot be deleted is logged and ignored.
        """
        removed = await git("worktree", "remove", "--force", str(path)).run(cwd=self.repo_root)
        if not removed.ok:
            log.warning("worktree_remove_failed", path=str(path), error=removed.error_text())
            return False

        deleted = await git("branch", "-D", branch).run(cwd=self.repo_root)
        if not deleted.ok:
            log.info("branch_not_deleted", branch=branch, error=deleted.error_text())
        return True

    async def _rebase(self, path: Path, onto: str) -> RebaseResult:
        result = await git("rebase", onto).run(cwd=path)
        if result.ok:
            return RebaseResult(performed=True, success=True)

        await git("rebase", "--abort").run(cwd=path)
        if _is_conflict(result):
            log.warning("rebase_conflict", path=str(path), onto=onto)
            return RebaseResult(performed=True, success=False, error="Rebase conflict - manual resolution required")
        log.warning("rebase_failed", path=str(path), onto=onto, error=result.error_text())
        return RebaseResult(performed=True, success=False, error=result.error_text())

    def _base_ref(self, base_branch: str | None) -> tuple[str, bool]:
        """Resolve the ref a new branch starts from and whether it is local."""
        if not base_branch:
            return self.trunk_ref, False
        if base_branch.startswith(f"{self.config.remote}/"):
            return base_branch, False
        if base_branch == self.config.trunk:
            return self.trunk_ref, False
        return base_branch, True

    async def ensure_worktree(
        self,
        issue: Issue,
        base_branch: str | None = None,
        chain_mode: bool = False,
    ) -> WorktreeInfo:
        """Create or reuse the worktree for an issue.

        Args:
            issue: Issue the worktree is for
            base_branch: Branch to start from. In chain mode this is the
                previous issue's branch.
            chain_mode: Rebase reused worktrees onto ``base_branch``

        Returns:
            WorktreeInfo describing the worktree

        Raises:
            GitOperationError: If a new worktree could not be created
        """
        branch = branch_name(issue.number, issue.title)
        path = self.worktree_path(branch)

        existing = await self.find_existing_worktree(branch)
        if existing is not None:
            freshness = await self.check_worktree_freshness(existing)
            reuse = True
            if freshness.is_stale:
                if freshness.has_uncommitted_changes or freshness.has_unpushed_commits:
                    log.warning(
                        "stale_worktree_kept",
                        issue=issue.number,
                        commits_behind=freshness.commits_behind,
                        uncommitted=freshness.has_uncommitted_changes,
                        unpushed=freshness.has_unpushed_commits,
                    )
                elif await self.remove_stale_worktree(existing, branch):
                    log.info("stale_worktree_recreating", issue=issue.number, commits_behind=freshness.commits_behind)
                    reuse = False

            if reuse:
                info = WorktreeInfo(issue=issue.number, path=existing, branch=branch, existed=True)
                if chain_mode and base_branch:
                    rebase = await self._rebase(existing, base_branch)
                    info.rebase_attempted = True
                    info.rebased = rebase.success
                    info.base_branch = base_branch
                log.info("worktree_reused", issue=issue.number, path=str(existing))
                return info

        base_ref, local_base = self._base_ref(base_branch)
        if not local_base:
            remote_branch = base_ref.removeprefix(f"{self.config.remote}/")
            fetch = await git("fetch", self.config.remote, remote_branch).run(
                cwd=self.repo_root, timeout=FETCH_TIMEOUT_SECONDS
            )
            if not fetch.ok:
                log.warning("fetch_failed", ref=base_ref, error=fetch.error_text())

        path.parent.mkdir(parents=True, exist_ok=True)
        branch_exists = (await git("show-ref", "--verify", "--quiet", f"refs/heads/{branch}").run(cwd=self.repo_root)).ok

        info = WorktreeInfo(issue=issue.number, path=path, branch=branch, base_branch=base_ref)
        if branch_exists:
            add_cmd = git("worktree", "add", str(path), branch)
        else:
            add_cmd = git("worktree", "add", str(path), "-b", branch, base_ref)

        added = await add_cmd.run(cwd=self.repo_root)
        if not added.ok:
            raise GitOperationError(
                f"Failed to create worktree for #{issue.number}: {added.error_text()}",
                command=added.args,
            )

        if branch_exists and chain_mode and base_branch:
            rebase = await self._rebase(path, base_ref)
            info.rebase_attempted = True
            info.rebased = rebase.success

        log.info("worktree_created", issue=issue.number, path=str(path), branch=branch, base=base_ref)
        await self._prepare(path)
        return info

    async def _prepare(self, path: Path) -> None:
        env_file = self.repo_root / ENV_FILE
        if env_file.exists() and not (path / ENV_FILE).exists():
            shutil.copy2(env_file, path / ENV_FILE)
        if self.package_manager is not None and self.package_manager.needs_install(path):
            await self.package_manager.install(path)

    async def ensure_worktrees(self, issues: Sequence[Issue], base_branch: str | None = None) -> dict[int, WorktreeInfo]:
        """Independent worktrees for each issue. Failures are skipped."""
        worktrees: dict[int, WorktreeInfo] = {}
        for issue in issues:
            try:
                worktrees[issue.number] = await self.ensure_worktree(issue, base_branch)
            except GitOperationError as e:
                log.warning("worktree_unavailable", issue=issue.number, error=e.message)
        return worktrees

    async def ensure_worktrees_chain(
        self, issues: Sequence[Issue], base_branch: str | None = None
    ) -> dict[int, WorktreeInfo]:
        """Chained worktrees: each issue branches from the previous issue's branch.

        Stops at the first failure since later links would have no base.
        """
        worktrees: dict[int, WorktreeInfo] = {}
        previous = base_branch
        for issue in issues:
            try:
                info = await self.ensure_worktree(issue, previous, chain_mode=True)
            except GitOperationError as e:
                log.warning("chain_broken", issue=issue.number, error=e.message)
                break
            worktrees[issue.number] = info
            previous = info.branch
        return worktrees

    async def create_checkpoint_commit(self, path: Path, issue: int) -> bool:
        """Commit everything in the worktree after a QA pass. Clean tree is success."""
        status = await git("status", "--porcelain").run(cwd=path)
        if not status.ok:
            log.warning("checkpoint_status_failed", issue=issue, error=status.error_text())
            return False
        if not status.output:
            log.info("checkpoint_not_needed", issue=issue)
            return True

        added = await git("add", "-A").run(cwd=path)
        if not added.ok:
            log.warning("checkpoint_stage_failed", issue=issue, error=added.error_text())
            return False

        message = (
            f"checkpoint(#{issue}): QA passed\n\n"
            f"Automatic checkpoint commit created after issue #{issue}\n"
            "passed QA in chain mode. It is a recovery point if later issues fail."
        )
        committed = await git("commit", "-m", message).run(cwd=path)
        if not committed.ok:
            log.warning("checkpoint_commit_failed", issue=issue, error=committed.error_text())
            return False

        log.info("checkpoint_created", issue=issue)
        return True

    async def reinstall_if_lockfile_changed(self, path: Path, pre_rebase_ref: str = "ORIG_HEAD") -> bool:
        """Reinstall when the package manager's lockfile changed since ``pre_rebase_ref``.

        ``ORIG_HEAD`` covers every commit a rebase brought in, unlike
        ``HEAD~1``.
        """
        if self.package_manager is None:
            return False
        lockfile = self.package_manager.lockfile
        diff = await git("diff", "--name-only", f"{pre_rebase_ref}..HEAD", "--", lockfile).run(cwd=path)
        if not diff.ok or not diff.output:
            return False
        log.info("lockfile_changed", path=str(path), lockfile=lockfile)
        return await self.package_manager.install(path)

    async def rebase_before_pr(self, path: Path, issue: int) -> RebaseResult:
        """Rebase onto the latest trunk before opening a pull request."""
        log.info("rebasing_onto_trunk", issue=issue, onto=self.trunk_ref)
        fetch = await git("fetch", self.config.remote, self.config.trunk).run(cwd=path, timeout=FETCH_TIMEOUT_SECONDS)
        if not fetch.ok:
            log.warning("fetch_failed", ref=self.trunk_ref, error=fetch.error_text())

        result = await self._rebase(path, self.trunk_ref)
        if not result.success:
            return result

        reinstalled = await self.reinstall_if_lockfile_changed(path)
        return RebaseResult(performed=True, success=True, reinstalled=reinstalled)

    async def create_pr(self, path: Path, issue: Issue, branch: str) -> PullRequestResult:
        """Open a pull request for the branch, or return the one already open.

        Pushes the branch first. A creation failure reporting that the PR
        already exists (a race with another push) is resolved by probing
        once more.
        """
        existing = await self.github.find_pr(branch)
        if existing is not None:
            log.info("pr_exists", issue=issue.number, pr=existing.number)
            return PullRequestResult(success=True, number=existing.number, url=existing.url, existing=True)

        push = await git("push", "-u", self.config.remote, branch).run(cwd=path, timeout=PUSH_TIMEOUT_SECONDS)
        if not push.ok:
            log.warning("push_failed", issue=issue.number, branch=branch, error=push.error_text())
            return PullRequestResult(success=False, error=f"git push failed: {push.error_text()}")

        is_bug = any(re.match(r"^bug", label, re.IGNORECASE) for label in issue.labels)
        title = f"{'fix' if is_bug else 'feat'}(#{issue.number}): {issue.title}"
        body = "\n".join(
            [
                "## Summary",
                "",
                f"Automated PR for issue #{issue.number}.",
                "",
                f"Fixes #{issue.number}",
            ]
        )
        created = await self.github.create_pr(title, body, branch, cwd=path)

        if not created.ok:
            if "already exists" in created.combined:
                retry = await self.github.find_pr(branch)
                if retry is not None:
                    return PullRequestResult(success=True, number=retry.number, url=retry.url, existing=True)
            log.warning("pr_create_failed", issue=issue.number, error=created.error_text())
            return PullRequestResult(success=False, error=f"PR creation failed: {created.error_text()}")

        parsed = self.github.parse_pr_url(created.stdout)
        if parsed is None:
            parsed = await self.github.find_pr(branch)
        if parsed is None:
            log.warning("pr_url_unknown", issue=issue.number)
            return PullRequestResult(success=True)

        log.info("pr_created", issue=issue.number, pr=parsed.number, url=parsed.url)
        return PullRequestResult(success=True, number=parsed.number, url=parsed.url)

    async def get_worktree_diff_stats(self, path: Path) -> DiffStats:
        """Files changed and lines added relative to trunk."""
        result = await git("diff", "--stat", f"{self.config.trunk}...HEAD").run(cwd=path)
        if not result.ok or not result.output:
            return DiffStats()
        summary = result.output.splitlines()[-1]
        files = re.search(r"(\d+) files? changed", summary)
        added = re.search(r"(\d+) insertions?\(\+\)", summary)
        return DiffStats(
            files_changed=int(files.group(1)) if files else 0,
            lines_added=int(added.group(1)) if added else 0,
        )
