"""
Domain models for the workflow engine.

These dataclasses are the in-memory currency passed between the planner,
the worktree manager, the phase executor and the orchestrator. Anything
that must survive a restart is copied into the persisted state models in
``repo_conductor.models.state``.

Example:
    Building the per-run configuration::

        config = ExecutionConfig(
            phases=(Phase.SPEC, Phase.EXEC, Phase.QA),
            mode=ExecutionMode.STOP_ON_FAILURE,
            phase_timeout=1800,
        )
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from repo_conductor.enums import DEFAULT_PHASES, ExecutionMode, Phase, QaVerdict


@dataclass
class Issue:
    """Tracked issue as read from the issue tracker."""

    number: int
    """Issue number, the unique key everywhere in the system."""

    title: str
    """Issue title, used for branch slugs and PR titles."""

    labels: list[str] = field(default_factory=list)
    """Lowercase-insensitive label names."""

    body: str = ""
    """Issue body, scanned for dependency references."""


@dataclass
class WorktreeInfo:
    """An issue's isolated working copy for the duration of one run."""

    issue: int
    path: Path
    branch: str

    existed: bool = False
    """The worktree was already present before this run."""

    rebased: bool = False
    """A chain-mode rebase onto the previous branch succeeded."""

    rebase_attempted: bool = False
    """A chain-mode rebase was tried (successful or not)."""

    base_branch: str | None = None
    """Branch this worktree was created from or rebased onto."""


@dataclass(frozen=True)
class FreshnessResult:
    """How far a worktree has drifted from trunk."""

    is_stale: bool
    commits_behind: int
    has_uncommitted_changes: bool
    has_unpushed_commits: bool


@dataclass(frozen=True)
class RebaseResult:
    """Outcome of a rebase attempt. Conflicts are reported, never raised."""

    performed: bool
    success: bool
    reinstalled: bool = False
    error: str | None = None


@dataclass(frozen=True)
class PullRequestResult:
    """Outcome of merge request creation."""

    success: bool
    number: int | None = None
    url: str | None = None
    existing: bool = False
    error: str | None = None


@dataclass(frozen=True)
class DiffStats:
    files_changed: int = 0
    lines_added: int = 0


@dataclass(frozen=True)
class ExecutionConfig:
    """Immutable per-run configuration.

    Built once from settings and command-line overrides at run start.
    """

    phases: tuple[Phase, ...] = DEFAULT_PHASES
    mode: ExecutionMode = ExecutionMode.CONTINUE_ON_FAILURE
    phase_timeout: int = 1800
    quality_loop: bool = False
    max_iterations: int = 3
    enhanced_mode: bool = True
    retry: bool = True
    dry_run: bool = False
    smart_tests: bool = True

    @property
    def sequential(self) -> bool:
        return self.mode == ExecutionMode.STOP_ON_FAILURE

    def with_updates(self, **kwargs: Any) -> "ExecutionConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **kwargs)


@dataclass(frozen=True)
class PhaseResult:
    """Output of one phase invocation."""

    phase: Phase
    success: bool
    duration: float = 0.0
    error: str | None = None
    output: str | None = None
    session_id: str | None = None
    verdict: QaVerdict | None = None


@dataclass
class IssueResult:
    """Aggregated outcome for one issue within a run."""

    issue: int
    success: bool
    phase_results: list[PhaseResult] = field(default_factory=list)
    duration: float = 0.0
    loop_triggered: bool = False
    qa_iterations: int = 0
    pr: PullRequestResult | None = None
    skipped: bool = False

    @property
    def failed_phase(self) -> PhaseResult | None:
        """The first failed phase result, if any."""
        return next((r for r in self.phase_results if not r.success), None)

    @property
    def qa_failed(self) -> bool:
        """The last phase run was QA and it failed."""
        if not self.phase_results:
            return False
        last = self.phase_results[-1]
        return last.phase == Phase.QA and not last.success
