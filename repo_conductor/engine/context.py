"""Run context for the orchestrator.

The ``RunContext`` dataclass carries the collaborators and options of one
``conductor run`` invocation through the orchestrator call graph, so no
component reaches for process-wide state.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.engine.metrics import MetricsWriter
from repo_conductor.engine.phase_executor import PhaseExecutor
from repo_conductor.engine.run_log import LogWriter
from repo_conductor.engine.shutdown import ShutdownCoordinator
from repo_conductor.engine.state_manager import StateManager
from repo_conductor.engine.worktree_manager import WorktreeManager
from repo_conductor.enums import Phase
from repo_conductor.exceptions import ConfigurationError
from repo_conductor.models.domain import ExecutionConfig
from repo_conductor.providers.github_cli import GitHubCli

log = structlog.get_logger(__name__)

LONG_CHAIN_WARNING_THRESHOLD = 5


@dataclass
class RunOptions:
    """User-facing switches of a run that are not part of ExecutionConfig.

    Attributes:
        explicit_phases: Phases given on the command line, if any
        auto_detect: Derive phases per issue from labels and the spec output
        chain: Each issue branches from the previous issue's branch
        qa_gate: Pause a chain when QA fails instead of stopping it
        batches: Issue groups run one after another
        base_branch: Branch the first worktree starts from
        force: Re-run issues that are already ready for merge or merged
        resume: Skip phases the state file records as completed
        testgen: Insert the testgen phase after spec
        no_rebase: Do not rebase onto trunk before opening a PR
        no_pr: Do not open a PR after a clean QA pass
    """

    explicit_phases: tuple[Phase, ...] | None = None
    auto_detect: bool = True
    chain: bool = False
    qa_gate: bool = False
    batches: list[list[int]] | None = None
    base_branch: str | None = None
    force: bool = False
    resume: bool = False
    testgen: bool = False
    no_rebase: bool = False
    no_pr: bool = False

    def validate(self, issues: list[int], config: ExecutionConfig) -> None:
        """Reject option combinations that cannot run.

        Raises:
            ConfigurationError: On an empty issue list or invalid chain options
        """
        if not issues:
            raise ConfigurationError("No issues given")
        if self.chain:
            if not config.sequential:
                raise ConfigurationError("--chain requires --sequential")
            if self.batches:
                raise ConfigurationError("--chain cannot be used with --batch")
            if len(issues) > LONG_CHAIN_WARNING_THRESHOLD:
                log.warning(
                    "long_chain",
                    issues=len(issues),
                    hint="Long chains increase merge complexity; consider smaller chains or batches",
                )
        if self.qa_gate and not self.chain:
            raise ConfigurationError("--qa-gate requires --chain")

    def flags(self, config: ExecutionConfig) -> list[str]:
        """Command-line flags recorded with the run's metrics."""
        flags = []
        if config.sequential:
            flags.append("--sequential")
        if self.chain:
            flags.append("--chain")
        if self.qa_gate:
            flags.append("--qa-gate")
        if config.quality_loop:
            flags.append("--quality-loop")
        if self.testgen:
            flags.append("--testgen")
        return flags


@dataclass
class RunContext:
    """Everything one run needs.

    ``state``, ``log_writer`` and ``metrics`` are optional: a dry run has
    no state tracking, and a log that cannot be created is dropped
    rather than failing the run.
    """

    repo_root: Path
    config: ExecutionConfig
    executor: PhaseExecutor
    github: GitHubCli
    shutdown: ShutdownCoordinator
    options: RunOptions = field(default_factory=RunOptions)
    worktrees: WorktreeManager | None = None
    state: StateManager | None = None
    log_writer: LogWriter | None = None
    metrics: MetricsWriter | None = None
    model: str | None = None

    def with_updates(self, **kwargs: Any) -> "RunContext":
        """Create a new context with updated fields."""
        return replace(self, **kwargs)
