"""Run orchestration and execution engine.

This package drives issues through their phases: worktree preparation,
phase execution with retry, state tracking, run logs and metrics.

Key Components:
    - RunOrchestrator: Executes a list of issues according to a RunContext
    - PhaseExecutor: Runs one phase with timeout, retry and fallback
    - WorktreeManager: Per-issue git worktrees, rebases and pull requests
    - StateManager: Persistent issue state with atomic transactions
    - LogWriter: JSON run logs
    - MetricsWriter: Local run metrics
    - ShutdownCoordinator: Signal handling and ordered cleanup

Maintenance:
    - rebuild_state_from_logs, discover_untracked_worktrees,
      cleanup_stale_entries and reconcile_state_at_startup in
      ``repo_conductor.engine.state_utils``

Example:
    >>> from repo_conductor.engine import RunOrchestrator
    >>> report = await RunOrchestrator(context).run([12, 13])
"""

from repo_conductor.engine.context import RunContext, RunOptions
from repo_conductor.engine.metrics import MetricsWriter
from repo_conductor.engine.orchestrator import RunOrchestrator, RunReport
from repo_conductor.engine.phase_executor import PhaseExecutor
from repo_conductor.engine.run_log import LogWriter
from repo_conductor.engine.shutdown import ShutdownCoordinator
from repo_conductor.engine.state_manager import StateManager
from repo_conductor.engine.worktree_manager import WorktreeManager

__all__ = [
    "LogWriter",
    "MetricsWriter",
    "PhaseExecutor",
    "RunContext",
    "RunOptions",
    "RunOrchestrator",
    "RunReport",
    "ShutdownCoordinator",
    "StateManager",
    "WorktreeManager",
]
