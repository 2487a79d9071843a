"""Data models for the workflow engine.

Key Models:
    - Issue, WorktreeInfo, ExecutionConfig, PhaseResult, IssueResult:
      in-memory dataclasses shared across one run
    - WorkflowState, IssueState, PhaseState: the persisted state file
    - RunLog, IssueLog, PhaseLog: the per-run JSON log

Example:
    >>> from repo_conductor.models import ExecutionConfig, PhaseResult
    >>> config = ExecutionConfig(phase_timeout=600)
"""

from repo_conductor.models.domain import (
    DiffStats,
    ExecutionConfig,
    FreshnessResult,
    Issue,
    IssueResult,
    PhaseResult,
    PullRequestResult,
    RebaseResult,
    WorktreeInfo,
)
from repo_conductor.models.run_log import IssueLog, PhaseLog, RunConfigSnapshot, RunLog, RunSummary
from repo_conductor.models.state import (
    STATE_VERSION,
    IssueState,
    LoopState,
    PhaseState,
    PullRequestInfo,
    WorkflowState,
)

__all__ = [
    "DiffStats",
    "ExecutionConfig",
    "FreshnessResult",
    "Issue",
    "IssueLog",
    "IssueResult",
    "IssueState",
    "LoopState",
    "PhaseLog",
    "PhaseResult",
    "PhaseState",
    "PullRequestInfo",
    "PullRequestResult",
    "RebaseResult",
    "RunConfigSnapshot",
    "RunLog",
    "RunSummary",
    "STATE_VERSION",
    "WorkflowState",
    "WorktreeInfo",
]
