"""
Persisted workflow state models.

The state file is a single JSON document shared with other tooling, so
field names are camelCase on disk while the Python attributes stay
snake_case::

    {
        "version": 1,
        "lastUpdated": "2026-01-15T10:30:00+00:00",
        "issues": {
            "42": {
                "number": 42,
                "title": "Add login",
                "status": "in_progress",
                "currentPhase": "exec",
                "phases": {"spec": {"status": "completed", ...}, ...},
                "worktree": "/repo/../worktrees/feature/42-add-login",
                "branch": "feature/42-add-login",
                "pr": {"number": 7, "url": "https://github.com/o/r/pull/7"},
                "lastActivity": "...",
                "createdAt": "..."
            }
        }
    }
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from repo_conductor.enums import IssueStatus, Phase, PhaseStatus

STATE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(UTC)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhaseState(_CamelModel):
    """Status of one phase for one issue."""

    status: PhaseStatus = PhaseStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    iteration: int | None = None


class PullRequestInfo(_CamelModel):
    number: int
    url: str


class LoopState(_CamelModel):
    """Quality loop progress."""

    enabled: bool = False
    iteration: int = 0
    max_iterations: int = 3


class IssueState(_CamelModel):
    """Lifecycle record for one issue.

    ``current_phase``, when set, always names a phase whose status is
    ``in_progress``.
    """

    number: int
    title: str
    status: IssueStatus = IssueStatus.NOT_STARTED
    current_phase: Phase | None = None
    phases: dict[str, PhaseState] = Field(default_factory=dict)
    worktree: str | None = None
    branch: str | None = None
    base_branch: str | None = None
    pr: PullRequestInfo | None = None
    session_id: str | None = None
    loop: LoopState | None = None
    last_activity: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    def phase_status(self, phase: Phase | str) -> PhaseStatus | None:
        state = self.phases.get(str(phase))
        return state.status if state else None

    def completed_phases(self) -> list[Phase]:
        """Phases recorded as completed, in enum order."""
        return [p for p in Phase if self.phase_status(p) == PhaseStatus.COMPLETED]


class WorkflowState(_CamelModel):
    """The whole state file."""

    version: int = STATE_VERSION
    last_updated: datetime = Field(default_factory=utcnow)
    issues: dict[str, IssueState] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)
