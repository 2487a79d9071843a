"""Enumerations for repo-conductor phases, statuses and execution modes."""

from enum import Enum


class Phase(str, Enum):
    """Workflow phases executed by the external agent.

    Phases are opaque to the orchestrator: it only invokes them, times
    them and interprets their exit status and verdict.
    """

    SPEC = "spec"
    SECURITY_REVIEW = "security-review"
    TESTGEN = "testgen"
    EXEC = "exec"
    TEST = "test"
    QA = "qa"
    LOOP = "loop"

    def __str__(self) -> str:
        return self.value

    @property
    def is_isolated(self) -> bool:
        """Check if this phase runs inside the issue's worktree."""
        return self in (Phase.EXEC, Phase.TEST, Phase.QA, Phase.LOOP, Phase.TESTGEN)

    @classmethod
    def parse(cls, value: str) -> "Phase | None":
        """Return the phase named by ``value`` or None if unrecognized."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


DEFAULT_PHASES: tuple[Phase, ...] = (Phase.SPEC, Phase.EXEC, Phase.QA)


class PhaseStatus(str, Enum):
    """Persisted status of a single phase for one issue."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class IssueStatus(str, Enum):
    """Issue lifecycle status.

    not_started -> in_progress -> {waiting_for_qa_gate | blocked |
    ready_for_merge} -> merged, with abandoned reachable from any
    non-terminal state through cleanup.
    """

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_QA_GATE = "waiting_for_qa_gate"
    BLOCKED = "blocked"
    READY_FOR_MERGE = "ready_for_merge"
    MERGED = "merged"
    ABANDONED = "abandoned"

    def __str__(self) -> str:
        return self.value

    @property
    def is_completed(self) -> bool:
        """Check if the pre-flight guard should skip this issue."""
        return self in (IssueStatus.READY_FOR_MERGE, IssueStatus.MERGED)


class QaVerdict(str, Enum):
    """Verdict tokens emitted by the QA phase."""

    READY_FOR_MERGE = "READY_FOR_MERGE"
    AC_MET_BUT_NOT_A_PLUS = "AC_MET_BUT_NOT_A_PLUS"
    AC_NOT_MET = "AC_NOT_MET"
    NEEDS_VERIFICATION = "NEEDS_VERIFICATION"

    def __str__(self) -> str:
        return self.value

    @property
    def is_passing(self) -> bool:
        return self in (QaVerdict.READY_FOR_MERGE, QaVerdict.NEEDS_VERIFICATION)


class ExecutionMode(str, Enum):
    """Issue scheduling policy.

    Neither mode runs phases concurrently. CONTINUE_ON_FAILURE keeps going
    with the next issue after a failure, STOP_ON_FAILURE halts the run.
    """

    STOP_ON_FAILURE = "stop-on-failure"
    CONTINUE_ON_FAILURE = "continue-on-failure"

    def __str__(self) -> str:
        return self.value


class PhaseLogStatus(str, Enum):
    """Phase outcome as recorded in a run log."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class IssueLogStatus(str, Enum):
    """Issue outcome as recorded in a run log."""

    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"

    def __str__(self) -> str:
        return self.value


class RunOutcome(str, Enum):
    """Overall run outcome stored in metrics."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value
