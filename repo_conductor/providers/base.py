"""
Abstract base class for phase runners.

A phase runner is the only component that knows how the external agent is
invoked. The executor hands it a fully prepared request and gets back an
exit status plus captured text; timing, timeouts, retries and verdict
parsing all stay in ``repo_conductor.engine.phase_executor``.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from repo_conductor.enums import Phase


@dataclass(frozen=True)
class PhaseRequest:
    """Everything needed to invoke one phase once."""

    issue: int
    phase: Phase
    prompt: str
    cwd: Path
    enhanced_mode: bool = True
    env: Mapping[str, str] = field(default_factory=dict)
    session_id: str | None = None
    """Agent session to resume, when resuming is safe."""


@dataclass(frozen=True)
class PhaseOutput:
    """Raw result of a phase invocation."""

    returncode: int
    output: str = ""
    error: str | None = None
    session_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and self.error is None


class PhaseRunner(ABC):
    """Abstract base class for external phase runners.

    Implementations must not enforce timeouts themselves; the executor runs
    ``run`` in a task and cancels it on timeout or shutdown, so ``run``
    must clean up its child process when cancelled.
    """

    @abstractmethod
    async def run(self, request: PhaseRequest) -> PhaseOutput:
        """Invoke the phase and wait for it to finish.

        Args:
            request: Prepared invocation

        Returns:
            Exit status and captured output. A failed phase is a non-zero
            returncode, not an exception.

        Raises:
            PhaseExecutionError: If the runner cannot invoke the phase at all.
        """
        pass
