"""Custom exception hierarchy for repo-conductor.

Exception Hierarchy:
    RepoConductorError (base)
    ├── ConfigurationError
    ├── StateError
    ├── GitOperationError
    ├── ExternalServiceError
    └── WorkflowError
        └── PhaseExecutionError

Only ConfigurationError and genuine phase failures are meant to end a run
with a non-zero exit. Everything else is caught at the subsystem boundary
and logged as a degradation.

Example Usage:
    >>> from repo_conductor.exceptions import StateError
    >>> try:
    ...     state = await manager.get_state()
    ... except StateError as e:
    ...     log.warning("state_unavailable", error=e.message)
"""

from collections.abc import Sequence


class RepoConductorError(Exception):
    """Base exception for all repo-conductor errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(RepoConductorError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found or not valid YAML
        - Undefined environment variable in an interpolation
        - Incompatible run options (chain mode without sequential)
    """

    pass


class StateError(RepoConductorError):
    """Workflow state file errors.

    Raised when the state file cannot be parsed, carries a schema version
    this release does not understand, or a mutation targets an issue that
    is not tracked.
    """

    pass


class GitOperationError(RepoConductorError):
    """Git command failures that abort the current operation.

    Attributes:
        message: Human-readable error description
        command: The git argv that failed, if known
    """

    def __init__(self, message: str, command: Sequence[str] | None = None) -> None:
        self.command = list(command) if command else []
        super().__init__(message)


class ExternalServiceError(RepoConductorError):
    """Failures talking to an external CLI (gh, the agent binary).

    Attributes:
        message: Human-readable error description
        returncode: Exit status of the failed process, if any
    """

    def __init__(self, message: str, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message)


class WorkflowError(RepoConductorError):
    """Orchestration-level failures."""

    pass


class PhaseExecutionError(WorkflowError):
    """A phase runner could not produce a result at all.

    A non-zero agent exit is an ordinary failed PhaseResult, not this
    exception. This covers a missing agent binary and similar.

    Attributes:
        message: Human-readable error description
        phase: Name of the phase being executed
    """

    def __init__(self, message: str, phase: str | None = None) -> None:
        self.phase = phase
        super().__init__(message)
