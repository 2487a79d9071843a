"""
Durable workflow state with atomic, serialized read-modify-write.

All issues live in one JSON file (see ``repo_conductor.models.state``).
Every mutation loads the whole file, changes it and rewrites it through a
temporary file and an atomic rename, so readers never see a partial
write.

Concurrency Model:
    One asyncio lock per StateManager serializes every mutation within the
    process. There is no cross-process file locking: running two
    ``conductor`` processes against the same state file is unsupported
    and the last writer wins.

Example:
    >>> manager = StateManager(".conductor/state.json")
    >>> await manager.initialize_issue(42, "Add login")
    >>> await manager.update_phase_status(42, Phase.SPEC, PhaseStatus.IN_PROGRESS)
    >>> (await manager.get_issue_state(42)).current_phase
    <Phase.SPEC: 'spec'>
"""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiofiles
import structlog
from pydantic import ValidationError

from repo_conductor.enums import IssueStatus, Phase, PhaseStatus
from repo_conductor.exceptions import StateError
from repo_conductor.models.state import (
    STATE_VERSION,
    IssueState,
    LoopState,
    PhaseState,
    PullRequestInfo,
    WorkflowState,
    utcnow,
)

log = structlog.get_logger(__name__)

DEFAULT_STATE_PATH = ".conductor/state.json"

TERMINAL_PHASE_STATUSES = (PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED)


class StateManager:
    """Manage the workflow state file.

    Attributes:
        state_path: Location of the JSON state file. A missing file reads
            as empty state and is created on first write.
    """

    def __init__(self, state_path: str | Path = DEFAULT_STATE_PATH) -> None:
        self.state_path = Path(state_path)
        self._lock = asyncio.Lock()

    def state_exists(self) -> bool:
        return self.state_path.exists()

    async def _load(self) -> WorkflowState:
        """Read and validate the state file. Caller must hold the lock."""
        if not self.state_path.exists():
            return WorkflowState()

        try:
            async with aiofiles.open(self.state_path) as f:
                content = await f.read()
        except OSError as e:
            raise StateError(f"Cannot read state file {self.state_path}: {e}") from e

        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {self.state_path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateError(f"State file {self.state_path} must contain a JSON object")

        version = raw.get("version")
        if version != STATE_VERSION:
            raise StateError(
                f"Unsupported state file version {version!r} in {self.state_path} (expected {STATE_VERSION})"
            )

        try:
            return WorkflowState.model_validate(raw)
        except ValidationError as e:
            raise StateError(f"Invalid state file {self.state_path}: {e}") from e

    async def _save(self, state: WorkflowState) -> None:
        """Write state atomically. Caller must hold the lock."""
        state.last_updated = utcnow()
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(state.to_json())

        tmp_path.replace(self.state_path)

    async def get_state(self) -> WorkflowState:
        """Load the current state.

        Raises:
            StateError: If the file is unreadable, malformed or carries an
                unsupported version.
        """
        async with self._lock:
            return await self._load()

    async def save_state(self, state: WorkflowState) -> None:
        async with self._lock:
            await self._save(state)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[WorkflowState]:
        """Load, yield for modification, and save on clean exit.

        If the body raises, nothing is written and the exception
        propagates.

        Example:
            >>> async with manager.transaction() as state:
            ...     state.issues.pop("42", None)
        """
        async with self._lock:
            state = await self._load()
            try:
                yield state
                await self._save(state)
            except Exception:
                log.error("state_transaction_failed", state_path=str(self.state_path))
                raise

    @asynccontextmanager
    async def _issue(self, issue: int) -> AsyncIterator[IssueState]:
        async with self.transaction() as state:
            issue_state = state.issues.get(str(issue))
            if issue_state is None:
                raise StateError(f"Issue #{issue} not found in state")
            yield issue_state
            issue_state.last_activity = utcnow()

    async def get_issue_state(self, issue: int) -> IssueState | None:
        state = await self.get_state()
        return state.issues.get(str(issue))

    async def get_all_issue_states(self) -> dict[int, IssueState]:
        state = await self.get_state()
        return {int(key): value for key, value in state.issues.items()}

    async def get_current_phase(self, issue: int) -> Phase | None:
        issue_state = await self.get_issue_state(issue)
        return issue_state.current_phase if issue_state else None

    async def get_issues_by_status(self, status: IssueStatus) -> list[IssueState]:
        states = await self.get_all_issue_states()
        return [s for s in states.values() if s.status == status]

    async def initialize_issue(
        self,
        issue: int,
        title: str,
        worktree: str | None = None,
        branch: str | None = None,
        quality_loop: bool = False,
        max_iterations: int = 3,
    ) -> IssueState:
        """Start tracking an issue, replacing any previous record."""
        issue_state = IssueState(
            number=issue,
            title=title,
            worktree=worktree,
            branch=branch,
            loop=LoopState(enabled=quality_loop, max_iterations=max_iterations) if quality_loop else None,
        )
        async with self.transaction() as state:
            state.issues[str(issue)] = issue_state
        log.info("issue_tracked", issue=issue, title=title)
        return issue_state

    async def update_phase_status(
        self,
        issue: int,
        phase: Phase,
        status: PhaseStatus,
        error: str | None = None,
        iteration: int | None = None,
    ) -> None:
        """Record a phase transition.

        ``current_phase`` follows the phase while it is in progress and is
        cleared once that phase reaches any other status. Starting a phase
        moves a not-started issue to in progress.

        Raises:
            StateError: If the issue is not tracked
        """
        async with self._issue(issue) as issue_state:
            previous = issue_state.phases.get(str(phase))
            now = utcnow()
            phase_state = PhaseState(status=status, error=error, iteration=iteration)

            if status == PhaseStatus.IN_PROGRESS:
                phase_state.started_at = now
            elif previous is not None and previous.started_at and status != PhaseStatus.PENDING:
                phase_state.started_at = previous.started_at
            if status in TERMINAL_PHASE_STATUSES:
                phase_state.completed_at = now

            issue_state.phases[str(phase)] = phase_state

            if status == PhaseStatus.IN_PROGRESS:
                issue_state.current_phase = phase
                if issue_state.status == IssueStatus.NOT_STARTED:
                    issue_state.status = IssueStatus.IN_PROGRESS
            elif issue_state.current_phase == phase:
                issue_state.current_phase = None

        log.debug("phase_status_updated", issue=issue, phase=str(phase), status=str(status))

    async def update_issue_status(self, issue: int, status: IssueStatus) -> None:
        async with self._issue(issue) as issue_state:
            issue_state.status = status
        log.debug("issue_status_updated", issue=issue, status=str(status))

    async def update_pr_info(self, issue: int, number: int, url: str) -> None:
        async with self._issue(issue) as issue_state:
            issue_state.pr = PullRequestInfo(number=number, url=url)

    async def update_worktree_info(
        self, issue: int, worktree: str, branch: str, base_branch: str | None = None
    ) -> None:
        async with self._issue(issue) as issue_state:
            issue_state.worktree = worktree
            issue_state.branch = branch
            if base_branch is not None:
                issue_state.base_branch = base_branch

    async def update_session_id(self, issue: int, session_id: str) -> None:
        async with self._issue(issue) as issue_state:
            issue_state.session_id = session_id

    async def update_loop_iteration(self, issue: int, iteration: int) -> None:
        async with self._issue(issue) as issue_state:
            if issue_state.loop is not None:
                issue_state.loop.iteration = iteration

    async def remove_issue(self, issue: int) -> bool:
        """Stop tracking an issue. Returns False if it was not tracked."""
        async with self.transaction() as state:
            removed = state.issues.pop(str(issue), None)
        if removed is not None:
            log.info("issue_untracked", issue=issue)
        return removed is not None
