"""
Run log writer and readers.

A ``LogWriter`` records one orchestrator invocation. The file is written
when the run starts and again after every completed issue, but
``endTime`` and ``summary`` only appear once ``finalize`` runs. Readers
use that to tell a crashed run from a clean one.

Example:
    >>> writer = LogWriter(Path(".conductor/logs"))
    >>> await writer.initialize(snapshot, start_commit="abc123")
    >>> writer.start_issue(42, "Add login", ["feature"])
    >>> writer.log_phase(create_phase_log(42, result, started))
    >>> await writer.complete_issue()
    >>> path = await writer.finalize(end_commit="def456")
"""

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path

import aiofiles
import structlog
from pydantic import ValidationError

from repo_conductor.config.settings import RotationConfig
from repo_conductor.engine.log_rotation import rotate_logs
from repo_conductor.enums import IssueLogStatus, PhaseLogStatus
from repo_conductor.models.domain import PhaseResult
from repo_conductor.models.run_log import IssueLog, PhaseLog, RunConfigSnapshot, RunLog, RunSummary
from repo_conductor.models.state import utcnow

log = structlog.get_logger(__name__)


def phase_log_status(result: PhaseResult) -> PhaseLogStatus:
    if result.success:
        return PhaseLogStatus.SUCCESS
    if result.error and "Timeout" in result.error:
        return PhaseLogStatus.TIMEOUT
    return PhaseLogStatus.FAILURE


def create_phase_log(
    issue: int,
    result: PhaseResult,
    start_time: datetime,
    iterations: int | None = None,
) -> PhaseLog:
    """Build a PhaseLog from a result and the wall-clock time it started."""
    return PhaseLog(
        phase=result.phase,
        issue_number=issue,
        start_time=start_time,
        end_time=start_time + timedelta(seconds=result.duration),
        duration_seconds=max(result.duration, 0.0),
        status=phase_log_status(result),
        error=result.error,
        iterations=iterations,
    )


class LogWriter:
    """Writes the JSON run log for one invocation.

    Attributes:
        log_dir: Directory for ``run-*.json`` files
        rotation: Limits applied after finalization
    """

    def __init__(self, log_dir: Path, rotation: RotationConfig | None = None):
        self.log_dir = log_dir
        self.rotation = rotation or RotationConfig()
        self.run_log: RunLog | None = None
        self._current: IssueLog | None = None
        self._finalized = False

    @property
    def path(self) -> Path | None:
        return self.log_dir / self.run_log.filename if self.run_log else None

    @property
    def run_id(self) -> str | None:
        return self.run_log.run_id if self.run_log else None

    async def initialize(self, config: RunConfigSnapshot, start_commit: str | None = None) -> RunLog:
        """Create the log file for a new run.

        Raises:
            OSError: If the log directory or file cannot be written. The
                orchestrator treats this as a reason to run without a log.
        """
        self.run_log = RunLog(run_id=str(uuid.uuid4()), config=config, start_commit=start_commit)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        await self._write()
        log.info("run_log_started", run_id=self.run_log.run_id, path=str(self.path))
        return self.run_log

    def start_issue(self, issue: int, title: str, labels: list[str]) -> None:
        if self._current is not None:
            log.warning("run_log_issue_not_completed", issue=self._current.issue_number)
        self._current = IssueLog(issue_number=issue, title=title, labels=list(labels))

    def log_phase(self, phase_log: PhaseLog) -> None:
        """Append a phase to the current issue and fold it into the issue status.

        Any failure makes the issue a failure; a timeout makes it partial
        unless it already failed.
        """
        if self._current is None:
            log.warning("run_log_phase_without_issue", phase=str(phase_log.phase))
            return
        self._current.phases.append(phase_log)
        if phase_log.status == PhaseLogStatus.FAILURE:
            self._current.status = IssueLogStatus.FAILURE
        elif phase_log.status == PhaseLogStatus.TIMEOUT and self._current.status != IssueLogStatus.FAILURE:
            self._current.status = IssueLogStatus.PARTIAL

    def set_pr_info(self, number: int, url: str) -> None:
        if self._current is not None:
            self._current.pr_number = number
            self._current.pr_url = url

    async def complete_issue(self) -> None:
        if self._current is None or self.run_log is None:
            return
        self._current.total_duration_seconds = sum(p.duration_seconds for p in self._current.phases)
        self.run_log.issues.append(self._current)
        self._current = None
        await self._write()

    async def finalize(self, end_commit: str | None = None) -> Path | None:
        """Close the log with end time and summary, then rotate.

        Only the first call has any effect.
        """
        if self.run_log is None or self._finalized:
            return self.path
        if self._current is not None:
            await self.complete_issue()

        end_time = utcnow()
        issues = self.run_log.issues
        self.run_log.end_time = end_time
        self.run_log.end_commit = end_commit
        self.run_log.summary = RunSummary(
            total_issues=len(issues),
            passed=sum(1 for i in issues if i.status == IssueLogStatus.SUCCESS),
            failed=sum(1 for i in issues if i.status == IssueLogStatus.FAILURE),
            total_duration_seconds=max((end_time - self.run_log.start_time).total_seconds(), 0.0),
        )
        await self._write()
        self._finalized = True
        log.info("run_log_finalized", run_id=self.run_log.run_id, path=str(self.path))

        rotate_logs(self.log_dir, self.rotation)
        return self.path

    async def _write(self) -> None:
        if self.run_log is None or self.path is None:
            return
        tmp_path = self.path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(self.run_log.to_json())
        tmp_path.replace(self.path)


def list_run_logs(log_dir: Path) -> list[Path]:
    """Run log files, newest first by name (names start with the start time)."""
    if not log_dir.is_dir():
        return []
    return sorted(log_dir.glob("run-*.json"), key=lambda p: p.name, reverse=True)


async def read_run_log(path: Path) -> RunLog | None:
    """Parse one run log. Unreadable or invalid files yield None.

    Incomplete logs (no end time or summary) are returned but reported.
    """
    try:
        async with aiofiles.open(path) as f:
            content = await f.read()
        run_log = RunLog.model_validate(json.loads(content))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        log.warning("run_log_unreadable", path=str(path), error=str(e))
        return None

    if not run_log.is_complete:
        log.warning("run_log_incomplete", path=str(path), run_id=run_log.run_id)
    return run_log
