"""Tests for the run log writer, readers and rotation."""

import json
import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from repo_conductor.config.settings import RotationConfig
from repo_conductor.engine.log_rotation import get_log_stats, rotate_logs
from repo_conductor.engine.run_log import LogWriter, create_phase_log, list_run_logs, read_run_log
from repo_conductor.enums import IssueLogStatus, Phase, PhaseLogStatus
from repo_conductor.models.domain import PhaseResult
from repo_conductor.models.run_log import RunConfigSnapshot

STARTED = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)


@pytest.fixture
def snapshot() -> RunConfigSnapshot:
    return RunConfigSnapshot(phases=[Phase.SPEC, Phase.EXEC, Phase.QA], sequential=True, quality_loop=False, max_iterations=3)


class TestCreatePhaseLog:
    """Tests for create_phase_log."""

    def test_success(self):
        """Test timing fields are derived from the result."""
        entry = create_phase_log(42, PhaseResult(phase=Phase.EXEC, success=True, duration=90), STARTED)

        assert entry.status == PhaseLogStatus.SUCCESS
        assert entry.duration_seconds == 90
        assert (entry.end_time - entry.start_time).total_seconds() == 90

    def test_timeout_status(self):
        """Test a timeout error is recorded as timeout."""
        entry = create_phase_log(42, PhaseResult(phase=Phase.QA, success=False, error="Timeout after 1800s"), STARTED)

        assert entry.status == PhaseLogStatus.TIMEOUT

    def test_failure_status(self):
        """Test other errors are failures."""
        entry = create_phase_log(42, PhaseResult(phase=Phase.QA, success=False, error="QA verdict: AC_NOT_MET"), STARTED)

        assert entry.status == PhaseLogStatus.FAILURE


class TestLogWriter:
    """Tests for LogWriter."""

    @pytest.mark.asyncio
    async def test_full_run(self, log_dir: Path, snapshot: RunConfigSnapshot):
        """Test a run with one passing and one failing issue."""
        writer = LogWriter(log_dir)
        await writer.initialize(snapshot, start_commit="abc123")

        writer.start_issue(1, "Passes", ["feature"])
        writer.log_phase(create_phase_log(1, PhaseResult(phase=Phase.EXEC, success=True, duration=10), STARTED))
        writer.set_pr_info(7, "https://github.com/o/r/pull/7")
        await writer.complete_issue()

        writer.start_issue(2, "Fails", ["bug"])
        writer.log_phase(create_phase_log(2, PhaseResult(phase=Phase.EXEC, success=False, error="boom"), STARTED))
        path = await writer.finalize(end_commit="def456")

        data = json.loads(path.read_text())
        assert data["runId"] == writer.run_id
        assert data["startCommit"] == "abc123"
        assert data["endCommit"] == "def456"
        assert data["summary"]["totalIssues"] == 2
        assert data["summary"]["passed"] == 1
        assert data["summary"]["failed"] == 1
        assert data["issues"][0]["prNumber"] == 7
        assert data["issues"][1]["status"] == "failure"

    @pytest.mark.asyncio
    async def test_log_is_incomplete_until_finalized(self, log_dir: Path, snapshot: RunConfigSnapshot):
        """Test the file exists from the start but has no summary."""
        writer = LogWriter(log_dir)
        await writer.initialize(snapshot)

        run_log = await read_run_log(writer.path)

        assert run_log is not None
        assert not run_log.is_complete

    @pytest.mark.asyncio
    async def test_timeout_makes_issue_partial(self, log_dir: Path, snapshot: RunConfigSnapshot):
        """Test a timeout without failures marks the issue partial."""
        writer = LogWriter(log_dir)
        await writer.initialize(snapshot)
        writer.start_issue(1, "Slow", [])
        writer.log_phase(
            create_phase_log(1, PhaseResult(phase=Phase.EXEC, success=False, error="Timeout after 5s"), STARTED)
        )
        await writer.complete_issue()

        assert writer.run_log.issues[0].status == IssueLogStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_finalize_runs_once(self, log_dir: Path, snapshot: RunConfigSnapshot):
        """Test a second finalize leaves the log unchanged."""
        writer = LogWriter(log_dir)
        await writer.initialize(snapshot)
        path = await writer.finalize()
        first = path.read_text()

        assert await writer.finalize() == path
        assert path.read_text() == first

    @pytest.mark.asyncio
    async def test_unreadable_log_is_none(self, log_dir: Path):
        """Test invalid files read as None."""
        path = log_dir / "run-2026-01-01T00-00-00-bad.json"
        path.write_text("{broken")

        assert await read_run_log(path) is None

    def test_list_newest_first(self, log_dir: Path):
        """Test listing orders by file name, newest first."""
        for name in ("run-2026-01-01T00-00-00-a.json", "run-2026-03-01T00-00-00-c.json", "notes.json"):
            (log_dir / name).write_text("{}")

        assert [p.name for p in list_run_logs(log_dir)] == [
            "run-2026-03-01T00-00-00-c.json",
            "run-2026-01-01T00-00-00-a.json",
        ]


class TestLogRotation:
    """Tests for log rotation."""

    def _write_logs(self, log_dir: Path, count: int, size: int = 100) -> list[Path]:
        paths = []
        for index in range(count):
            path = log_dir / f"run-2026-01-{index + 1:02d}T00-00-00-{index}.json"
            path.write_text("x" * size)
            os.utime(path, (1_700_000_000 + index, 1_700_000_000 + index))
            paths.append(path)
        return paths

    def test_under_limits_does_nothing(self, log_dir: Path):
        """Test nothing is deleted when within limits."""
        self._write_logs(log_dir, 3)

        result = rotate_logs(log_dir, RotationConfig(max_files=5))

        assert not result.rotated
        assert len(list(log_dir.glob("run-*.json"))) == 3

    def test_count_limit_deletes_oldest_to_ninety_percent(self, log_dir: Path):
        """Test rotation deletes the oldest files down to 90% of the cap."""
        paths = self._write_logs(log_dir, 12)

        result = rotate_logs(log_dir, RotationConfig(max_files=10))

        assert result.rotated
        assert result.deleted_files == [p.name for p in paths[:3]]
        assert result.bytes_reclaimed == 300
        assert len(list(log_dir.glob("run-*.json"))) == 9

    def test_dry_run_deletes_nothing(self, log_dir: Path):
        """Test dry runs only report."""
        self._write_logs(log_dir, 12)

        result = rotate_logs(log_dir, RotationConfig(max_files=10), dry_run=True)

        assert result.deleted_count == 3
        assert not result.rotated
        assert len(list(log_dir.glob("run-*.json"))) == 12

    def test_disabled(self, log_dir: Path):
        """Test disabled rotation never deletes."""
        self._write_logs(log_dir, 12)

        result = rotate_logs(log_dir, RotationConfig(enabled=False, max_files=10))

        assert result.deleted_count == 0

    def test_stats(self, log_dir: Path):
        """Test directory statistics."""
        paths = self._write_logs(log_dir, 2, size=512)

        stats = get_log_stats(log_dir, RotationConfig(max_files=1))

        assert stats.file_count == 2
        assert stats.total_size_bytes == 1024
        assert stats.oldest_file == paths[0].name
        assert stats.newest_file == paths[1].name
        assert stats.exceeds_count
        assert not stats.exceeds_size
