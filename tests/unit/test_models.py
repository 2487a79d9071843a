"""Tests for enums, domain models and persisted state models."""

import json

from repo_conductor.enums import IssueStatus, Phase, PhaseStatus, QaVerdict
from repo_conductor.models.domain import ExecutionConfig, IssueResult, PhaseResult
from repo_conductor.models.run_log import RunConfigSnapshot, RunLog
from repo_conductor.models.state import IssueState, PhaseState, PullRequestInfo, WorkflowState


class TestEnums:
    """Tests for enum helpers."""

    def test_phase_parse(self):
        """Test phase names are parsed case-insensitively."""
        assert Phase.parse(" EXEC ") == Phase.EXEC
        assert Phase.parse("security-review") == Phase.SECURITY_REVIEW
        assert Phase.parse("deploy") is None

    def test_isolated_phases(self):
        """Test which phases run inside the worktree."""
        assert Phase.EXEC.is_isolated
        assert Phase.QA.is_isolated
        assert not Phase.SPEC.is_isolated
        assert not Phase.SECURITY_REVIEW.is_isolated

    def test_completed_statuses(self):
        """Test the statuses the pre-flight guard skips."""
        assert IssueStatus.READY_FOR_MERGE.is_completed
        assert IssueStatus.MERGED.is_completed
        assert not IssueStatus.BLOCKED.is_completed
        assert not IssueStatus.WAITING_FOR_QA_GATE.is_completed

    def test_passing_verdicts(self):
        """Test which QA verdicts count as a pass."""
        assert QaVerdict.READY_FOR_MERGE.is_passing
        assert QaVerdict.NEEDS_VERIFICATION.is_passing
        assert not QaVerdict.AC_MET_BUT_NOT_A_PLUS.is_passing
        assert not QaVerdict.AC_NOT_MET.is_passing


class TestDomainModels:
    """Tests for in-memory domain models."""

    def test_execution_config_with_updates(self):
        """Test with_updates returns a modified copy."""
        config = ExecutionConfig()
        updated = config.with_updates(enhanced_mode=False)

        assert config.enhanced_mode is True
        assert updated.enhanced_mode is False
        assert updated.phase_timeout == config.phase_timeout

    def test_issue_result_qa_failed(self):
        """Test qa_failed only looks at the last phase."""
        result = IssueResult(
            issue=1,
            success=False,
            phase_results=[
                PhaseResult(phase=Phase.EXEC, success=True),
                PhaseResult(phase=Phase.QA, success=False, error="QA verdict: AC_NOT_MET"),
            ],
        )

        assert result.qa_failed
        assert result.failed_phase is not None
        assert result.failed_phase.phase == Phase.QA

    def test_issue_result_exec_failure_is_not_qa_failure(self):
        """Test a non-QA failure does not count as a QA failure."""
        result = IssueResult(issue=1, success=False, phase_results=[PhaseResult(phase=Phase.EXEC, success=False)])

        assert not result.qa_failed


class TestStateModels:
    """Tests for the state file schema."""

    def test_serializes_camel_case(self):
        """Test on-disk keys are camelCase and None fields are omitted."""
        state = WorkflowState(
            issues={
                "42": IssueState(
                    number=42,
                    title="Add login",
                    current_phase=Phase.EXEC,
                    phases={"exec": PhaseState(status=PhaseStatus.IN_PROGRESS)},
                    pr=PullRequestInfo(number=7, url="https://github.com/o/r/pull/7"),
                )
            }
        )

        data = json.loads(state.to_json())
        issue = data["issues"]["42"]

        assert data["version"] == 1
        assert "lastUpdated" in data
        assert issue["currentPhase"] == "exec"
        assert issue["phases"]["exec"]["status"] == "in_progress"
        assert "worktree" not in issue
        assert issue["pr"]["number"] == 7

    def test_loads_camel_case(self):
        """Test documents written by other tools load."""
        state = WorkflowState.model_validate(
            {
                "version": 1,
                "lastUpdated": "2026-01-15T10:30:00+00:00",
                "issues": {
                    "7": {
                        "number": 7,
                        "title": "Fix crash",
                        "status": "ready_for_merge",
                        "phases": {"qa": {"status": "completed"}},
                        "lastActivity": "2026-01-15T10:30:00+00:00",
                        "createdAt": "2026-01-15T10:00:00+00:00",
                    }
                },
            }
        )

        issue = state.issues["7"]
        assert issue.status == IssueStatus.READY_FOR_MERGE
        assert issue.completed_phases() == [Phase.QA]


class TestRunLogModel:
    """Tests for the run log document."""

    def test_filename_is_filesystem_safe(self):
        """Test the file name carries the start time without colons."""
        run_log = RunLog(
            run_id="abc",
            config=RunConfigSnapshot(phases=[Phase.EXEC], sequential=False, quality_loop=False, max_iterations=3),
        )

        assert run_log.filename.startswith("run-")
        assert run_log.filename.endswith("-abc.json")
        assert ":" not in run_log.filename

    def test_incomplete_until_finalized(self):
        """Test a log without end time and summary is incomplete."""
        run_log = RunLog(
            run_id="abc",
            config=RunConfigSnapshot(phases=[Phase.EXEC], sequential=False, quality_loop=False, max_iterations=3),
        )

        assert not run_log.is_complete
