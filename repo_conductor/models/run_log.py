"""
Run log models.

One JSON document per ``conductor run`` invocation. ``endTime`` and
``summary`` are only written by finalization, so a log missing either is
the remains of a crashed or interrupted run.
"""

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from repo_conductor.enums import IssueLogStatus, Phase, PhaseLogStatus
from repo_conductor.models.state import utcnow

RUN_LOG_VERSION = 1


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhaseLog(_CamelModel):
    """One phase execution within a run."""

    phase: Phase
    issue_number: int = Field(gt=0)
    start_time: datetime
    end_time: datetime
    duration_seconds: float = Field(ge=0)
    status: PhaseLogStatus
    error: str | None = None
    iterations: int | None = Field(default=None, ge=0)


class IssueLog(_CamelModel):
    """All phase logs for one issue within a run."""

    issue_number: int = Field(gt=0)
    title: str
    labels: list[str] = Field(default_factory=list)
    status: IssueLogStatus = IssueLogStatus.SUCCESS
    phases: list[PhaseLog] = Field(default_factory=list)
    total_duration_seconds: float = Field(default=0, ge=0)
    pr_number: int | None = None
    pr_url: str | None = None


class RunConfigSnapshot(_CamelModel):
    """Configuration the run was started with."""

    phases: list[Phase]
    sequential: bool
    quality_loop: bool
    max_iterations: int = Field(gt=0)
    chain: bool = False
    qa_gate: bool = False


class RunSummary(_CamelModel):
    total_issues: int = Field(ge=0)
    passed: int = Field(ge=0)
    failed: int = Field(ge=0)
    total_duration_seconds: float = Field(ge=0)


class RunLog(_CamelModel):
    """Top-level run log document."""

    version: int = RUN_LOG_VERSION
    run_id: str
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    start_commit: str | None = None
    end_commit: str | None = None
    config: RunConfigSnapshot
    issues: list[IssueLog] = Field(default_factory=list)
    summary: RunSummary | None = None

    @property
    def is_complete(self) -> bool:
        """True once the run was finalized."""
        return self.end_time is not None and self.summary is not None

    @property
    def filename(self) -> str:
        """``run-<timestamp>-<runId>.json`` with ``:`` and ``.`` made filename-safe."""
        timestamp = re.sub(r"[:.]", "-", self.start_time.strftime("%Y-%m-%dT%H:%M:%S"))[:19]
        return f"run-{timestamp}-{self.run_id}.json"

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)
