"""
Local run metrics.

Appends one record per non-dry run to ``.conductor/metrics.json``::

    {"version": 1, "runs": [{"id": "...", "date": "...", "issues": [42],
      "phases": ["spec", "exec", "qa"], "outcome": "success",
      "duration": 812.4, "model": "opus", "flags": ["--chain"],
      "metrics": {"tokensUsed": 0, "filesChanged": 7, "linesAdded": 210,
                  "acceptanceCriteria": 0, "qaIterations": 1}}]}
"""

import asyncio
import json
import uuid
from datetime import datetime
from pathlib import Path

import aiofiles
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from repo_conductor.enums import Phase, RunOutcome
from repo_conductor.exceptions import StateError
from repo_conductor.models.state import utcnow

log = structlog.get_logger(__name__)

METRICS_VERSION = 1


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunMetrics(_CamelModel):
    tokens_used: int = 0
    files_changed: int = 0
    lines_added: int = 0
    acceptance_criteria: int = 0
    qa_iterations: int = 0


class MetricRun(_CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    date: datetime = Field(default_factory=utcnow)
    issues: list[int]
    phases: list[Phase]
    outcome: RunOutcome
    duration: float = Field(ge=0)
    model: str | None = None
    flags: list[str] = Field(default_factory=list)
    metrics: RunMetrics = Field(default_factory=RunMetrics)


class Metrics(_CamelModel):
    version: int = METRICS_VERSION
    runs: list[MetricRun] = Field(default_factory=list)


def determine_outcome(passed: int, total: int) -> RunOutcome:
    if total > 0 and passed == total:
        return RunOutcome.SUCCESS
    if passed == 0:
        return RunOutcome.FAILED
    return RunOutcome.PARTIAL


class MetricsWriter:
    """Reads and appends to the metrics file."""

    def __init__(self, metrics_path: str | Path = ".conductor/metrics.json"):
        self.metrics_path = Path(metrics_path)
        self._lock = asyncio.Lock()

    async def get_metrics(self) -> Metrics:
        if not self.metrics_path.exists():
            return Metrics()
        try:
            async with aiofiles.open(self.metrics_path) as f:
                return Metrics.model_validate(json.loads(await f.read()))
        except (json.JSONDecodeError, ValidationError) as e:
            raise StateError(f"Invalid metrics file {self.metrics_path}: {e}") from e

    async def record_run(
        self,
        issues: list[int],
        phases: list[Phase],
        outcome: RunOutcome,
        duration: float,
        model: str | None = None,
        flags: list[str] | None = None,
        metrics: RunMetrics | None = None,
    ) -> MetricRun:
        run = MetricRun(
            issues=issues,
            phases=phases,
            outcome=outcome,
            duration=max(duration, 0.0),
            model=model,
            flags=flags or [],
            metrics=metrics or RunMetrics(),
        )
        async with self._lock:
            data = await self.get_metrics()
            data.runs.append(run)
            self.metrics_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.metrics_path.with_suffix(".tmp")
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(data.model_dump_json(by_alias=True, exclude_none=True, indent=2))
            tmp_path.replace(self.metrics_path)

        log.info("run_metrics_recorded", run_id=run.id, outcome=str(outcome))
        return run
