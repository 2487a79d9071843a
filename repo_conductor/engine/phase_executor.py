"""
Phase execution with timeout, cold-start retry and enhanced-mode fallback.

The executor owns everything about a single phase invocation except the
invocation itself, which is delegated to a ``PhaseRunner``:

- choosing the working directory (worktree for isolated phases, the main
  repository otherwise) and the environment handed to the agent
- running the invocation in its own task with a per-phase timeout
- interpreting the exit status and, for QA, the verdict token
- the retry protocol in ``execute_phase_with_retry``

Retry protocol:
    1. A failure that finished in under ``COLD_START_THRESHOLD_SECONDS``
       is a cold start (the agent runtime failed to initialize) and is
       retried with identical configuration, up to
       ``COLD_START_MAX_RETRIES`` times.
    2. If every attempt was a cold-start failure and enhanced mode was on,
       one last attempt runs with enhanced mode off.
    3. If that fallback fails too, the original error is reported.
    4. A failure at or above the threshold is genuine and returned as is.
"""

import asyncio
import re
import time
from collections.abc import Callable
from pathlib import Path

import structlog

from repo_conductor.engine.shutdown import ShutdownCoordinator
from repo_conductor.enums import Phase, QaVerdict
from repo_conductor.models.domain import ExecutionConfig, PhaseResult
from repo_conductor.providers.base import PhaseOutput, PhaseRequest, PhaseRunner

log = structlog.get_logger(__name__)

COLD_START_THRESHOLD_SECONDS = 60
COLD_START_MAX_RETRIES = 2

ORCHESTRATOR_NAME = "conductor-run"

PHASE_PROMPTS: dict[Phase, str] = {
    Phase.SPEC: (
        "Review GitHub issue #{issue} and create an implementation plan with verification criteria. "
        "Run the /spec {issue} workflow."
    ),
    Phase.SECURITY_REVIEW: (
        "Perform a deep security analysis for GitHub issue #{issue} focusing on auth, permissions, "
        "and sensitive operations. Run the /security-review {issue} workflow."
    ),
    Phase.TESTGEN: (
        "Generate test stubs for GitHub issue #{issue} based on the specification. Run the /testgen {issue} workflow."
    ),
    Phase.EXEC: "Implement the feature for GitHub issue #{issue} following the spec. Run the /exec {issue} workflow.",
    Phase.TEST: "Execute structured browser-based testing for GitHub issue #{issue}. Run the /test {issue} workflow.",
    Phase.QA: (
        "Review the implementation for GitHub issue #{issue} against acceptance criteria. Run the /qa {issue} workflow."
    ),
    Phase.LOOP: (
        "Parse test/QA findings for GitHub issue #{issue} and iterate until quality gates pass. "
        "Run the /loop {issue} workflow."
    ),
}

VERDICT_PATTERN = re.compile(
    r"(?:###?\s*)?(?:\*\*)?Verdict:?\*?\*?\s*\*?\*?\s*"
    r"(READY_FOR_MERGE|AC_MET_BUT_NOT_A_PLUS|AC_NOT_MET|NEEDS_VERIFICATION)\*?\*?",
    re.IGNORECASE,
)


def parse_qa_verdict(output: str | None) -> QaVerdict | None:
    """Extract the QA verdict token from phase output.

    Recognizes ``Verdict: X`` optionally inside a markdown heading or bold
    label, with optional emphasis around the token. A bare token without a
    ``Verdict`` marker is not a verdict.

    Example:
        >>> parse_qa_verdict("**Verdict:** **READY_FOR_MERGE**")
        <QaVerdict.READY_FOR_MERGE: 'READY_FOR_MERGE'>
        >>> parse_qa_verdict("READY_FOR_MERGE") is None
        True
    """
    if not output:
        return None
    match = VERDICT_PATTERN.search(output)
    if not match:
        return None
    return QaVerdict(match.group(1).upper())


def format_duration(seconds: float) -> str:
    """``42.0s`` under a minute, ``2m 5s`` otherwise."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {seconds % 60:.0f}s"


def get_phase_prompt(phase: Phase, issue: int) -> str:
    return PHASE_PROMPTS[phase].replace("{issue}", str(issue))


class PhaseExecutor:
    """Executes phases for issues through a ``PhaseRunner``.

    Attributes:
        runner: Invokes the external agent
        repo_root: Working directory for phases that do not need a worktree
        shutdown: Coordinator checked before each invocation and told about
            the in-flight task so a signal can cancel it
    """

    def __init__(
        self,
        runner: PhaseRunner,
        repo_root: Path,
        shutdown: ShutdownCoordinator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.repo_root = repo_root
        self.shutdown = shutdown
        self._clock = clock

    def _build_env(self, issue: int, phase: Phase, config: ExecutionConfig, worktree: Path | None) -> dict[str, str]:
        env = {
            "CONDUCTOR_SMART_TESTS": "true" if config.smart_tests else "false",
            "CONDUCTOR_ORCHESTRATOR": ORCHESTRATOR_NAME,
            "CONDUCTOR_PHASE": str(phase),
        }
        if worktree is not None:
            env["CONDUCTOR_WORKTREE"] = str(worktree)
            env["CONDUCTOR_ISSUE"] = str(issue)
        return env

    async def execute_phase(
        self,
        issue: int,
        phase: Phase,
        config: ExecutionConfig,
        worktree: Path | None = None,
        session_id: str | None = None,
    ) -> PhaseResult:
        """Run one phase once.

        Args:
            issue: Issue number
            phase: Phase to run
            config: Run configuration (timeout, enhanced mode, dry run)
            worktree: Issue worktree; used as cwd for isolated phases
            session_id: Agent session to resume; ignored for worktree phases
                because a resumed session cannot change directory

        Returns:
            PhaseResult. Never raises for a failed, timed out or cancelled
            phase.
        """
        if config.dry_run:
            log.info("phase_dry_run", issue=issue, phase=str(phase))
            return PhaseResult(phase=phase, success=True, duration=0.0)

        if self.shutdown is not None and self.shutdown.shutting_down:
            return PhaseResult(phase=phase, success=False, error="Shutdown in progress")

        use_worktree = worktree is not None and phase.is_isolated
        cwd = worktree if use_worktree and worktree is not None else self.repo_root
        request = PhaseRequest(
            issue=issue,
            phase=phase,
            prompt=get_phase_prompt(phase, issue),
            cwd=cwd,
            enhanced_mode=config.enhanced_mode,
            env=self._build_env(issue, phase, config, cwd if use_worktree else None),
            session_id=session_id if not use_worktree else None,
        )

        start = self._clock()
        task = asyncio.ensure_future(self.runner.run(request))
        if self.shutdown is not None:
            self.shutdown.set_active_task(task)

        try:
            done, _ = await asyncio.wait({task}, timeout=config.phase_timeout)
            if not done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                duration = self._clock() - start
                log.warning("phase_timeout", issue=issue, phase=str(phase), timeout=config.phase_timeout)
                return PhaseResult(
                    phase=phase,
                    success=False,
                    duration=duration,
                    error=f"Timeout after {config.phase_timeout}s",
                )
        finally:
            if not task.done():
                task.cancel()
            if self.shutdown is not None:
                self.shutdown.set_active_task(None)

        duration = self._clock() - start

        if task.cancelled():
            return PhaseResult(phase=phase, success=False, duration=duration, error="Shutdown in progress")

        exc = task.exception()
        if exc is not None:
            log.error("phase_invocation_failed", issue=issue, phase=str(phase), error=str(exc))
            return PhaseResult(phase=phase, success=False, duration=duration, error=str(exc))

        return self._interpret(phase, task.result(), duration)

    @staticmethod
    def _interpret(phase: Phase, output: PhaseOutput, duration: float) -> PhaseResult:
        if not output.ok:
            return PhaseResult(
                phase=phase,
                success=False,
                duration=duration,
                error=output.error or f"Exit code {output.returncode}",
                output=output.output or None,
                session_id=output.session_id,
            )

        if phase == Phase.QA:
            verdict = parse_qa_verdict(output.output)
            if verdict is not None and not verdict.is_passing:
                return PhaseResult(
                    phase=phase,
                    success=False,
                    duration=duration,
                    error=f"QA verdict: {verdict}",
                    output=output.output,
                    session_id=output.session_id,
                    verdict=verdict,
                )
            return PhaseResult(
                phase=phase,
                success=True,
                duration=duration,
                output=output.output,
                session_id=output.session_id,
                verdict=verdict,
            )

        return PhaseResult(
            phase=phase,
            success=True,
            duration=duration,
            output=output.output,
            session_id=output.session_id,
        )

    async def execute_phase_with_retry(
        self,
        issue: int,
        phase: Phase,
        config: ExecutionConfig,
        worktree: Path | None = None,
        session_id: str | None = None,
    ) -> PhaseResult:
        """Run a phase applying the cold-start retry and fallback protocol.

        With ``config.retry`` disabled the phase runs exactly once.
        """
        if not config.retry:
            return await self.execute_phase(issue, phase, config, worktree, session_id)

        result = await self.execute_phase(issue, phase, config, worktree, session_id)
        for attempt in range(1, COLD_START_MAX_RETRIES + 1):
            if result.success or result.duration >= COLD_START_THRESHOLD_SECONDS:
                return result
            if self.shutdown is not None and self.shutdown.shutting_down:
                return result
            log.info(
                "phase_cold_start_retry",
                issue=issue,
                phase=str(phase),
                duration=round(result.duration, 1),
                attempt=attempt + 1,
                max_attempts=COLD_START_MAX_RETRIES + 1,
            )
            result = await self.execute_phase(issue, phase, config, worktree, session_id)

        if result.success or result.duration >= COLD_START_THRESHOLD_SECONDS:
            return result

        original_error = result.error
        if config.enhanced_mode and not (self.shutdown is not None and self.shutdown.shutting_down):
            log.warning("phase_enhanced_mode_fallback", issue=issue, phase=str(phase), error=original_error)
            fallback = await self.execute_phase(
                issue, phase, config.with_updates(enhanced_mode=False), worktree, session_id
            )
            if fallback.success:
                log.info("phase_succeeded_without_enhanced_mode", issue=issue, phase=str(phase))
                return fallback
            log.warning(
                "phase_fallback_failed",
                issue=issue,
                phase=str(phase),
                original_error=original_error,
                fallback_error=fallback.error,
            )
            return result

        return result
