"""
Run orchestrator: drives a list of issues through their phases.

Architecture Overview:
    ``RunOrchestrator`` sits between the CLI and the engine components. It
    plans the issue order, prepares worktrees, executes each issue's
    phases through the ``PhaseExecutor`` and records progress in the state
    file, the run log and the metrics file.

Execution modes:
    - Continue on failure (default): issues run one at a time; a failed
      issue does not stop the others.
    - Stop on failure (``--sequential``): the first failed issue halts the
      remaining ones.
    - Batches: groups run in order; inside a group the mode above applies,
      and with stop on failure a failed group halts later groups.
    - Chain (``--sequential --chain``): each issue's worktree branches from
      the previous issue's branch. With ``--qa-gate`` a QA failure pauses
      the chain in ``waiting_for_qa_gate`` instead of ``blocked``.

    No two phases ever run at the same time.

Issue lifecycle:
    not_started -> in_progress -> ready_for_merge | blocked | waiting_for_qa_gate

Failure policy:
    Only configuration errors raise. State, log, metrics, worktree and PR
    problems are logged as warnings and the run carries on without that
    subsystem. Phase failures are reported through the results.

Example:
    >>> orchestrator = RunOrchestrator(context)
    >>> report = await orchestrator.run([12, 13])
    >>> report.exit_code
    0
"""

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.engine.context import RunContext, RunOptions
from repo_conductor.engine.metrics import RunMetrics, determine_outcome
from repo_conductor.engine.phase_executor import format_duration
from repo_conductor.engine.phase_mapper import (
    detect_phases_from_labels,
    determine_phases_for_issue,
    filter_resumed_phases,
    has_bug_labels,
    parse_dependencies,
    parse_recommended_workflow,
    sort_by_dependencies,
)
from repo_conductor.engine.run_log import create_phase_log
from repo_conductor.engine.state_utils import reconcile_state_at_startup
from repo_conductor.enums import IssueStatus, Phase, PhaseStatus
from repo_conductor.exceptions import RepoConductorError, StateError
from repo_conductor.git.commands import git
from repo_conductor.models.domain import ExecutionConfig, Issue, IssueResult, PhaseResult, WorktreeInfo
from repo_conductor.models.run_log import RunConfigSnapshot
from repo_conductor.models.state import utcnow
from repo_conductor.utils.logging_config import bind_run_context

log = structlog.get_logger(__name__)

LOG_CLEANUP_NAME = "finalize-run-log"
QUALITY_LOOP_PHASES = (Phase.EXEC, Phase.TEST, Phase.QA)


@dataclass
class RunReport:
    """Outcome of one run.

    Attributes:
        results: One result per issue that was executed, in run order
        skipped: Issues the pre-flight guard skipped, with their status
        log_path: Run log file, if one was written
        dry_run: The run did not execute anything
        interrupted: A shutdown was requested during the run
    """

    results: list[IssueResult] = field(default_factory=list)
    skipped: list[tuple[int, IssueStatus]] = field(default_factory=list)
    log_path: Path | None = None
    dry_run: bool = False
    interrupted: bool = False

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed and not self.dry_run else 0


class RunOrchestrator:
    """Executes issues according to a ``RunContext``.

    Attributes:
        context: Collaborators and options of this run
    """

    def __init__(self, context: RunContext) -> None:
        self.context = context
        self._sessions: dict[int, str] = {}
        self._worktree_cleanups: list[str] = []

    @property
    def config(self) -> ExecutionConfig:
        return self.context.config

    @property
    def options(self) -> RunOptions:
        return self.context.options

    async def _track(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Call a StateManager method, degrading to a warning on state errors."""
        state = self.context.state
        if state is None:
            return None
        try:
            return await getattr(state, method)(*args, **kwargs)
        except StateError as e:
            log.warning("state_tracking_failed", operation=method, error=e.message)
            return None

    async def _head_commit(self) -> str | None:
        result = await git("rev-parse", "HEAD").run(cwd=self.context.repo_root)
        return result.output if result.ok else None

    async def run(self, issue_numbers: Sequence[int]) -> RunReport:
        """Run the given issues (or ``options.batches``) to completion.

        Raises:
            ConfigurationError: If the options cannot be combined
        """
        options = self.options
        numbers = list(dict.fromkeys(issue_numbers))
        if options.batches:
            numbers = list(dict.fromkeys(n for batch in options.batches for n in batch))
        options.validate(numbers, self.config)

        report = RunReport(dry_run=self.config.dry_run)

        issues = {n: await self.context.github.get_issue(n) for n in numbers}

        if len(numbers) > 1 and not options.batches:
            dependencies = {n: parse_dependencies(issues[n].body, issues[n].labels) for n in numbers}
            ordered = sort_by_dependencies(numbers, dependencies)
            if ordered != numbers:
                log.info("dependency_order", order=[f"#{n}" for n in ordered])
            numbers = ordered

        await self._start_log()

        if self.context.state is not None and not self.config.dry_run:
            try:
                reconciled = await reconcile_state_at_startup(
                    self.context.state,
                    self.context.repo_root,
                    self.context.github,
                    trunk=self.context.worktrees.config.trunk if self.context.worktrees else "main",
                )
            except RepoConductorError as e:
                log.warning("state_reconcile_failed", error=e.message)
            else:
                if reconciled.advanced:
                    log.info("state_reconciled", merged=[f"#{n}" for n in reconciled.advanced])

        numbers = await self._preflight(numbers, report)
        if not numbers:
            log.warning("all_issues_completed", hint="Use --force to re-run")
            await self._finish(report, started=time.monotonic())
            return report

        worktrees = await self._prepare_worktrees([issues[n] for n in numbers])

        started = time.monotonic()
        try:
            if options.batches:
                active = set(numbers)
                batches = [[n for n in batch if n in active] for batch in options.batches]
                for index, batch in enumerate(b for b in batches if b):
                    log.info("batch_started", batch=index + 1, issues=[f"#{n}" for n in batch])
                    results = await self._run_sequence([issues[n] for n in batch], worktrees)
                    report.results.extend(results)
                    if self.context.shutdown.shutting_down:
                        break
                    if self.config.sequential and any(not r.success for r in results):
                        log.warning("batch_failed_stopping", batch=index + 1)
                        break
            else:
                report.results.extend(await self._run_sequence([issues[n] for n in numbers], worktrees))
        finally:
            if not self.context.shutdown.shutting_down:
                for name in self._worktree_cleanups:
                    self.context.shutdown.unregister(name)

        await self._finish(report, started, worktrees)
        return report

    async def _start_log(self) -> None:
        writer = self.context.log_writer
        if writer is None:
            return
        snapshot = RunConfigSnapshot(
            phases=list(self.options.explicit_phases or self.config.phases),
            sequential=self.config.sequential,
            quality_loop=self.config.quality_loop,
            max_iterations=self.config.max_iterations,
            chain=self.options.chain,
            qa_gate=self.options.qa_gate,
        )
        try:
            await writer.initialize(snapshot, start_commit=await self._head_commit())
        except OSError as e:
            log.warning("run_log_unavailable", error=str(e))
            self.context.log_writer = None
            return
        bind_run_context(run_id=writer.run_id)
        self.context.shutdown.register(LOG_CLEANUP_NAME, writer.finalize)

    async def _preflight(self, numbers: list[int], report: RunReport) -> list[int]:
        """Drop issues that are already ready for merge or merged, unless forced."""
        if self.context.state is None or self.config.dry_run or self.options.force:
            return numbers

        active = []
        for number in numbers:
            try:
                issue_state = await self.context.state.get_issue_state(number)
            except StateError as e:
                log.warning("preflight_state_unreadable", issue=number, error=e.message)
                active.append(number)
                continue
            if issue_state is not None and issue_state.status.is_completed:
                log.warning(
                    "issue_skipped",
                    issue=number,
                    status=str(issue_state.status),
                    hint="Use --force to re-run",
                )
                report.skipped.append((number, issue_state.status))
            else:
                active.append(number)
        return active

    async def _prepare_worktrees(self, issues: list[Issue]) -> dict[int, WorktreeInfo]:
        manager = self.context.worktrees
        if manager is None or self.config.dry_run:
            return {}

        if self.options.chain:
            worktrees = await manager.ensure_worktrees_chain(issues, self.options.base_branch)
        else:
            worktrees = await manager.ensure_worktrees(issues, self.options.base_branch)

        for number, info in worktrees.items():
            if info.existed:
                continue
            name = f"remove-worktree-{number}"
            self.context.shutdown.register(name, self._worktree_remover(info.path))
            self._worktree_cleanups.append(name)
        return worktrees

    def _worktree_remover(self, path: Path) -> Callable[[], Awaitable[None]]:
        repo_root = self.context.repo_root

        async def remove() -> None:
            # Keeps the branch so work can be recovered.
            result = await git("worktree", "remove", "--force", str(path)).run(cwd=repo_root)
            if not result.ok:
                log.warning("worktree_cleanup_failed", path=str(path), error=result.error_text())

        return remove

    async def _run_sequence(self, issues: list[Issue], worktrees: dict[int, WorktreeInfo]) -> list[IssueResult]:
        results: list[IssueResult] = []
        shutdown = self.context.shutdown
        for index, issue in enumerate(issues):
            if shutdown.shutting_down:
                break

            result = await self._run_logged(issue, worktrees.get(issue.number), is_last=index == len(issues) - 1)
            results.append(result)

            if shutdown.shutting_down:
                break
            if result.success or not self.config.sequential:
                continue

            if self.options.qa_gate and result.qa_failed:
                log.warning(
                    "qa_gate_paused",
                    issue=issue.number,
                    hint="Fix the QA findings and re-run the chain",
                )
                await self._track("update_issue_status", issue.number, IssueStatus.WAITING_FOR_QA_GATE)
                break

            log.warning(
                "sequential_run_stopped",
                issue=issue.number,
                failed_phase=str(result.failed_phase.phase) if result.failed_phase else None,
                chain=self.options.chain,
            )
            break
        return results

    async def _run_logged(self, issue: Issue, worktree: WorktreeInfo | None, is_last: bool) -> IssueResult:
        writer = self.context.log_writer
        if writer is not None:
            writer.start_issue(issue.number, issue.title, issue.labels)

        result = await self.run_issue(issue, worktree, is_last=is_last)

        if writer is not None:
            if result.pr is not None and result.pr.number and result.pr.url:
                writer.set_pr_info(result.pr.number, result.pr.url)
            try:
                await writer.complete_issue()
            except OSError as e:
                log.warning("run_log_write_failed", issue=issue.number, error=str(e))
        return result

    async def _run_phase(
        self,
        issue: int,
        phase: Phase,
        worktree: WorktreeInfo | None,
        iteration: int | None = None,
    ) -> PhaseResult:
        """Execute one phase with state, session and log bookkeeping."""
        await self._track("update_phase_status", issue, phase, PhaseStatus.IN_PROGRESS, iteration=iteration)

        started_at = utcnow()
        result = await self.context.executor.execute_phase_with_retry(
            issue,
            phase,
            self.config,
            worktree=worktree.path if worktree else None,
            session_id=self._sessions.get(issue),
        )

        if result.session_id:
            self._sessions[issue] = result.session_id
            await self._track("update_session_id", issue, result.session_id)

        if self.context.log_writer is not None:
            self.context.log_writer.log_phase(create_phase_log(issue, result, started_at, iterations=iteration))

        await self._track(
            "update_phase_status",
            issue,
            phase,
            PhaseStatus.COMPLETED if result.success else PhaseStatus.FAILED,
            error=result.error,
            iteration=iteration,
        )

        if result.success:
            log.info("phase_completed", issue=issue, phase=str(phase), duration=format_duration(result.duration))
        else:
            log.warning("phase_failed", issue=issue, phase=str(phase), error=result.error)
        return result

    async def _spec_completed(self, issue: int) -> bool:
        issue_state = await self._track("get_issue_state", issue)
        return issue_state is not None and Phase.SPEC in issue_state.completed_phases()

    async def _plan_phases(
        self, issue: Issue, worktree: WorktreeInfo | None, result: IssueResult
    ) -> tuple[list[Phase], bool] | None:
        """Phases to run for the issue and whether the quality loop was recommended.

        In auto-detect mode a non-bug issue runs spec first; its result is
        appended to ``result``. Returns None if that spec run failed. On
        ``--resume`` a completed spec is not re-run and labels decide.
        """
        options = self.options
        if not options.auto_detect or options.explicit_phases is not None:
            phases = determine_phases_for_issue(
                issue.labels, explicit_phases=options.explicit_phases, add_testgen=options.testgen
            )
            return phases, False

        if has_bug_labels(issue.labels):
            log.info("bug_fix_detected", issue=issue.number, phases="exec -> qa")
            return [Phase.EXEC, Phase.QA], False

        if options.resume and await self._spec_completed(issue.number):
            log.info("spec_already_completed", issue=issue.number, fallback="labels")
            plan = detect_phases_from_labels(issue.labels)
        else:
            log.info("running_spec_for_workflow", issue=issue.number)
            spec = await self._run_phase(issue.number, Phase.SPEC, worktree)
            result.phase_results.append(spec)
            if not spec.success:
                return None

            plan = parse_recommended_workflow(spec.output)
            if plan is None:
                log.warning("spec_recommendation_unparsed", issue=issue.number, fallback="labels")
                plan = detect_phases_from_labels(issue.labels)
        phases = [p for p in plan.phases if p != Phase.SPEC]
        if options.testgen and Phase.TESTGEN not in phases:
            phases.insert(0, Phase.TESTGEN)
        log.info(
            "workflow_selected",
            issue=issue.number,
            phases=" -> ".join(str(p) for p in phases),
            quality_loop=plan.quality_loop,
        )
        return phases, plan.quality_loop

    async def run_issue(self, issue: Issue, worktree: WorktreeInfo | None = None, is_last: bool = True) -> IssueResult:
        """Run every phase of one issue.

        Args:
            issue: Issue with title and labels
            worktree: Issue worktree, or None to run in the repository root
            is_last: Last issue of the run; in chain mode only this one is
                rebased onto trunk before its PR

        Returns:
            IssueResult. The issue succeeds when every phase succeeded,
            including the QA verdict when QA ran.
        """
        number = issue.number
        started = time.monotonic()
        result = IssueResult(issue=number, success=False)
        log.info("issue_started", issue=number, title=issue.title, worktree=str(worktree.path) if worktree else None)

        if self.context.state is not None:
            existing = await self._track("get_issue_state", number)
            if existing is None:
                await self._track(
                    "initialize_issue",
                    number,
                    issue.title,
                    worktree=str(worktree.path) if worktree else None,
                    branch=worktree.branch if worktree else None,
                    quality_loop=self.config.quality_loop,
                    max_iterations=self.config.max_iterations,
                )
            elif worktree is not None:
                await self._track("update_worktree_info", number, str(worktree.path), worktree.branch, worktree.base_branch)
            await self._track("update_issue_status", number, IssueStatus.IN_PROGRESS)

        planned = await self._plan_phases(issue, worktree, result)
        if planned is None:
            return await self._complete_issue(issue, result, started)
        phases, recommended_loop = planned

        if self.options.resume and self.context.state is not None:
            issue_state = await self._track("get_issue_state", number)
            if issue_state is not None:
                phases, skipped = filter_resumed_phases(phases, issue_state.completed_phases())
                if skipped:
                    log.info("resume_skipping_phases", issue=number, phases=[str(p) for p in skipped])

        use_loop = self.config.quality_loop or recommended_loop
        max_iterations = self.config.max_iterations if use_loop else 1
        iteration = 0
        to_run = phases
        while iteration < max_iterations:
            iteration += 1
            if iteration > 1:
                result.loop_triggered = True
                log.info("quality_loop_iteration", issue=number, iteration=iteration, max_iterations=max_iterations)
                await self._track("update_loop_iteration", number, iteration)

            failed: PhaseResult | None = None
            for phase in to_run:
                phase_result = await self._run_phase(number, phase, worktree, iteration if use_loop else None)
                result.phase_results.append(phase_result)
                if not phase_result.success:
                    failed = phase_result
                    break

            if failed is None:
                result.success = True
                break
            if failed.phase != Phase.QA or iteration >= max_iterations or self.context.shutdown.shutting_down:
                break

            log.info("qa_not_passed_running_loop", issue=number)
            fix = await self._run_phase(number, Phase.LOOP, worktree, iteration)
            result.phase_results.append(fix)
            if not fix.success:
                break
            to_run = [p for p in phases if p in QUALITY_LOOP_PHASES]

        result.qa_iterations = sum(1 for r in result.phase_results if r.phase == Phase.QA)

        if result.success and worktree is not None:
            await self._publish(issue, worktree, result, is_last)

        return await self._complete_issue(issue, result, started)

    async def _publish(self, issue: Issue, worktree: WorktreeInfo, result: IssueResult, is_last: bool) -> None:
        """Checkpoint, rebase and open a PR after a clean QA pass."""
        manager = self.context.worktrees
        qa = next((r for r in reversed(result.phase_results) if r.phase == Phase.QA), None)
        if manager is None or qa is None or qa.verdict is None or not qa.verdict.is_passing:
            return

        if self.options.chain:
            await manager.create_checkpoint_commit(worktree.path, issue.number)

        if not self.options.no_rebase and (not self.options.chain or is_last):
            rebase = await manager.rebase_before_pr(worktree.path, issue.number)
            if not rebase.success:
                log.warning("rebase_before_pr_failed", issue=issue.number, error=rebase.error)

        if self.options.no_pr:
            return
        pr = await manager.create_pr(worktree.path, issue, worktree.branch)
        if not pr.success:
            log.warning("pr_not_created", issue=issue.number, error=pr.error)
            return
        result.pr = pr
        if pr.number and pr.url:
            await self._track("update_pr_info", issue.number, pr.number, pr.url)

    async def _complete_issue(self, issue: Issue, result: IssueResult, started: float) -> IssueResult:
        result.duration = time.monotonic() - started
        if not self.context.shutdown.shutting_down:
            status = IssueStatus.READY_FOR_MERGE if result.success else IssueStatus.BLOCKED
            await self._track("update_issue_status", issue.number, status)

        log.info(
            "issue_completed",
            issue=issue.number,
            success=result.success,
            duration=format_duration(result.duration),
            phases=" -> ".join(str(r.phase) for r in result.phase_results),
            loop=result.loop_triggered,
            pr=result.pr.number if result.pr else None,
        )
        return result

    async def _finish(
        self, report: RunReport, started: float, worktrees: dict[int, WorktreeInfo] | None = None
    ) -> None:
        """Finalize the run log and record metrics."""
        shutdown = self.context.shutdown
        report.interrupted = shutdown.shutting_down

        writer = self.context.log_writer
        if writer is not None:
            shutdown.unregister(LOG_CLEANUP_NAME)
            try:
                report.log_path = await writer.finalize(end_commit=await self._head_commit())
            except OSError as e:
                log.warning("run_log_finalize_failed", error=str(e))

        log.info(
            "run_completed",
            passed=report.passed,
            failed=report.failed,
            skipped=len(report.skipped),
            duration=format_duration(time.monotonic() - started),
        )

        if self.config.dry_run or not report.results or self.context.metrics is None:
            return

        files_changed = 0
        lines_added = 0
        if self.context.worktrees is not None:
            for result in report.results:
                info = (worktrees or {}).get(result.issue)
                if info is not None:
                    stats = await self.context.worktrees.get_worktree_diff_stats(info.path)
                    files_changed += stats.files_changed
                    lines_added += stats.lines_added

        phases = list(dict.fromkeys(r.phase for result in report.results for r in result.phase_results))
        try:
            await self.context.metrics.record_run(
                issues=[r.issue for r in report.results],
                phases=phases,
                outcome=determine_outcome(report.passed, len(report.results)),
                duration=sum(r.duration for r in report.results),
                model=self.context.model,
                flags=self.options.flags(self.config),
                metrics=RunMetrics(
                    files_changed=files_changed,
                    lines_added=lines_added,
                    qa_iterations=sum(
                        sum(1 for p in r.phase_results if p.phase == Phase.LOOP) for r in report.results
                    ),
                ),
            )
        except (RepoConductorError, OSError) as e:
            log.warning("metrics_not_recorded", error=str(e))
