"""Iteration controller: one agent invocation per iteration until a terminal state.

Per iteration the controller checks the circuit breaker, takes one rate-limiter
slot, snapshots task completion, runs the agent with a bounded timeout, applies
what the agent reported, verifies task transitions with the quality gate and the
``post_iteration`` hook, feeds the outcome to the circuit breaker and decides
whether to continue.

Everything the next iteration knows comes from the files in the feature
workspace. The only in-memory carry-over is the feedback text for a failed
iteration, and it is also written to the progress log.
"""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from taskloop.engine.archiver import archive_feature
from taskloop.engine.backend import AgentBackend, BackendRunError, BackendRunRequest
from taskloop.engine.circuit_breaker import CircuitBreaker
from taskloop.engine.errors import (
    ArchiveError,
    CircuitBreakerTripped,
    RateLimitExceeded,
    SchemaError,
)
from taskloop.engine.exit_detector import (
    DEFAULT_COMPLETION_MARKER,
    Failure,
    build_feedback,
    completed_task_ids,
    detect_api_limit,
    detect_completion,
    extract_failure,
    extract_learnings,
    fingerprint,
    narrated_text,
    verification_failure,
)
from taskloop.engine.hooks import HookContext, HookPoint, HookResult, HookRunner
from taskloop.engine.lease import RunLease
from taskloop.engine.models import (
    FailureCategory,
    IterationStatus,
    LoopResult,
    LoopStatus,
    ProgressRecord,
    Task,
    TaskSet,
)
from taskloop.engine.preflight import Finding, PreflightContext, run_preflight
from taskloop.engine.prompt import (
    DEFAULT_MEMORY_TOKEN_BUDGET,
    DEFAULT_PROGRESS_TAIL_RECORDS,
    PromptInputs,
    build_prompt,
    load_memories,
)
from taskloop.engine.quality_gate import QualityGate
from taskloop.engine.rate_limiter import RateLimiter
from taskloop.engine.store import ProgressLog, load_task_set, read_text, save_task_set
from taskloop.engine.workspace import FeatureWorkspace, GitReader

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_ITERATION_TIMEOUT_SECONDS = 15 * 60
DEFAULT_MODEL = "sonnet"
DEFAULT_COMMAND_TEMPLATE = "claude -p --model {model} --dangerously-skip-permissions {prompt}"

PROMPT_FILE = "prompt.md"
TRANSCRIPT_FILE = "transcript.log"
QUALITY_FILE = "quality.log"

_ERROR_HOOK_STATUSES = frozenset(
    {
        LoopStatus.MAX_ITERATIONS_REACHED,
        LoopStatus.CIRCUIT_BREAKER_TRIPPED,
        LoopStatus.API_LIMIT_REACHED,
        LoopStatus.RATE_LIMIT_EXCEEDED,
    },
)

@dataclass(slots=True)
class ControllerOptions:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    iteration_timeout_seconds: float = DEFAULT_ITERATION_TIMEOUT_SECONDS
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    default_model: str = DEFAULT_MODEL
    default_tools: tuple[str, ...] = ()
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    archive_on_complete: bool = True
    pause_seconds: float = 0.0
    graceful_shutdown_seconds: float = 5.0
    progress_tail_records: int = DEFAULT_PROGRESS_TAIL_RECORDS
    memory_token_budget: int = DEFAULT_MEMORY_TOKEN_BUDGET
    protected_branches: tuple[str, ...] = ("main", "master", "develop")
    skip_preflight: bool = False


@dataclass(slots=True)
class IterationOutcome:
    """What one iteration did, before the continue/terminate decision."""

    iteration: int
    status: IterationStatus
    before: tuple[bool, ...]
    after: tuple[bool, ...]
    transitions: list[str] = field(default_factory=list)
    failure: Failure | None = None
    timed_out: bool = False
    interrupted: bool = False
    api_limit: str | None = None
    complete: bool = False

    @property
    def fingerprint(self) -> str:
        if self.timed_out or self.failure is None:
            return ""
        return self.failure.fingerprint

@dataclass(slots=True)
class _Rejection:
    source: str
    output: str
    exit_code: int

class IterationController:
    """Runs the iteration state machine for one feature workspace."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        workspace: FeatureWorkspace,
        project_dir: Path,
        backend: AgentBackend,
        breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        quality_gate: QualityGate,
        options: ControllerOptions | None = None,
        git: GitReader | None = None,
        branch: str | None = None,
        hooks: HookRunner | None = None,
    ) -> None:
        self.workspace = workspace
        self.project_dir = project_dir
        self.backend = backend
        self.breaker = breaker
        self.rate_limiter = rate_limiter
        self.quality_gate = quality_gate
        self.options = options or ControllerOptions()
        self.git = git or GitReader(project_dir)
        self.branch = branch
        self.hooks = hooks or HookRunner(
            feature_dir=workspace.feature_dir,
            state_root=workspace.root_dir,
            workdir=project_dir,
        )
        self.progress = ProgressLog(workspace.progress_path)
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._feedback = ""

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "request") -> None:
        if not self._stop_requested:
            logger.warning("Stop requested (%s); finishing current iteration", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self) -> LoopResult:
        """Hold the run lease and iterate until a terminal status."""

        lease = RunLease(self.workspace.lock_path, feature=self.workspace.feature)
        with lease, self._signal_handlers():
            report = run_preflight(
                PreflightContext(
                    branch=self.branch,
                    workspace=self.workspace,
                    protected_branches=self.options.protected_branches,
                ),
            )
            for finding in report.warnings:
                logger.warning("%s", finding.render())
            bypassed: list[str] = []
            if not report.passed:
                if not self.options.skip_preflight:
                    return LoopResult(
                        status=LoopStatus.PREFLIGHT_FAILED,
                        iterations=0,
                        message=f"Preflight failed with {len(report.errors)} error(s).",
                        details=report.render_lines(),
                    )
                bypassed = _bypass_lines(report.errors)
                for line in bypassed:
                    logger.warning("%s", line)

            self._run_hook(HookPoint.PRE_RUN)
            run_status = "error"
            try:
                result = self._loop()
                run_status = result.status.value
                if result.status in _ERROR_HOOK_STATUSES:
                    self._run_hook(HookPoint.ON_ERROR, status=run_status)
            finally:
                self._run_hook(HookPoint.POST_RUN, status=run_status)
            result.details = [*bypassed, *result.details]
            return result

    def _loop(self) -> LoopResult:  # noqa: PLR0911
        task_set = load_task_set(self.workspace.tasks_path)
        if task_set.all_completed():
            return self._finish_complete(iterations=0)

        self.progress.ensure_exists()
        start = self.progress.last_iteration() + 1
        for offset in range(self.options.max_iterations):
            if self._stop_requested:
                return self._interrupted(offset)
            iteration = start + offset

            try:
                self.breaker.check()
            except CircuitBreakerTripped as error:
                return LoopResult(
                    status=LoopStatus.CIRCUIT_BREAKER_TRIPPED,
                    iterations=offset,
                    message=error.message,
                    details=error.render(),
                )

            try:
                acquired = self.rate_limiter.acquire(stop_requested=lambda: self._stop_requested)
            except RateLimitExceeded as error:
                return LoopResult(
                    status=LoopStatus.RATE_LIMIT_EXCEEDED,
                    iterations=offset,
                    message=error.message,
                    details=error.render(),
                )
            if not acquired:
                return self._interrupted(offset)

            outcome = self._run_iteration(iteration)
            done = offset + 1
            if outcome.interrupted:
                return self._interrupted(done)
            if outcome.complete:
                return self._finish_complete(iterations=done)

            decision = self.breaker.record_iteration(
                before=outcome.before,
                after=outcome.after,
                fingerprint=outcome.fingerprint,
            )
            if decision.tripped:
                return LoopResult(
                    status=LoopStatus.CIRCUIT_BREAKER_TRIPPED,
                    iterations=done,
                    message=f"Circuit breaker tripped: {decision.reason}",
                    details=self.breaker.status_lines(),
                )
            if outcome.api_limit is not None:
                return LoopResult(
                    status=LoopStatus.API_LIMIT_REACHED,
                    iterations=done,
                    message=f"Agent reported a usage limit (matched {outcome.api_limit!r}).",
                    details=["Wait for the agent's usage window to reset, then run again."],
                )
            if self._stop_requested:
                return self._interrupted(done)
            if self.options.pause_seconds > 0 and done < self.options.max_iterations:
                self._sleep_with_stop(self.options.pause_seconds)

        return LoopResult(
            status=LoopStatus.MAX_ITERATIONS_REACHED,
            iterations=self.options.max_iterations,
            message=f"Stopped after {self.options.max_iterations} iteration(s) without completing.",
        )

    def _run_iteration(self, iteration: int) -> IterationOutcome:  # noqa: C901, PLR0912
        logger.info("Iteration %d starting", iteration)
        task_set = load_task_set(self.workspace.tasks_path)
        before = task_set.completion_vector()
        before_map = task_set.completion_map()
        head = self.git.head_commit()
        current = task_set.next_task()

        iteration_dir = self.workspace.iteration_dir(iteration)
        transcript_path = iteration_dir / TRANSCRIPT_FILE
        prompt = build_prompt(
            PromptInputs(
                iteration=iteration,
                max_iterations=self.options.max_iterations,
                task_set=task_set,
                spec_text=read_text(self.workspace.spec_path),
                progress_tail=self.progress.tail(self.options.progress_tail_records),
                tasks_path=str(self.workspace.tasks_path),
                progress_path=str(self.workspace.progress_path),
                feedback=self._feedback,
                completion_marker=self.options.completion_marker,
                memories=load_memories(
                    self.workspace.project_memory_path,
                    self.workspace.memory_path,
                    token_budget=self.options.memory_token_budget,
                ),
            ),
        )
        model = (current.model if current is not None else None) or self.options.default_model
        tools = (current.tools if current is not None else None) or list(self.options.default_tools)
        request = BackendRunRequest(
            prompt=prompt,
            prompt_file=iteration_dir / PROMPT_FILE,
            transcript_path=transcript_path,
            workdir=self.project_dir,
            model=model,
            command_template=self.options.command_template,
            timeout_seconds=self.options.iteration_timeout_seconds,
            tools=tools,
            env={
                "TASKLOOP_FEATURE": self.workspace.feature,
                "TASKLOOP_FEATURE_DIR": str(self.workspace.feature_dir),
                "TASKLOOP_ITERATION": str(iteration),
                "TASKLOOP_TASK_ID": _task_id(current) or "",
                "TASKLOOP_TASKS_FILE": str(self.workspace.tasks_path),
                "TASKLOOP_PROGRESS_FILE": str(self.workspace.progress_path),
            },
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.options.graceful_shutdown_seconds,
        )
        self._run_hook(HookPoint.PRE_ITERATION, iteration=iteration, task_id=_task_id(current))
        try:
            execution = self.backend.run(request)
        except BackendRunError as error:
            if not error.transient:
                raise
            logger.warning("Agent failed to start: %s", error)
            failure = _agent_failure(str(error))
            self._record(
                iteration,
                current_id=_task_id(current),
                status=IterationStatus.FAILED,
                head=head,
                learnings=failure.summary,
            )
            self._feedback = build_feedback(failure)
            return IterationOutcome(
                iteration=iteration,
                status=IterationStatus.FAILED,
                before=before,
                after=before,
                failure=failure,
            )

        narrated = narrated_text(execution.read_transcript())
        if execution.interrupted:
            logger.warning("Iteration %d interrupted", iteration)
            return IterationOutcome(
                iteration=iteration,
                status=IterationStatus.FAILED,
                before=before,
                after=before,
                interrupted=True,
            )

        try:
            task_set = load_task_set(self.workspace.tasks_path)
        except SchemaError as error:
            logger.error("Agent left tasks.json invalid (%s); restoring snapshot", error.message)
            save_task_set(self.workspace.tasks_path, task_set)
            failure = _agent_failure(f"tasks.json invalid after iteration: {error.message}")
        else:
            failure = None

        reported = [tid for tid in completed_task_ids(narrated) if task_set.get(tid) is not None]
        marked = False
        for task_id in reported:
            task = task_set.get(task_id)
            if task is not None and not task.completed:
                task.mark_completed(f"completed in iteration {iteration}")
                marked = True
        if marked:
            save_task_set(self.workspace.tasks_path, task_set)

        transitions = [
            task.id
            for task in task_set.tasks
            if task.completed and not before_map.get(task.id, False)
        ]
        learnings = extract_learnings(narrated)
        if execution.timed_out:
            logger.warning(
                "Iteration %d timed out after %ss",
                iteration,
                self.options.iteration_timeout_seconds,
            )

        rejection = self._verify(
            iteration,
            iteration_dir,
            transitions=transitions,
            current_id=transitions[0] if transitions else _task_id(current),
            transcript_path=transcript_path,
        )
        if rejection is not None:
            return self._verification_failed(
                iteration,
                task_set,
                transitions=transitions,
                before=before,
                rejection=rejection,
                current_id=transitions[0] if transitions else _task_id(current),
                head=head,
            )
        self._confirm_transitions(task_set, transitions, iteration=iteration)

        if execution.timed_out:
            timeout_failure = Failure(
                category=FailureCategory.TIMEOUT,
                summary=f"Agent timed out after {int(self.options.iteration_timeout_seconds)}s",
                detail="The previous attempt ran out of time. Take a smaller step.",
                fingerprint="",
            )
            self._record(
                iteration,
                current_id=transitions[0] if transitions else _task_id(current),
                status=IterationStatus.TIMEOUT,
                head=head,
                learnings=learnings or timeout_failure.summary,
            )
            self._feedback = build_feedback(timeout_failure)
            return IterationOutcome(
                iteration=iteration,
                status=IterationStatus.TIMEOUT,
                before=before,
                after=before,
                transitions=transitions,
                failure=timeout_failure,
                timed_out=True,
                complete=task_set.all_completed(),
            )

        if failure is None:
            failure = extract_failure(narrated, exit_code=execution.exit_code)
        after = task_set.completion_vector()
        progressed = after != before
        if transitions:
            status = IterationStatus.COMPLETED
        elif failure is not None:
            status = IterationStatus.FAILED
        elif progressed:
            status = IterationStatus.IN_PROGRESS
        else:
            status = IterationStatus.NO_PROGRESS

        self._record(
            iteration,
            current_id=transitions[0] if transitions else _task_id(current),
            status=status,
            head=head,
            learnings=learnings or (failure.summary if failure is not None else ""),
        )

        self._feedback = (
            build_feedback(failure, repeat_count=self._repeat_count(failure))
            if failure is not None
            else ""
        )

        signal_ = detect_completion(narrated, task_set, marker=self.options.completion_marker)
        api_limit = None if progressed else detect_api_limit(narrated)
        logger.info(
            "Iteration %d finished: %s (%d/%d tasks completed)",
            iteration,
            status.value,
            task_set.completed_count(),
            len(task_set.tasks),
        )
        return IterationOutcome(
            iteration=iteration,
            status=status,
            before=before,
            after=after,
            transitions=transitions,
            failure=failure,
            api_limit=api_limit,
            complete=signal_.complete,
        )

    def _verify(
        self,
        iteration: int,
        iteration_dir: Path,
        *,
        transitions: list[str],
        current_id: str | None,
        transcript_path: Path,
    ) -> _Rejection | None:
        """Quality gate for new completions, then the ``post_iteration`` hook."""

        if transitions and self.quality_gate.configured:
            gate = self.quality_gate.run(output_path=iteration_dir / QUALITY_FILE)
            if not gate.passed:
                return _Rejection(
                    source="Quality gate",
                    output=gate.output,
                    exit_code=gate.exit_code,
                )
        hook = self._run_hook(
            HookPoint.POST_ITERATION,
            iteration=iteration,
            task_id=current_id,
            transcript_path=transcript_path,
        )
        if hook is not None and hook.verification_failed:
            return _Rejection(
                source="post_iteration hook",
                output=hook.output,
                exit_code=hook.exit_code,
            )
        return None

    def _confirm_transitions(
        self,
        task_set: TaskSet,
        transitions: list[str],
        *,
        iteration: int,
    ) -> None:
        """Record the criteria digest for completions the agent wrote into tasks.json."""

        stamped = False
        for task_id in transitions:
            task = task_set.get(task_id)
            if task is not None and task.criteria_digest is None:
                task.mark_completed(task.notes or f"completed in iteration {iteration}")
                stamped = True
        if stamped:
            save_task_set(self.workspace.tasks_path, task_set)

    def _verification_failed(  # noqa: PLR0913
        self,
        iteration: int,
        task_set: TaskSet,
        *,
        transitions: list[str],
        before: tuple[bool, ...],
        rejection: _Rejection,
        current_id: str | None,
        head: str | None,
    ) -> IterationOutcome:
        for task_id in transitions:
            task = task_set.get(task_id)
            if task is not None:
                task.mark_incomplete()
        save_task_set(self.workspace.tasks_path, task_set)
        if self.progress.last_iteration() == iteration:
            self.progress.rollback_last()

        failure = verification_failure(
            rejection.output,
            exit_code=rejection.exit_code,
            source=rejection.source,
        )
        logger.warning(
            "Iteration %d: %s rejected the iteration; reverted %s",
            iteration,
            rejection.source,
            ", ".join(transitions) or "no task transitions",
        )
        self._record(
            iteration,
            current_id=current_id,
            status=IterationStatus.VERIFICATION_FAILED,
            head=head,
            learnings=f"{failure.summary}\n{failure.detail}",
        )
        self._feedback = build_feedback(failure, repeat_count=self._repeat_count(failure))
        return IterationOutcome(
            iteration=iteration,
            status=IterationStatus.VERIFICATION_FAILED,
            before=before,
            after=task_set.completion_vector(),
            failure=failure,
        )

    def _run_hook(self, point: HookPoint, **context) -> HookResult | None:
        return self.hooks.run(
            point,
            HookContext(feature_dir=self.workspace.feature_dir, **context),
        )

    def _record(
        self,
        iteration: int,
        *,
        current_id: str | None,
        status: IterationStatus,
        head: str | None,
        learnings: str,
    ) -> None:
        """Append this iteration's record unless the agent already wrote one."""

        agent_wrote_record = self.progress.last_iteration() == iteration
        if agent_wrote_record and status is not IterationStatus.VERIFICATION_FAILED:
            logger.debug("Agent wrote its own progress record for iteration %d", iteration)
            return
        new_head = self.git.head_commit()
        self.progress.append(
            ProgressRecord(
                iteration=iteration,
                timestamp=datetime.now(UTC),
                task_id=current_id,
                status=status,
                files=self.git.changed_files(head),
                commit=new_head if new_head and new_head != head else None,
                learnings=learnings,
            ),
        )
        logger.debug("Progress recorded for iteration %d (%s)", iteration, status.value)

    def _repeat_count(self, failure: Failure) -> int:
        state = self.breaker.state
        if failure.fingerprint and failure.fingerprint == state.last_error_fingerprint:
            return state.same_error_count + 1
        return 1

    def _finish_complete(self, *, iterations: int) -> LoopResult:
        message = "All tasks complete."
        archive_path: str | None = None
        details: list[str] = []
        self._run_hook(HookPoint.ON_COMPLETION, status=LoopStatus.COMPLETE.value)
        if self.options.archive_on_complete:
            try:
                archive_path = str(
                    archive_feature(self.workspace.feature_dir, self.workspace.archive_root),
                )
                message += f" Archived to {archive_path}."
            except ArchiveError as error:
                logger.error("Archiving failed: %s", error.message)
                details = error.render()
                message += " Archiving failed; the live workspace was kept."
        return LoopResult(
            status=LoopStatus.COMPLETE,
            iterations=iterations,
            message=message,
            archive_path=archive_path,
            details=details,
        )

    def _interrupted(self, iterations: int) -> LoopResult:
        return LoopResult(
            status=LoopStatus.USER_INTERRUPT,
            iterations=iterations,
            message=f"Interrupted by {self._stop_signal_name or 'user'}; state is saved.",
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

def _task_id(task: Task | None) -> str | None:
    return task.id if task is not None else None

def _agent_failure(summary: str) -> Failure:
    return Failure(
        category=FailureCategory.AGENT_ERROR,
        summary=summary,
        detail=summary,
        fingerprint=fingerprint(FailureCategory.AGENT_ERROR, summary),
    )

def _bypass_lines(errors: list[Finding]) -> list[str]:
    return [
        f"!! PREFLIGHT BYPASSED: {len(errors)} blocking error(s) ignored (--skip-preflight).",
        *(f"!! {finding.render()}" for finding in errors),
    ]
