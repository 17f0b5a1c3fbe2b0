"""Controllers for loop CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.config import Settings
from taskloop.engine.archiver import archive_feature, list_archives
from taskloop.engine.backend import BackendRunError, CliAgentBackend
from taskloop.engine.circuit_breaker import CircuitBreaker
from taskloop.engine.controller import ControllerOptions, IterationController
from taskloop.engine.errors import ArchiveError, PreflightError, SchemaError, TaskloopError
from taskloop.engine.hooks import HookRunner
from taskloop.engine.lease import RunLease
from taskloop.engine.preflight import PreflightContext, run_preflight
from taskloop.engine.quality_gate import QualityGate
from taskloop.engine.rate_limiter import OnLimit, RateLimiter
from taskloop.engine.store import ProgressLog, load_task_set
from taskloop.engine.sync import sync_workspace
from taskloop.engine.workspace import FeatureWorkspace, GitReader, feature_name_from_branch

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResult:
    """Output lines plus the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class RunCommand:
    """CLI input for the iteration loop."""

    project_dir: Path | None
    feature: str | None
    max_iterations: int | None = None
    timeout_seconds: float | None = None
    model: str | None = None
    agent_command: str | None = None
    quality_command: str | None = None
    on_rate_limit: str | None = None
    archive: bool | None = None
    skip_preflight: bool = False


@dataclass(slots=True)
class ValidateCommand:
    """CLI input for preflight-only validation."""

    project_dir: Path | None
    feature: str | None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for feature status."""

    project_dir: Path | None
    feature: str | None
    progress_records: int = 3


@dataclass(slots=True)
class ArchiveCommand:
    """CLI input for manual archiving."""

    project_dir: Path | None
    feature: str | None
    force: bool = False


@dataclass(slots=True)
class SyncCommand:
    """CLI input for TaskSet regeneration."""

    project_dir: Path | None
    feature: str | None
    drop_completed_orphans: bool = False


@dataclass(slots=True)
class ResetCircuitCommand:
    """CLI input for clearing a tripped circuit breaker."""

    project_dir: Path | None
    feature: str | None


@dataclass(slots=True)
class _ResolvedContext:
    settings: Settings
    branch: str | None
    workspace: FeatureWorkspace | None


class LoopCliController:
    """Coordinates run, validation and maintenance CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        context = _resolve(command.project_dir, command.feature)
        settings = context.settings
        _apply_run_overrides(settings, command)
        settings.validate()
        if context.workspace is None:
            return _preflight_only(context)

        workspace = context.workspace
        loop = settings.loop
        project_dir = settings.paths.project_dir
        try:
            controller = IterationController(
                workspace=workspace,
                project_dir=project_dir,
                backend=CliAgentBackend(),
                breaker=_breaker(workspace, settings),
                rate_limiter=_rate_limiter(workspace, settings),
                quality_gate=QualityGate(
                    settings.quality.command,
                    workdir=project_dir,
                    timeout_seconds=settings.quality.timeout_seconds,
                ),
                options=ControllerOptions(
                    max_iterations=loop.max_iterations,
                    iteration_timeout_seconds=loop.iteration_timeout_seconds,
                    command_template=settings.agent.command_template,
                    default_model=settings.agent.default_model,
                    default_tools=settings.agent.default_tools,
                    completion_marker=loop.completion_marker,
                    archive_on_complete=loop.archive_on_complete,
                    pause_seconds=loop.pause_seconds,
                    graceful_shutdown_seconds=loop.graceful_shutdown_seconds,
                    progress_tail_records=loop.progress_tail_records,
                    memory_token_budget=loop.memory_token_budget,
                    protected_branches=loop.protected_branches,
                    skip_preflight=command.skip_preflight,
                ),
                git=GitReader(project_dir),
                branch=context.branch,
                hooks=HookRunner(
                    feature_dir=workspace.feature_dir,
                    state_root=workspace.root_dir,
                    workdir=project_dir,
                    timeout_seconds=loop.hook_timeout_seconds,
                ),
            )
            result = controller.run()
        except TaskloopError as error:
            return CommandResult(lines=error.render(), exit_code=1)
        except BackendRunError as error:
            return CommandResult(lines=[f"[backend] {error}"], exit_code=1)

        lines = [
            f"Loop finished: status={result.status.value} iterations={result.iterations}",
            result.message,
            *result.details,
        ]
        return CommandResult(lines=lines, exit_code=result.exit_code)

    def validate(self, command: ValidateCommand) -> CommandResult:
        """Run preflight checks without invoking the agent."""

        return _preflight_only(_resolve(command.project_dir, command.feature))

    def status(self, command: StatusCommand) -> CommandResult:
        context = _resolve(command.project_dir, command.feature)
        try:
            workspace = _require_workspace(context)
        except TaskloopError as error:
            return CommandResult(lines=error.render(), exit_code=1)

        lines = [
            f"Feature: {workspace.feature}",
            f"Branch: {context.branch or '-'}",
            f"Workspace: {workspace.feature_dir}",
        ]
        if not workspace.feature_dir.is_dir():
            lines.append("Workspace not found (not started, or already archived).")
        elif workspace.tasks_path.is_file():
            try:
                task_set = load_task_set(workspace.tasks_path)
            except TaskloopError as error:
                lines.extend(error.render())
            else:
                lines.append(f"Tasks: {task_set.completed_count()}/{len(task_set.tasks)} completed")
                for task in task_set.tasks:
                    mark = "x" if task.completed else " "
                    lines.append(f"  [{mark}] {task.id}: {task.title}")
                upcoming = task_set.next_task()
                lines.append(f"Next task: {upcoming.id if upcoming is not None else '-'}")
        else:
            lines.append("Tasks: tasks.json missing (run 'taskloop sync').")

        exit_code = 0
        try:
            lines.extend(_breaker(workspace, context.settings).status_lines())
            lines.append(_rate_limiter(workspace, context.settings).status_line())
        except TaskloopError as error:
            lines.extend(error.render())
            exit_code = 1

        lease = RunLease(workspace.lock_path, feature=workspace.feature)
        holder = lease.holder_description()
        lines.append(f"Lease: {'held' + holder if holder else 'free'}")

        progress = ProgressLog(workspace.progress_path)
        tail = progress.tail(command.progress_records)
        if tail:
            lines.extend(["", "Recent progress:", tail])
        archives = [
            entry
            for entry in list_archives(workspace.archive_root)
            if entry.feature == workspace.feature
        ]
        if archives:
            lines.append(f"Archives: {', '.join(entry.name for entry in archives)}")
        return CommandResult(lines=lines, exit_code=exit_code)

    def archive(self, command: ArchiveCommand) -> CommandResult:
        context = _resolve(command.project_dir, command.feature)
        try:
            workspace = _require_workspace(context)
            if not command.force:
                task_set = load_task_set(workspace.tasks_path)
                if not task_set.all_completed():
                    raise ArchiveError(
                        f"{task_set.completed_count()}/{len(task_set.tasks)} tasks completed; "
                        "refusing to archive an unfinished feature.",
                        remediation="Finish the remaining tasks, or pass --force.",
                    )
            with RunLease(workspace.lock_path, feature=workspace.feature):
                target = archive_feature(workspace.feature_dir, workspace.archive_root)
        except TaskloopError as error:
            return CommandResult(lines=error.render(), exit_code=1)
        return CommandResult(lines=[f"Archived {workspace.feature} to {target}"])

    def sync(self, command: SyncCommand) -> CommandResult:
        context = _resolve(command.project_dir, command.feature)
        try:
            workspace = _require_workspace(context)
            if not workspace.spec_path.is_file():
                raise PreflightError(
                    f"spec.md not found in {workspace.feature_dir}",
                    remediation="Write the specification first.",
                    check="required_artifacts",
                )
            with RunLease(workspace.lock_path, feature=workspace.feature):
                report = sync_workspace(
                    workspace,
                    drop_completed_orphans=command.drop_completed_orphans,
                )
        except TaskloopError as error:
            return CommandResult(lines=error.render(), exit_code=1)
        return CommandResult(lines=report.render_lines())

    def reset_circuit(self, command: ResetCircuitCommand) -> CommandResult:
        context = _resolve(command.project_dir, command.feature)
        try:
            workspace = _require_workspace(context)
            with RunLease(workspace.lock_path, feature=workspace.feature):
                try:
                    breaker = _breaker(workspace, context.settings)
                except SchemaError as error:
                    logger.warning("Discarding unreadable breaker state: %s", error.message)
                    workspace.breaker_path.unlink(missing_ok=True)
                    breaker = _breaker(workspace, context.settings)
                breaker.reset()
        except TaskloopError as error:
            return CommandResult(lines=error.render(), exit_code=1)
        return CommandResult(lines=["Circuit breaker reset.", *breaker.status_lines()])


def _resolve(project_dir: Path | None, feature: str | None) -> _ResolvedContext:
    settings = Settings.from_env(project_dir=project_dir)
    branch = GitReader(settings.paths.project_dir).current_branch()
    name = feature or (feature_name_from_branch(branch) if branch else None)
    workspace = FeatureWorkspace(root_dir=settings.paths.state_root, feature=name) if name else None
    logger.debug("Resolved feature %s (branch %s)", name, branch)
    return _ResolvedContext(settings=settings, branch=branch, workspace=workspace)


def _require_workspace(context: _ResolvedContext) -> FeatureWorkspace:
    if context.workspace is None:
        raise PreflightError(
            "Cannot determine the feature workspace: not on a git branch.",
            remediation="Check out a feature branch or pass --feature explicitly.",
            check="execution_context",
        )
    return context.workspace


def _preflight_only(context: _ResolvedContext) -> CommandResult:
    report = run_preflight(
        PreflightContext(
            branch=context.branch,
            workspace=context.workspace,
            protected_branches=context.settings.loop.protected_branches,
        ),
    )
    return CommandResult(lines=report.render_lines(), exit_code=0 if report.passed else 1)


def _apply_run_overrides(settings: Settings, command: RunCommand) -> None:
    if command.max_iterations is not None:
        settings.loop.max_iterations = command.max_iterations
    if command.timeout_seconds is not None:
        settings.loop.iteration_timeout_seconds = command.timeout_seconds
    if command.on_rate_limit is not None:
        settings.loop.on_rate_limit = command.on_rate_limit
    if command.archive is not None:
        settings.loop.archive_on_complete = command.archive
    if command.model is not None:
        settings.agent.default_model = command.model
    if command.agent_command is not None:
        settings.agent.command_template = command.agent_command
    if command.quality_command is not None:
        settings.quality.command = command.quality_command


def _breaker(workspace: FeatureWorkspace, settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        workspace.breaker_path,
        no_progress_threshold=settings.loop.no_progress_threshold,
        same_error_threshold=settings.loop.same_error_threshold,
    )


def _rate_limiter(workspace: FeatureWorkspace, settings: Settings) -> RateLimiter:
    return RateLimiter(
        workspace.rate_limiter_path,
        limit=settings.loop.rate_limit,
        window_seconds=settings.loop.rate_limit_window_seconds,
        on_limit=OnLimit(settings.loop.on_rate_limit),
    )
