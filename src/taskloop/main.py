"""CLI entrypoint for taskloop."""

import logging
from pathlib import Path

import rich_click as click

from taskloop import __version__
from taskloop.engine.controllers import (
    ArchiveCommand,
    CommandResult,
    LoopCliController,
    ResetCircuitCommand,
    RunCommand,
    StatusCommand,
    SyncCommand,
    ValidateCommand,
)

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()

_project_dir_option = click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root (defaults to TASKLOOP_PROJECT_DIR or the current directory).",
)
_feature_option = click.option(
    "--feature",
    default=None,
    help="Feature workspace name. Defaults to the current git branch with '/' replaced by '-'.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def taskloop(verbose: bool) -> None:
    """Run a code-generation agent in a loop until a feature's tasks are done."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskloop.command("run")
@_project_dir_option
@_feature_option
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration budget for this run (default 20, TASKLOOP_MAX_ITERATIONS).",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=1),
    default=None,
    help="Per-iteration agent timeout (default 900, TASKLOOP_ITERATION_TIMEOUT_SECONDS).",
)
@click.option("--model", default=None, help="Default model passed as {model}.")
@click.option(
    "--agent-command",
    default=None,
    help="Agent command template. Supports {prompt}, {prompt_file}, {model} and {workdir}.",
)
@click.option(
    "--quality-command",
    default=None,
    help="Shell command that must pass before a task counts as completed.",
)
@click.option(
    "--on-rate-limit",
    type=click.Choice(["wait", "abort"]),
    default=None,
    help="Wait for the rate-limit window or stop with exit code 2.",
)
@click.option(
    "--archive/--no-archive",
    default=None,
    help="Archive the feature workspace when every task is complete.",
)
@click.option(
    "--skip-preflight",
    is_flag=True,
    help="Run even if preflight reports blocking errors. Use only after reviewing them.",
)
def run(  # noqa: PLR0913
    project_dir: Path | None,
    feature: str | None,
    max_iterations: int | None,
    timeout_seconds: float | None,
    model: str | None,
    agent_command: str | None,
    quality_command: str | None,
    on_rate_limit: str | None,
    archive: bool | None,
    skip_preflight: bool,
) -> None:
    """Iterate the agent until completion, the budget, or a circuit-breaker trip."""

    _finish(
        _guarded(
            lambda: LOOP_CONTROLLER.run(
                RunCommand(
                    project_dir=project_dir,
                    feature=feature,
                    max_iterations=max_iterations,
                    timeout_seconds=timeout_seconds,
                    model=model,
                    agent_command=agent_command,
                    quality_command=quality_command,
                    on_rate_limit=on_rate_limit,
                    archive=archive,
                    skip_preflight=skip_preflight,
                ),
            ),
        ),
    )


@taskloop.command("validate")
@_project_dir_option
@_feature_option
def validate(project_dir: Path | None, feature: str | None) -> None:
    """Run preflight checks without invoking the agent."""

    _finish(
        _guarded(
            lambda: LOOP_CONTROLLER.validate(
                ValidateCommand(project_dir=project_dir, feature=feature),
            ),
        ),
    )


@taskloop.command("status")
@_project_dir_option
@_feature_option
@click.option(
    "--progress-records",
    type=click.IntRange(min=0, max=50),
    default=3,
    show_default=True,
    help="How many recent progress records to display.",
)
def status(project_dir: Path | None, feature: str | None, progress_records: int) -> None:
    """Show task completion, breaker and rate-limiter state."""

    _finish(
        _guarded(
            lambda: LOOP_CONTROLLER.status(
                StatusCommand(
                    project_dir=project_dir,
                    feature=feature,
                    progress_records=progress_records,
                ),
            ),
        ),
    )


@taskloop.command("archive")
@_project_dir_option
@_feature_option
@click.option("--force", is_flag=True, help="Archive even if tasks remain incomplete.")
def archive(project_dir: Path | None, feature: str | None, force: bool) -> None:
    """Copy, verify and then remove the feature workspace."""

    _finish(
        _guarded(
            lambda: LOOP_CONTROLLER.archive(
                ArchiveCommand(project_dir=project_dir, feature=feature, force=force),
            ),
        ),
    )


@taskloop.command("sync")
@_project_dir_option
@_feature_option
@click.option(
    "--drop-completed-orphans",
    is_flag=True,
    help="Confirm discarding completed tasks that spec.md no longer defines.",
)
def sync(project_dir: Path | None, feature: str | None, drop_completed_orphans: bool) -> None:
    """Regenerate tasks.json from spec.md, keeping completion where criteria are unchanged."""

    _finish(
        _guarded(
            lambda: LOOP_CONTROLLER.sync(
                SyncCommand(
                    project_dir=project_dir,
                    feature=feature,
                    drop_completed_orphans=drop_completed_orphans,
                ),
            ),
        ),
    )


@taskloop.command("reset-circuit")
@_project_dir_option
@_feature_option
def reset_circuit(project_dir: Path | None, feature: str | None) -> None:
    """Clear a tripped circuit breaker after fixing its cause."""

    _finish(
        _guarded(
            lambda: LOOP_CONTROLLER.reset_circuit(
                ResetCircuitCommand(project_dir=project_dir, feature=feature),
            ),
        ),
    )


def _guarded(call) -> CommandResult:
    try:
        return call()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        click.get_current_context().exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskloop()
