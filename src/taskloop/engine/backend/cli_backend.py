"""Subprocess-based backend runner for CLI agents.

The agent runs in its own session so that timeouts and interrupts can stop the
whole process group, including any tools the agent spawned.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from pathlib import Path

from taskloop.engine.backend.base import BackendRunRequest, BackendRunResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
INTERRUPT_EXIT_CODE = 130
_POLL_INTERVAL_SECONDS = 0.1
_KILL_WAIT_SECONDS = 2.0


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute the configured agent command template once per iteration."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        request.prompt_file.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.write_text(request.prompt, "utf-8")
        request.transcript_path.parent.mkdir(parents=True, exist_ok=True)

        run_args, command_head = _build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=request.prompt_file,
            workdir=request.workdir,
            tools=request.tools,
        )

        env = os.environ.copy()
        env.update(request.env)
        env["TASKLOOP_MODEL"] = request.model
        env["TASKLOOP_ALLOWED_TOOLS"] = ",".join(request.tools)
        env["TASKLOOP_PROMPT_FILE"] = str(request.prompt_file)

        logger.debug("Starting agent: %s (timeout %ss)", command_head, request.timeout_seconds)
        try:
            with request.transcript_path.open("w", encoding="utf-8") as transcript_handle:
                return _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=request.workdir,
                    timeout_seconds=request.timeout_seconds,
                    output_handle=transcript_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    transcript_path=request.transcript_path,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    workdir: Path,
    tools: list[str] | None = None,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            workdir=shlex.quote(str(workdir)),
            tools=shlex.quote(",".join(tools or [])),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.", transient=False)
    return argv, argv[0]


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: float,
    output_handle,
    shutdown_requested,
    graceful_shutdown_seconds: float,
    transcript_path: Path,
) -> BackendRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=output_handle,
        stderr=subprocess.STDOUT,
        text=True,
        start_new_session=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None

    def _result(exit_code: int, *, timed_out: bool = False, interrupted: bool = False):
        return BackendRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            interrupted=interrupted,
            transcript_path=transcript_path,
            duration_seconds=time.monotonic() - start_monotonic,
        )

    while True:
        returncode = process.poll()
        if returncode is not None:
            if shutdown_deadline is not None:
                # The leader honoured SIGINT; tools it spawned may not have.
                terminate_process_group(process, grace_seconds=0.0)
            return _result(returncode, interrupted=shutdown_deadline is not None)

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            logger.warning("Agent exceeded %ss; terminating process group", timeout_seconds)
            terminate_process_group(process, grace_seconds=graceful_shutdown_seconds)
            return _result(TIMEOUT_EXIT_CODE, timed_out=True)

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0.0, graceful_shutdown_seconds)
                _signal_group(process, process.pid, signal.SIGINT)
            if now >= shutdown_deadline:
                terminate_process_group(process, grace_seconds=graceful_shutdown_seconds)
                return _result(INTERRUPT_EXIT_CODE, interrupted=True)

        time.sleep(_POLL_INTERVAL_SECONDS)


def terminate_process_group(process: subprocess.Popen, *, grace_seconds: float) -> None:
    """SIGTERM the child's process group, then SIGKILL every member still running.

    The group is signalled even after the leader has exited, so descendants
    that ignore SIGTERM or outlive the leader are killed as well.
    """

    # start_new_session makes the child the leader of a group with its own pid.
    pgid = process.pid
    _signal_group(process, pgid, signal.SIGTERM)
    deadline = time.monotonic() + max(0.0, grace_seconds)
    while time.monotonic() < deadline:
        process.poll()
        if not _group_alive(pgid):
            break
        time.sleep(_POLL_INTERVAL_SECONDS)
    _signal_group(process, pgid, signal.SIGKILL)
    try:
        process.wait(timeout=_KILL_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.error("Agent process %d did not exit after SIGKILL", process.pid)


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        return True
    return True


def _signal_group(process: subprocess.Popen, pgid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return
    except OSError:
        if process.poll() is not None:
            return
        try:
            process.send_signal(sig)
        except OSError:
            return
