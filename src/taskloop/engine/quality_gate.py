"""Post-iteration verification command.

The gate only reads the project: it runs the operator's check command (tests,
linters, type checks) and reports pass or fail. An unconfigured gate accepts every
task transition.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from taskloop.engine.backend.cli_backend import TIMEOUT_EXIT_CODE, terminate_process_group

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0


@dataclass(slots=True)
class BoundedRun:
    exit_code: int
    output: str
    timed_out: bool
    duration_seconds: float


def run_bounded(
    args: str | list[str],
    *,
    cwd: Path,
    timeout_seconds: float,
    env: dict[str, str] | None = None,
) -> BoundedRun:
    """Run a command in its own session, killing the whole group on timeout.

    A string is run through the shell; a list is executed directly.
    """

    started = time.monotonic()
    process = subprocess.Popen(  # noqa: S603
        args,
        shell=isinstance(args, str),
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    timed_out = False
    try:
        output, _ = process.communicate(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        terminate_process_group(process, grace_seconds=2.0)
        output, _ = process.communicate()
        output = (output or "") + f"\ntimed out after {timeout_seconds}s\n"
    return BoundedRun(
        exit_code=TIMEOUT_EXIT_CODE if timed_out else process.returncode,
        output=output or "",
        timed_out=timed_out,
        duration_seconds=time.monotonic() - started,
    )


@dataclass(slots=True)
class QualityGateResult:
    configured: bool
    passed: bool
    exit_code: int
    output: str
    timed_out: bool = False
    duration_seconds: float = 0.0


class QualityGate:
    def __init__(
        self,
        command: str | None,
        *,
        workdir: Path,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.command = (command or "").strip()
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.command)

    def run(self, *, output_path: Path | None = None) -> QualityGateResult:
        if not self.configured:
            logger.debug("No quality gate configured; accepting task transitions unverified")
            return QualityGateResult(configured=False, passed=True, exit_code=0, output="")

        logger.info("Running quality gate: %s", self.command)
        run = run_bounded(self.command, cwd=self.workdir, timeout_seconds=self.timeout_seconds)
        result = QualityGateResult(
            configured=True,
            passed=run.exit_code == 0,
            exit_code=run.exit_code,
            output=run.output,
            timed_out=run.timed_out,
            duration_seconds=run.duration_seconds,
        )
        if output_path is not None:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(result.output, "utf-8")
        if result.passed:
            logger.info("Quality gate passed in %.1fs", result.duration_seconds)
        else:
            logger.warning("Quality gate failed with exit code %d", result.exit_code)
        return result
