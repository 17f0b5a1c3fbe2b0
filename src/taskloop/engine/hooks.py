"""Operator scripts run at fixed points of the loop.

A hook is ``<point>.sh`` in the feature's ``hooks/`` folder or, failing that, in
``<state root>/hooks/``. It runs under ``bash`` with one argument, a JSON context
file, and ``TASKLOOP_HOOK_POINT`` plus the iteration details in its environment.

Hook failures are logged and otherwise ignored, with one exception: a
``post_iteration`` hook that exits with ``VERIFICATION_FAILED_EXIT_CODE`` rejects
the iteration the same way a failed quality gate does.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from taskloop.engine.quality_gate import run_bounded

logger = logging.getLogger(__name__)

HOOKS_DIR = "hooks"
DEFAULT_TIMEOUT_SECONDS = 300.0
VERIFICATION_FAILED_EXIT_CODE = 75


class HookPoint(str, Enum):
    PRE_RUN = "pre_run"
    POST_RUN = "post_run"
    PRE_ITERATION = "pre_iteration"
    POST_ITERATION = "post_iteration"
    ON_COMPLETION = "on_completion"
    ON_ERROR = "on_error"


@dataclass(slots=True)
class HookContext:
    feature_dir: Path
    iteration: int | None = None
    task_id: str | None = None
    transcript_path: Path | None = None
    status: str | None = None

    def payload(self, point: HookPoint) -> dict:
        return {
            "hook": point.value,
            "featureDir": str(self.feature_dir),
            "iteration": self.iteration,
            "taskId": self.task_id,
            "transcriptFile": str(self.transcript_path) if self.transcript_path else None,
            "status": self.status,
            "timestamp": datetime.now(UTC).isoformat(),
        }


@dataclass(slots=True)
class HookResult:
    point: HookPoint
    script: Path
    exit_code: int
    output: str
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0

    @property
    def verification_failed(self) -> bool:
        return self.exit_code == VERIFICATION_FAILED_EXIT_CODE


class HookRunner:
    """Finds and runs hook scripts for one feature."""

    def __init__(
        self,
        *,
        feature_dir: Path,
        state_root: Path,
        workdir: Path,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.feature_dir = feature_dir
        self.state_root = state_root
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds

    def find(self, point: HookPoint) -> Path | None:
        for directory in (self.feature_dir / HOOKS_DIR, self.state_root / HOOKS_DIR):
            candidate = directory / f"{point.value}.sh"
            if candidate.is_file():
                return candidate
        return None

    def run(self, point: HookPoint, context: HookContext) -> HookResult | None:
        """Run the hook for ``point``; ``None`` when no script is installed."""

        script = self.find(point)
        if script is None:
            return None

        handle, context_name = tempfile.mkstemp(prefix="taskloop-hook-", suffix=".json")
        context_path = Path(context_name)
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as context_file:
                json.dump(context.payload(point), context_file, indent=2)
            env = os.environ.copy()
            env.update(
                {
                    "TASKLOOP_HOOK_POINT": point.value,
                    "TASKLOOP_FEATURE_DIR": str(context.feature_dir),
                    "TASKLOOP_ITERATION": str(context.iteration or ""),
                    "TASKLOOP_TASK_ID": context.task_id or "",
                    "TASKLOOP_TRANSCRIPT_FILE": str(context.transcript_path or ""),
                    "TASKLOOP_STATUS": context.status or "",
                },
            )
            logger.info("Running %s hook: %s", point.value, script)
            try:
                run = run_bounded(
                    ["bash", str(script), str(context_path)],
                    cwd=self.workdir,
                    timeout_seconds=self.timeout_seconds,
                    env=env,
                )
            except OSError as error:
                logger.error("Could not start %s hook %s: %s", point.value, script, error)
                return HookResult(point=point, script=script, exit_code=127, output=str(error))
        finally:
            context_path.unlink(missing_ok=True)

        result = HookResult(
            point=point,
            script=script,
            exit_code=run.exit_code,
            output=run.output,
            timed_out=run.timed_out,
        )
        if result.timed_out:
            logger.error("%s hook timed out after %ss", point.value, self.timeout_seconds)
        elif result.verification_failed:
            logger.warning("%s hook reported a verification failure", point.value)
        elif not result.passed:
            logger.warning("%s hook exited with %d", point.value, result.exit_code)
        return result
