"""Local deterministic agent for backend and loop integration tests.

The script is a JSON list of steps; invocation N plays step N (the last step
repeats once the list runs out). A step may contain:

``say``       lines printed to stdout (the transcript)
``complete``  task ids marked completed in the feature's tasks.json
``flip``      task ids whose ``"completed"`` flag is set by editing the raw JSON
``pid_file``  path that receives this process's pid
``progress``  when true, append this iteration's progress record itself
``sleep``     seconds to sleep before exiting
``exit_code`` process exit code (default 0)
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from datetime import UTC, datetime
from pathlib import Path

from taskloop.engine.models import IterationStatus, ProgressRecord
from taskloop.engine.store import ProgressLog, load_task_set, save_task_set
from taskloop.engine.workspace import PROGRESS_FILE, TASKS_FILE


def _next_step(script_path: Path) -> dict:
    steps = json.loads(script_path.read_text("utf-8"))
    counter_path = script_path.with_suffix(".count")
    count = int(counter_path.read_text("utf-8")) if counter_path.is_file() else 0
    counter_path.write_text(str(count + 1), "utf-8")
    if not steps:
        return {}
    return steps[min(count, len(steps) - 1)]


def main(argv: list[str] | None = None) -> int:
    """Play one scripted step."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--script", required=True)
    parser.add_argument("--prompt-file")
    args = parser.parse_args(argv)

    step = _next_step(Path(args.script))
    feature_dir = Path(os.environ["TASKLOOP_FEATURE_DIR"])
    iteration = int(os.getenv("TASKLOOP_ITERATION", "0"))

    if step.get("pid_file"):
        Path(step["pid_file"]).write_text(str(os.getpid()), "utf-8")

    completed = list(step.get("complete", []))
    if completed:
        tasks_path = feature_dir / TASKS_FILE
        task_set = load_task_set(tasks_path)
        for task_id in completed:
            task = task_set.get(task_id)
            if task is not None:
                task.mark_completed("done by scripted agent")
        save_task_set(tasks_path, task_set)

    flipped = list(step.get("flip", []))
    if flipped:
        tasks_path = feature_dir / TASKS_FILE
        raw = json.loads(tasks_path.read_text("utf-8"))
        for entry in raw["tasks"]:
            if entry["id"] in flipped:
                entry["completed"] = True
        tasks_path.write_text(json.dumps(raw, indent=2), "utf-8")

    if step.get("progress"):
        ProgressLog(feature_dir / PROGRESS_FILE).append(
            ProgressRecord(
                iteration=iteration,
                timestamp=datetime.now(UTC),
                task_id=completed[0] if completed else None,
                status=IterationStatus.COMPLETED if completed else IterationStatus.IN_PROGRESS,
                learnings="recorded by scripted agent",
            ),
        )

    for line in step.get("say", []):
        print(line, flush=True)

    time.sleep(float(step.get("sleep", 0)))
    return int(step.get("exit_code", 0))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
