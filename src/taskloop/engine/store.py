"""File-backed state: TaskSet documents, progress log and small JSON state files."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from taskloop.engine.errors import SchemaError, StateIOError
from taskloop.engine.models import (
    IterationStatus,
    ProgressRecord,
    Task,
    TaskSet,
    criteria_digest,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_REGENERATE_HINT = "Regenerate the task list from the specification (taskloop sync)."


def with_retry(operation: Callable[[], T], *, description: str) -> T:
    """Run a file operation, retrying once on ``OSError`` before failing hard."""

    try:
        return operation()
    except OSError as first_error:
        logger.warning("%s failed (%s); retrying once", description, first_error)
    try:
        return operation()
    except OSError as error:
        raise StateIOError(
            f"{description} failed twice: {error}",
            remediation="Check disk space and permissions for the workspace directory.",
        ) from error


def atomic_write_text(path: Path, content: str) -> None:
    """Write via a temporary sibling file then rename over the target."""

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    with_retry(_write, description=f"Writing {path}")


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically with deterministic formatting."""

    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def read_text(path: Path) -> str:
    return with_retry(lambda: path.read_text("utf-8"), description=f"Reading {path}")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    raw = read_text(path)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise SchemaError(
            f"{path.name} is not valid JSON: {error}",
            remediation=_REGENERATE_HINT,
        ) from error
    if not isinstance(payload, dict):
        raise SchemaError(f"Expected a JSON object in {path.name}", remediation=_REGENERATE_HINT)
    return payload


def parse_task_set(raw: dict[str, Any], *, source: str = "tasks.json") -> TaskSet:
    """Validate a decoded TaskSet document."""

    raw_tasks = raw.get("tasks")
    if not isinstance(raw_tasks, list):
        raise SchemaError(
            f"{source} must contain a 'tasks' array",
            remediation=_REGENERATE_HINT,
        )
    if not raw_tasks:
        raise SchemaError(f"{source} has an empty 'tasks' array", remediation=_REGENERATE_HINT)

    description = raw.get("description", "")
    created_at = raw.get("createdAt", "")
    if not isinstance(description, str) or not isinstance(created_at, str):
        raise SchemaError(
            f"{source}: 'description' and 'createdAt' must be strings",
            remediation=_REGENERATE_HINT,
        )

    tasks: list[Task] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_tasks):
        task = _parse_task(item, index=index, source=source)
        if task.id in seen:
            raise SchemaError(
                f"{source}: duplicate task id {task.id!r}",
                remediation=_REGENERATE_HINT,
            )
        seen.add(task.id)
        tasks.append(task)
    return TaskSet(description=description, created_at=created_at, tasks=tasks)


def _parse_task(item: object, *, index: int, source: str) -> Task:  # noqa: C901
    where = f"{source}: tasks[{index}]"
    if not isinstance(item, dict):
        raise SchemaError(f"{where} must be an object", remediation=_REGENERATE_HINT)

    task_id = item.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise SchemaError(f"{where}.id must be a non-empty string", remediation=_REGENERATE_HINT)
    where = f"{source}: task {task_id}"

    title = item.get("title")
    if not isinstance(title, str) or not title.strip():
        raise SchemaError(f"{where} has no title", remediation=_REGENERATE_HINT)

    criteria = item.get("acceptanceCriteria")
    if not isinstance(criteria, list) or not all(isinstance(entry, str) for entry in criteria):
        raise SchemaError(
            f"{where}.acceptanceCriteria must be a list of strings",
            remediation=_REGENERATE_HINT,
        )

    priority = item.get("priority", index + 1)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise SchemaError(f"{where}.priority must be an integer", remediation=_REGENERATE_HINT)

    completed = item.get("completed", False)
    if not isinstance(completed, bool):
        raise SchemaError(f"{where}.completed must be a boolean", remediation=_REGENERATE_HINT)

    description = item.get("description", "")
    notes = item.get("notes", "")
    if not isinstance(description, str) or not isinstance(notes, str):
        raise SchemaError(
            f"{where}: description and notes must be strings",
            remediation=_REGENERATE_HINT,
        )

    model = item.get("model")
    if model is not None and not isinstance(model, str):
        raise SchemaError(f"{where}.model must be a string", remediation=_REGENERATE_HINT)
    tools = item.get("tools")
    if tools is not None and (
        not isinstance(tools, list) or not all(isinstance(entry, str) for entry in tools)
    ):
        raise SchemaError(f"{where}.tools must be a list of strings", remediation=_REGENERATE_HINT)
    digest = item.get("criteriaDigest")
    if digest is not None and not isinstance(digest, str):
        raise SchemaError(f"{where}.criteriaDigest must be a string", remediation=_REGENERATE_HINT)

    return Task(
        id=task_id.strip(),
        title=title,
        description=description,
        acceptance_criteria=list(criteria),
        priority=priority,
        completed=completed,
        notes=notes,
        model=model,
        tools=list(tools) if tools is not None else None,
        criteria_digest=digest,
    )


def task_set_to_dict(task_set: TaskSet) -> dict[str, Any]:
    tasks: list[dict[str, Any]] = []
    for task in task_set.tasks:
        entry: dict[str, Any] = {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "acceptanceCriteria": list(task.acceptance_criteria),
            "priority": task.priority,
            "completed": task.completed,
            "notes": task.notes,
        }
        if task.model is not None:
            entry["model"] = task.model
        if task.tools is not None:
            entry["tools"] = list(task.tools)
        if task.criteria_digest is not None:
            entry["criteriaDigest"] = task.criteria_digest
        tasks.append(entry)
    return {
        "description": task_set.description,
        "createdAt": task_set.created_at,
        "tasks": tasks,
    }


def load_task_set(path: Path) -> TaskSet:
    """Load and validate a TaskSet, reopening tasks whose criteria changed."""

    task_set = parse_task_set(load_json(path), source=path.name)
    for task in task_set.tasks:
        if not task.completed or task.criteria_digest is None:
            continue
        if task.criteria_digest != criteria_digest(task.acceptance_criteria):
            logger.warning(
                "Acceptance criteria of completed task %s changed; marking it incomplete",
                task.id,
            )
            task.mark_incomplete()
    return task_set


def save_task_set(path: Path, task_set: TaskSet) -> None:
    write_json(path, task_set_to_dict(task_set))


_RECORD_HEADER = re.compile(r"^## Iteration (?P<iteration>\d+) \| (?P<timestamp>\S+)\s*$")
_RECORD_END = "---"
_LEARNINGS_INDENT = "  "


@dataclass(slots=True)
class _RecordSpan:
    start: int
    end: int


class ProgressLog:
    """Append-only iteration history stored as markdown blocks."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def ensure_exists(self, header: str = "# Progress Log\n") -> None:
        if not self.exists():
            atomic_write_text(self.path, header if header.endswith("\n") else header + "\n")

    def read(self) -> str:
        if not self.exists():
            return ""
        return read_text(self.path)

    def records(self) -> list[ProgressRecord]:
        lines = self.read().splitlines()
        return [_parse_record(lines[span.start : span.end]) for span in _record_spans(lines)]

    def last_iteration(self) -> int:
        records = self.records()
        return records[-1].iteration if records else 0

    def append(self, record: ProgressRecord) -> None:
        current = self.read()
        if current and not current.endswith("\n"):
            current += "\n"
        separator = "\n" if current.strip() else ""
        atomic_write_text(self.path, current + separator + render_record(record))

    def rollback_last(self) -> ProgressRecord | None:
        """Remove exactly the final record block; header text is kept."""

        lines = self.read().splitlines()
        spans = _record_spans(lines)
        if not spans:
            return None
        last = spans[-1]
        removed = _parse_record(lines[last.start : last.end])
        kept = lines[: last.start] + lines[last.end :]
        while kept and not kept[-1].strip():
            kept.pop()
        atomic_write_text(self.path, "\n".join(kept) + "\n" if kept else "")
        logger.info("Rolled back progress record for iteration %d", removed.iteration)
        return removed

    def tail(self, max_records: int) -> str:
        """Text of the last ``max_records`` records for prompt continuity."""

        lines = self.read().splitlines()
        spans = _record_spans(lines)[-max_records:] if max_records > 0 else []
        return "\n".join("\n".join(lines[span.start : span.end]) for span in spans)


def render_record(record: ProgressRecord) -> str:
    lines = [
        f"## Iteration {record.iteration} | {record.timestamp.isoformat()}",
        f"Task: {record.task_id or '-'}",
        f"Status: {record.status.value}",
        f"Files: {', '.join(record.files) if record.files else '-'}",
        f"Commit: {record.commit or '-'}",
        "Learnings:",
    ]
    learnings = record.learnings.strip()
    if learnings:
        lines.extend(f"{_LEARNINGS_INDENT}{line}" for line in learnings.splitlines())
    lines.append(_RECORD_END)
    return "\n".join(lines) + "\n"


def _record_spans(lines: list[str]) -> list[_RecordSpan]:
    spans: list[_RecordSpan] = []
    start: int | None = None
    for index, line in enumerate(lines):
        if _RECORD_HEADER.match(line):
            if start is not None:
                spans.append(_RecordSpan(start=start, end=index))
            start = index
        elif line.strip() == _RECORD_END and start is not None:
            spans.append(_RecordSpan(start=start, end=index + 1))
            start = None
    if start is not None:
        spans.append(_RecordSpan(start=start, end=len(lines)))
    return spans


def _parse_record(lines: list[str]) -> ProgressRecord:
    header = _RECORD_HEADER.match(lines[0])
    if header is None:
        raise SchemaError("progress.txt record is missing its iteration header")
    fields: dict[str, str] = {}
    learnings: list[str] = []
    in_learnings = False
    for line in lines[1:]:
        if line.strip() == _RECORD_END:
            break
        if in_learnings:
            learnings.append(line.removeprefix(_LEARNINGS_INDENT))
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        if key == "Learnings":
            in_learnings = True
            continue
        fields[key.strip()] = value.strip()

    def _optional(key: str) -> str | None:
        value = fields.get(key, "-")
        return None if value in {"", "-"} else value

    files_raw = _optional("Files")
    try:
        status = IterationStatus(fields.get("Status", IterationStatus.FAILED.value))
    except ValueError:
        status = IterationStatus.FAILED
    return ProgressRecord(
        iteration=int(header.group("iteration")),
        timestamp=datetime.fromisoformat(header.group("timestamp")),
        task_id=_optional("Task"),
        status=status,
        files=[item.strip() for item in files_raw.split(",")] if files_raw else [],
        commit=_optional("Commit"),
        learnings="\n".join(learnings).strip(),
    )
