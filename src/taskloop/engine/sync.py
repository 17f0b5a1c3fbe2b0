"""Regenerate the TaskSet from the Specification.

Completion survives regeneration only when a task's acceptance criteria are
unchanged. A completed task that the Specification no longer defines is never
discarded silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from taskloop.engine.errors import OrphanCompletedError, SchemaError
from taskloop.engine.models import Task, TaskSet
from taskloop.engine.spec_parser import Specification, load_specification
from taskloop.engine.store import ProgressLog, load_task_set, save_task_set
from taskloop.engine.workspace import FeatureWorkspace

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncReport:
    task_set: TaskSet
    added: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)
    reset: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)

    def render_lines(self) -> list[str]:
        lines = [f"tasks.json regenerated: {len(self.task_set.tasks)} task(s)"]
        for label, ids in (
            ("added", self.added),
            ("completion kept", self.preserved),
            ("reset (criteria changed)", self.reset),
            ("dropped", self.dropped),
        ):
            if ids:
                lines.append(f"  {label}: {', '.join(ids)}")
        return lines


def derive_task_set(
    specification: Specification,
    existing: TaskSet | None,
    *,
    drop_completed_orphans: bool = False,
) -> SyncReport:
    if specification.duplicate_ids:
        raise SchemaError(
            f"spec.md defines duplicate task ids: {', '.join(specification.duplicate_ids)}",
            remediation="Give every task block a unique id.",
            check="spec_structure",
        )
    if not specification.tasks:
        raise SchemaError(
            "spec.md defines no task blocks.",
            remediation="Add one '### <ID>: <Title>' block per task.",
            check="spec_structure",
        )

    spec_ids = set(specification.task_ids())
    report = SyncReport(
        task_set=TaskSet(
            description=specification.title or (existing.description if existing else ""),
            created_at=existing.created_at if existing else datetime.now(UTC).isoformat(),
            tasks=[],
        ),
    )

    if existing is not None:
        orphans = [task for task in existing.tasks if task.id not in spec_ids]
        completed_orphans = [task.id for task in orphans if task.completed]
        if completed_orphans and not drop_completed_orphans:
            raise OrphanCompletedError(
                f"Completed task(s) no longer in spec.md: {', '.join(completed_orphans)}",
                remediation=(
                    "Restore them in spec.md, or confirm removal with --drop-completed-orphans."
                ),
            )
        report.dropped = [task.id for task in orphans]

    for index, block in enumerate(specification.tasks):
        task = Task(
            id=block.id,
            title=block.title.strip(),
            description=block.description.strip(),
            acceptance_criteria=[item.strip() for item in block.acceptance_criteria],
            priority=block.priority if block.priority is not None else index + 1,
            model=block.model,
            tools=block.tools,
        )
        previous = existing.get(block.id) if existing is not None else None
        if previous is None:
            report.added.append(task.id)
        elif previous.completed and previous.projection()[2] == task.projection()[2]:
            task.completed = True
            task.criteria_digest = previous.criteria_digest
            task.notes = previous.notes
            report.preserved.append(task.id)
        else:
            task.notes = previous.notes
            if previous.completed:
                logger.warning("Task %s criteria changed; completion reset", task.id)
                report.reset.append(task.id)
        if task.completed and task.criteria_digest is None:
            task.mark_completed()
        report.task_set.tasks.append(task)
    return report


def sync_workspace(
    workspace: FeatureWorkspace,
    *,
    drop_completed_orphans: bool = False,
) -> SyncReport:
    """Rewrite tasks.json from spec.md and make sure progress.txt exists."""

    specification = load_specification(workspace.spec_path)
    existing: TaskSet | None = None
    if workspace.tasks_path.is_file():
        try:
            existing = load_task_set(workspace.tasks_path)
        except SchemaError as error:
            logger.warning("Existing tasks.json is unreadable (%s); rebuilding from scratch", error)
    report = derive_task_set(
        specification,
        existing,
        drop_completed_orphans=drop_completed_orphans,
    )
    save_task_set(workspace.tasks_path, report.task_set)
    ProgressLog(workspace.progress_path).ensure_exists()
    logger.info(
        "Synced %s: %d added, %d kept, %d reset, %d dropped",
        workspace.feature,
        len(report.added),
        len(report.preserved),
        len(report.reset),
        len(report.dropped),
    )
    return report
