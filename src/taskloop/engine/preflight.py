"""Preflight validation: execution context and Specification/TaskSet agreement.

Checks run in a fixed order and collect findings instead of stopping at the first
problem, so one ``validate`` call shows everything an operator has to fix. A check
whose input is missing is skipped; the missing input is already an ERROR from the
required-artifacts check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from taskloop.engine.errors import (
    OrphanCompletedError,
    PreflightError,
    SchemaError,
    SyncError,
    TaskloopError,
)
from taskloop.engine.models import TaskSet
from taskloop.engine.spec_parser import Specification, load_specification
from taskloop.engine.store import load_task_set
from taskloop.engine.workspace import FeatureWorkspace

logger = logging.getLogger(__name__)

REGENERATE_REMEDIATION = "Regenerate the task list from the specification (taskloop sync)."


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class PreflightCheck(str, Enum):
    EXECUTION_CONTEXT = "execution_context"
    PROTECTED_CONTEXT = "protected_context"
    REQUIRED_ARTIFACTS = "required_artifacts"
    TASK_SET_SCHEMA = "task_set_schema"
    SPEC_STRUCTURE = "spec_structure"
    SYNC = "sync"
    ORPHANS = "orphans"


_ERROR_KINDS: dict[PreflightCheck, type[TaskloopError]] = {
    PreflightCheck.TASK_SET_SCHEMA: SchemaError,
    PreflightCheck.SYNC: SyncError,
    PreflightCheck.ORPHANS: OrphanCompletedError,
}


@dataclass(slots=True)
class Finding:
    check: PreflightCheck
    severity: Severity
    message: str
    remediation: str = ""
    task_id: str | None = None

    def render(self) -> str:
        marker = "✗" if self.severity is Severity.ERROR else "⚠"
        text = f"{marker} [{self.check.value}] {self.message}"
        if self.remediation:
            text += f" Fix: {self.remediation}"
        return text


@dataclass(slots=True)
class PreflightContext:
    """Inputs resolved by the caller before checks run."""

    branch: str | None
    workspace: FeatureWorkspace | None
    protected_branches: tuple[str, ...] = ("main", "master", "develop")


@dataclass(slots=True)
class PreflightReport:
    findings: list[Finding] = field(default_factory=list)
    task_set: TaskSet | None = None
    specification: Specification | None = None

    @property
    def errors(self) -> list[Finding]:
        return [item for item in self.findings if item.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[Finding]:
        return [item for item in self.findings if item.severity is Severity.WARNING]

    @property
    def passed(self) -> bool:
        return not self.errors

    def render_lines(self) -> list[str]:
        lines = [finding.render() for finding in self.findings]
        if self.errors:
            lines.append(
                f"Preflight FAILED: {len(self.errors)} error(s), {len(self.warnings)} warning(s).",
            )
        elif self.warnings:
            lines.append(f"Preflight passed with {len(self.warnings)} warning(s).")
        else:
            lines.append("Preflight passed. Ready to run.")
        return lines

    def raise_for_errors(self) -> None:
        """Raise the error kind of the first blocking finding."""

        if not self.errors:
            return
        first = self.errors[0]
        error_kind = _ERROR_KINDS.get(first.check, PreflightError)
        extra = len(self.errors) - 1
        message = first.message + (f" (+{extra} more error(s))" if extra else "")
        raise error_kind(message, remediation=first.remediation, check=first.check.value)


def run_preflight(context: PreflightContext) -> PreflightReport:
    """Run all checks in order and return the collected findings."""

    report = PreflightReport()

    if context.workspace is None:
        report.findings.append(
            Finding(
                check=PreflightCheck.EXECUTION_CONTEXT,
                severity=Severity.ERROR,
                message="Cannot determine the feature workspace: not on a git branch.",
                remediation="Check out a feature branch or pass --feature explicitly.",
            ),
        )
        return report

    if context.branch is None:
        logger.debug("No branch detected; using explicit feature %s", context.workspace.feature)
    elif context.branch in context.protected_branches:
        report.findings.append(
            Finding(
                check=PreflightCheck.PROTECTED_CONTEXT,
                severity=Severity.WARNING,
                message=f"Running on protected branch {context.branch!r}.",
                remediation="Create a feature branch before letting the agent commit.",
            ),
        )

    workspace = context.workspace
    if not _check_required_artifacts(workspace, report):
        return report

    report.task_set = _check_task_set_schema(workspace.tasks_path, report)
    report.specification = _check_spec_structure(workspace.spec_path, report)
    if report.task_set is None or report.specification is None:
        return report

    report.findings.extend(diff_projections(report.task_set, report.specification))
    report.findings.extend(find_orphans(report.task_set, report.specification))
    return report


def _check_required_artifacts(workspace: FeatureWorkspace, report: PreflightReport) -> bool:
    if not workspace.feature_dir.is_dir():
        report.findings.append(
            Finding(
                check=PreflightCheck.REQUIRED_ARTIFACTS,
                severity=Severity.ERROR,
                message=f"Feature folder not found: {workspace.feature_dir}",
                remediation="Create the feature folder with spec.md, tasks.json and progress.txt.",
            ),
        )
        return False

    ok = True
    for path, remediation in (
        (workspace.spec_path, "Write the specification (spec.md) for this feature."),
        (workspace.tasks_path, REGENERATE_REMEDIATION),
        (workspace.progress_path, "Create an empty progress.txt (taskloop sync creates one)."),
    ):
        if not path.is_file():
            ok = False
            report.findings.append(
                Finding(
                    check=PreflightCheck.REQUIRED_ARTIFACTS,
                    severity=Severity.ERROR,
                    message=f"Required file missing: {path.name}",
                    remediation=remediation,
                ),
            )
    return ok


def _check_task_set_schema(path: Path, report: PreflightReport) -> TaskSet | None:
    try:
        return load_task_set(path)
    except SchemaError as error:
        report.findings.append(
            Finding(
                check=PreflightCheck.TASK_SET_SCHEMA,
                severity=Severity.ERROR,
                message=error.message,
                remediation=error.remediation or REGENERATE_REMEDIATION,
            ),
        )
        return None


def _check_spec_structure(path: Path, report: PreflightReport) -> Specification | None:
    try:
        specification = load_specification(path)
    except (OSError, UnicodeDecodeError) as error:
        report.findings.append(
            Finding(
                check=PreflightCheck.SPEC_STRUCTURE,
                severity=Severity.ERROR,
                message=f"Cannot read spec.md: {error}",
                remediation="Check the file encoding and permissions.",
            ),
        )
        return None

    for section in specification.missing_sections():
        report.findings.append(
            Finding(
                check=PreflightCheck.SPEC_STRUCTURE,
                severity=Severity.WARNING,
                message=f"spec.md has no '## {section.value}' section.",
            ),
        )
    if not specification.tasks:
        report.findings.append(
            Finding(
                check=PreflightCheck.SPEC_STRUCTURE,
                severity=Severity.ERROR,
                message="spec.md defines no task blocks (expected '### STORY-001: Title').",
                remediation="Add one '### <ID>: <Title>' block per task.",
            ),
        )
        return None
    for task_id in specification.duplicate_ids:
        report.findings.append(
            Finding(
                check=PreflightCheck.SPEC_STRUCTURE,
                severity=Severity.ERROR,
                message=f"spec.md defines task {task_id} more than once.",
                remediation="Give every task block a unique id.",
                task_id=task_id,
            ),
        )
    for block in specification.tasks:
        if not block.acceptance_criteria:
            report.findings.append(
                Finding(
                    check=PreflightCheck.SPEC_STRUCTURE,
                    severity=Severity.WARNING,
                    message=f"Task {block.id} (line {block.line_no}) has no acceptance criteria.",
                    task_id=block.id,
                ),
            )
    return specification


def diff_projections(task_set: TaskSet, specification: Specification) -> list[Finding]:
    """Findings for every Specification task whose projection the TaskSet lacks."""

    findings: list[Finding] = []
    for block in specification.tasks:
        task = task_set.get(block.id)
        if task is None:
            findings.append(
                Finding(
                    check=PreflightCheck.SYNC,
                    severity=Severity.ERROR,
                    message=f"Task {block.id} is in spec.md but missing from tasks.json.",
                    remediation=REGENERATE_REMEDIATION,
                    task_id=block.id,
                ),
            )
            continue
        _, spec_title, spec_criteria = block.projection()
        _, task_title, task_criteria = task.projection()
        if spec_title != task_title:
            findings.append(
                Finding(
                    check=PreflightCheck.SYNC,
                    severity=Severity.ERROR,
                    message=(
                        f"Task {block.id} title differs: spec.md={spec_title!r} "
                        f"tasks.json={task_title!r}."
                    ),
                    remediation=REGENERATE_REMEDIATION,
                    task_id=block.id,
                ),
            )
        if spec_criteria != task_criteria:
            findings.append(
                Finding(
                    check=PreflightCheck.SYNC,
                    severity=Severity.ERROR,
                    message=(
                        f"Task {block.id} acceptance criteria differ "
                        f"({len(spec_criteria)} in spec.md, {len(task_criteria)} in tasks.json)."
                    ),
                    remediation=REGENERATE_REMEDIATION,
                    task_id=block.id,
                ),
            )
    return findings


def find_orphans(task_set: TaskSet, specification: Specification) -> list[Finding]:
    """TaskSet tasks the Specification no longer defines."""

    spec_ids = set(specification.task_ids())
    findings: list[Finding] = []
    for task in task_set.tasks:
        if task.id in spec_ids:
            continue
        if task.completed:
            findings.append(
                Finding(
                    check=PreflightCheck.ORPHANS,
                    severity=Severity.ERROR,
                    message=(
                        f"Completed task {task.id} is not in spec.md; regenerating would "
                        "discard finished work."
                    ),
                    remediation=(
                        "Restore the task in spec.md, or confirm removal with "
                        "'taskloop sync --drop-completed-orphans'."
                    ),
                    task_id=task.id,
                ),
            )
        else:
            findings.append(
                Finding(
                    check=PreflightCheck.ORPHANS,
                    severity=Severity.WARNING,
                    message=f"Task {task.id} is not in spec.md and is safe to drop.",
                    remediation=REGENERATE_REMEDIATION,
                    task_id=task.id,
                ),
            )
    return findings
