"""Domain models for tasks, progress records and loop outcomes."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class LoopStatus(str, Enum):
    """Terminal states of one ``run`` invocation."""

    COMPLETE = "complete"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    USER_INTERRUPT = "user_interrupt"
    API_LIMIT_REACHED = "api_limit_reached"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PREFLIGHT_FAILED = "preflight_failed"


EXIT_CODES: dict[LoopStatus, int] = {
    LoopStatus.COMPLETE: 0,
    LoopStatus.MAX_ITERATIONS_REACHED: 1,
    LoopStatus.CIRCUIT_BREAKER_TRIPPED: 1,
    LoopStatus.PREFLIGHT_FAILED: 1,
    LoopStatus.API_LIMIT_REACHED: 2,
    LoopStatus.RATE_LIMIT_EXCEEDED: 2,
    LoopStatus.USER_INTERRUPT: 130,
}


class FailureCategory(str, Enum):
    """Normalized failure classes fed to the circuit breaker."""

    TIMEOUT = "timeout"
    VERIFICATION_FAILED = "verification_failed"
    AGENT_ERROR = "agent_error"
    AGENT_EXIT_NONZERO = "agent_exit_nonzero"


class IterationStatus(str, Enum):
    """Status written to a progress record."""

    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    NO_PROGRESS = "no_progress"
    TIMEOUT = "timeout"
    VERIFICATION_FAILED = "verification_failed"
    FAILED = "failed"


def criteria_digest(criteria: tuple[str, ...] | list[str]) -> str:
    """Stable digest of acceptance criteria, stored when completion is confirmed."""

    joined = "\n".join(item.strip() for item in criteria)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


@dataclass(slots=True)
class Task:
    """One unit of agent work."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int = 1
    completed: bool = False
    notes: str = ""
    model: str | None = None
    tools: list[str] | None = None
    criteria_digest: str | None = None

    def projection(self) -> tuple[str, str, tuple[str, ...]]:
        return (
            self.id,
            self.title.strip(),
            tuple(item.strip() for item in self.acceptance_criteria),
        )

    def mark_completed(self, note: str | None = None) -> None:
        self.completed = True
        self.criteria_digest = criteria_digest(self.acceptance_criteria)
        if note:
            self.notes = note

    def mark_incomplete(self) -> None:
        self.completed = False
        self.criteria_digest = None


@dataclass(slots=True)
class TaskSet:
    """Ordered tasks for one feature."""

    description: str
    created_at: str
    tasks: list[Task]

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def completion_vector(self) -> tuple[bool, ...]:
        return tuple(task.completed for task in self.tasks)

    def completion_map(self) -> dict[str, bool]:
        return {task.id: task.completed for task in self.tasks}

    def all_completed(self) -> bool:
        return bool(self.tasks) and all(task.completed for task in self.tasks)

    def completed_count(self) -> int:
        return sum(1 for task in self.tasks if task.completed)

    def next_task(self) -> Task | None:
        """First incomplete task by priority, ties broken by file order."""

        pending = [(task.priority, index, task) for index, task in enumerate(self.tasks)]
        pending = [item for item in pending if not item[2].completed]
        if not pending:
            return None
        return min(pending, key=lambda item: (item[0], item[1]))[2]


@dataclass(slots=True)
class ProgressRecord:
    """One iteration entry in the append-only progress log."""

    iteration: int
    timestamp: datetime
    task_id: str | None
    status: IterationStatus
    files: list[str] = field(default_factory=list)
    commit: str | None = None
    learnings: str = ""


@dataclass(slots=True)
class LoopResult:
    """Outcome of the iteration loop for CLI reporting."""

    status: LoopStatus
    iterations: int
    message: str
    archive_path: str | None = None
    details: list[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]
