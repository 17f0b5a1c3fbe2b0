"""Prompt payload handed to the agent at the start of each iteration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from taskloop.engine.exit_detector import DEFAULT_COMPLETION_MARKER
from taskloop.engine.models import Task, TaskSet
from taskloop.engine.spec_parser import extract_task_excerpt

DEFAULT_PROGRESS_TAIL_RECORDS = 5
DEFAULT_MEMORY_TOKEN_BUDGET = 2000
CHARS_PER_TOKEN = 4
_MEMORY_HEADER_ALLOWANCE = 50
_MIN_PROJECT_MEMORY_CHARS = 100


@dataclass(slots=True)
class PromptInputs:
    iteration: int
    max_iterations: int
    task_set: TaskSet
    spec_text: str
    progress_tail: str
    tasks_path: str
    progress_path: str
    feedback: str = ""
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    memories: str = ""


def build_prompt(inputs: PromptInputs) -> str:
    """Assemble TaskSet state, recent progress, the current task's excerpt and feedback."""

    task = inputs.task_set.next_task()
    sections = [
        f"# Iteration {inputs.iteration} of at most {inputs.max_iterations}",
        "",
        "You start with no memory of earlier iterations. Everything you need is below",
        "and in the files it points to.",
        "",
        f"Task list: {inputs.tasks_path}",
        f"Progress log: {inputs.progress_path}",
        "",
    ]
    if inputs.memories.strip():
        sections.extend(["## Memories", inputs.memories.strip(), ""])
    sections.extend(["## Tasks", _render_task_list(inputs.task_set)])
    if task is not None:
        sections.extend(["", "## Current task", _render_current_task(task, inputs.spec_text)])
    if inputs.progress_tail.strip():
        sections.extend(["", "## Recent progress", inputs.progress_tail.strip()])
    if inputs.feedback.strip():
        sections.extend(["", inputs.feedback.strip()])
    sections.extend(["", _render_instructions(inputs)])
    return "\n".join(sections) + "\n"


def _render_task_list(task_set: TaskSet) -> str:
    return "\n".join(
        f"- [{'x' if task.completed else ' '}] {task.id}: {task.title} (priority {task.priority})"
        for task in task_set.tasks
    )


def _render_current_task(task: Task, spec_text: str) -> str:
    excerpt = extract_task_excerpt(spec_text, task.id)
    if excerpt:
        return excerpt
    lines = [f"### {task.id}: {task.title}"]
    if task.description:
        lines.extend(["", task.description])
    if task.acceptance_criteria:
        lines.extend(["", "Acceptance criteria:"])
        lines.extend(f"- {item}" for item in task.acceptance_criteria)
    return "\n".join(lines)


def _render_instructions(inputs: PromptInputs) -> str:
    return (
        "## Rules\n"
        "1. Work on the current task only. Keep the change small and focused.\n"
        "2. Verify every acceptance criterion before claiming the task is done.\n"
        f"3. When it is done, set \"completed\": true for it in {inputs.tasks_path}\n"
        "   and print <task-complete>TASK-ID</task-complete>.\n"
        "4. Print anything the next iteration should know inside <learnings>...</learnings>.\n"
        "5. Wrap file contents or tool output you quote inside <echo>...</echo>.\n"
        f"6. Only when every task is completed, print {inputs.completion_marker}.\n"
    )


def load_memories(
    project_memory: Path,
    feature_memory: Path,
    *,
    token_budget: int = DEFAULT_MEMORY_TOKEN_BUDGET,
) -> str:
    """Project-wide and feature memories combined within ``token_budget``.

    When the combined text is too long, project memories are truncated first;
    feature memories are only cut when they alone exceed the budget.
    """

    project = _read_memory(project_memory)
    feature = _read_memory(feature_memory)
    char_budget = max(0, token_budget) * CHARS_PER_TOKEN
    if project and feature:
        combined = f"# Project Memories\n\n{project}\n\n# Feature Memories\n\n{feature}"
    else:
        combined = project or feature
    if len(combined) <= char_budget:
        return combined

    if not feature:
        return project[:char_budget]
    remaining = char_budget - len(feature) - _MEMORY_HEADER_ALLOWANCE
    if remaining > _MIN_PROJECT_MEMORY_CHARS and project:
        return (
            f"# Project Memories (truncated)\n\n{project[:remaining]}...\n\n"
            f"# Feature Memories\n\n{feature}"
        )
    return feature[:char_budget]


def _read_memory(path: Path) -> str:
    if not path.is_file():
        return ""
    return path.read_text("utf-8", errors="replace").strip()
