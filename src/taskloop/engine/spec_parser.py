"""Structural parser turning ``spec.md`` into an ordered sequence of task blocks.

Grammar (line oriented, markdown):

- ``# <title>`` once at the top.
- ``## <section>`` top-level sections. Known: Problem Statement, Success Criteria,
  Tasks (alias: User Stories), Out of Scope.
- ``### <ID>: <Title>`` (also ``<ID> - <Title>``) opens a task block. IDs look like
  ``STORY-001`` or ``TASK-2.1``.
- Inside a block, a line that is an ``Acceptance Criteria`` label opens the criteria
  list; subsequent list items (``-``, ``*``, ``1.``, optionally ``[ ]``/``[x]``) are
  criteria. ``Priority:``, ``Model:`` and ``Tools:`` label lines set overrides.
  Anything else is description text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

TASK_ID_PATTERN = r"[A-Z][A-Z0-9]*-\d+(?:\.\d+)?"

_TITLE_RE = re.compile(r"^#\s+(?P<title>.+?)\s*$")
_SECTION_RE = re.compile(r"^##\s+(?P<name>.+?)\s*$")
_TASK_HEADING_RE = re.compile(
    rf"^###\s+(?P<id>{TASK_ID_PATTERN})\s*(?::|\s-\s)?\s*(?P<title>.*?)\s*$",
)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(?P<text>.+?)\s*$")
_LABEL_RE = re.compile(
    r"^\s*(?:\*\*|__)?(?P<label>[A-Za-z ]+?)(?:\*\*|__)?\s*:\s*(?:\*\*|__)?\s*(?P<value>.*?)\s*$",
)
_CRITERIA_LABEL_RE = re.compile(
    r"^\s*(?:#{4,6}\s+)?(?:\*\*|__)?acceptance criteria(?:\*\*|__)?\s*:?\s*(?:\*\*|__)?\s*$",
    re.IGNORECASE,
)


class SpecSection(str, Enum):
    PROBLEM_STATEMENT = "Problem Statement"
    SUCCESS_CRITERIA = "Success Criteria"
    TASKS = "Tasks"
    OUT_OF_SCOPE = "Out of Scope"


_SECTION_ALIASES = {
    "problem statement": SpecSection.PROBLEM_STATEMENT,
    "success criteria": SpecSection.SUCCESS_CRITERIA,
    "tasks": SpecSection.TASKS,
    "user stories": SpecSection.TASKS,
    "stories": SpecSection.TASKS,
    "out of scope": SpecSection.OUT_OF_SCOPE,
}


@dataclass(slots=True)
class SpecTaskBlock:
    """One task block extracted from the Specification."""

    id: str
    title: str
    line_no: int
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int | None = None
    model: str | None = None
    tools: list[str] | None = None

    def projection(self) -> tuple[str, str, tuple[str, ...]]:
        return (
            self.id,
            self.title.strip(),
            tuple(item.strip() for item in self.acceptance_criteria),
        )


@dataclass(slots=True)
class Specification:
    """Typed view over ``spec.md``."""

    title: str
    sections: dict[SpecSection, str]
    success_criteria: list[str]
    tasks: list[SpecTaskBlock]
    duplicate_ids: list[str] = field(default_factory=list)

    @property
    def problem_statement(self) -> str:
        return self.sections.get(SpecSection.PROBLEM_STATEMENT, "")

    def task_ids(self) -> list[str]:
        return [block.id for block in self.tasks]

    def get(self, task_id: str) -> SpecTaskBlock | None:
        for block in self.tasks:
            if block.id == task_id:
                return block
        return None

    def missing_sections(self) -> list[SpecSection]:
        return [section for section in SpecSection if section not in self.sections]


def load_specification(path: Path) -> Specification:
    return parse_specification(path.read_text("utf-8"))


def parse_specification(text: str) -> Specification:  # noqa: C901, PLR0912
    """Parse markdown text into a ``Specification``."""

    title = ""
    sections: dict[SpecSection, list[str]] = {}
    current_section: SpecSection | None = None
    blocks: list[SpecTaskBlock] = []
    current_block: SpecTaskBlock | None = None
    description_lines: list[str] = []
    in_criteria = False
    seen_ids: set[str] = set()
    duplicates: list[str] = []

    def _close_block() -> None:
        nonlocal current_block, description_lines, in_criteria
        if current_block is not None:
            current_block.description = "\n".join(description_lines).strip()
            blocks.append(current_block)
        current_block = None
        description_lines = []
        in_criteria = False

    in_fence = False
    for line_no, line in enumerate(text.splitlines(), start=1):
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
        if in_fence:
            if current_block is not None:
                description_lines.append(line)
            elif current_section is not None:
                sections[current_section].append(line)
            continue

        heading = _TASK_HEADING_RE.match(line)
        if heading is not None:
            _close_block()
            task_id = heading.group("id")
            if task_id in seen_ids:
                duplicates.append(task_id)
            seen_ids.add(task_id)
            current_block = SpecTaskBlock(
                id=task_id,
                title=heading.group("title") or task_id,
                line_no=line_no,
            )
            continue

        if line.startswith("## ") or line.startswith("### "):
            section_match = _SECTION_RE.match(line)
            if section_match is not None:
                _close_block()
                name = section_match.group("name").strip().rstrip(":").lower()
                current_section = _SECTION_ALIASES.get(name)
                if current_section is not None:
                    sections.setdefault(current_section, [])
                continue

        if not title and current_block is None and current_section is None:
            title_match = _TITLE_RE.match(line)
            if title_match is not None:
                title = title_match.group("title")
                continue

        if current_block is not None:
            if _CRITERIA_LABEL_RE.match(line):
                in_criteria = True
                continue
            item = _LIST_ITEM_RE.match(line)
            if in_criteria and item is not None:
                current_block.acceptance_criteria.append(item.group("text"))
                continue
            if _apply_label(current_block, line):
                in_criteria = False
                continue
            if in_criteria and line.strip() and item is None:
                in_criteria = False
            description_lines.append(line)
            continue

        if current_section is not None:
            sections[current_section].append(line)

    _close_block()

    section_text = {key: "\n".join(value).strip() for key, value in sections.items()}
    success_criteria = [
        match.group("text")
        for match in (
            _LIST_ITEM_RE.match(line)
            for line in section_text.get(SpecSection.SUCCESS_CRITERIA, "").splitlines()
        )
        if match is not None
    ]
    return Specification(
        title=title,
        sections=section_text,
        success_criteria=success_criteria,
        tasks=blocks,
        duplicate_ids=duplicates,
    )


def _apply_label(block: SpecTaskBlock, line: str) -> bool:
    label_match = _LABEL_RE.match(line)
    if label_match is None:
        return False
    label = label_match.group("label").strip().lower()
    value = label_match.group("value").strip()
    if label == "priority":
        try:
            block.priority = int(value)
        except ValueError:
            return False
        return True
    if label == "model" and value:
        block.model = value.strip("`")
        return True
    if label == "tools" and value:
        block.tools = [part.strip().strip("`") for part in value.split(",") if part.strip()]
        return True
    return False


def extract_task_excerpt(text: str, task_id: str) -> str:
    """Raw markdown of one task block, used as the prompt excerpt."""

    lines = text.splitlines()
    collected: list[str] = []
    capturing = False
    for line in lines:
        heading = _TASK_HEADING_RE.match(line)
        if heading is not None:
            if capturing:
                break
            capturing = heading.group("id") == task_id
        elif capturing and line.startswith("## "):
            break
        if capturing:
            collected.append(line)
    return "\n".join(collected).strip()
