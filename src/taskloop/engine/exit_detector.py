"""Completion signals, failure fingerprints and API-limit detection.

Agent transcripts mix two kinds of text: what the agent says (narrated) and what it
echoes back from files or tool calls. Only narrated text may be classified as an
agent failure; a quoted snippet that contains the word "error" is not one. The
transcript is split into tagged blocks before any pattern matching:

- ``<echo>``/``</echo>``, ``<tool-result>``/``</tool-result>`` and ``<file ...>``/``</file>``
  tag lines delimit echoed blocks.
- Fenced code blocks and ``> `` quoted lines are echoed.
- Stream-JSON lines: ``user`` and ``tool_result`` events are echoed, ``assistant``
  text parts and the final ``result`` are narrated, other events are dropped.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum

from taskloop.engine.models import FailureCategory, TaskSet

logger = logging.getLogger(__name__)

FINGERPRINT_VERSION = 1
DEFAULT_COMPLETION_MARKER = "<promise>COMPLETE</promise>"

_ECHO_OPEN_RE = re.compile(r"^\s*<(?P<tag>echo|tool-result|file)(?:\s[^>]*)?>")
_TASK_COMPLETE_RE = re.compile(r"<task-complete>\s*(?P<id>[^<\s]+)\s*</task-complete>")
_LEARNINGS_RE = re.compile(r"<learnings>(?P<body>.*?)</learnings>", re.DOTALL)

# Log prefixes such as "[12:00:01]" or "2026-10-17T12:00:01Z" before a level word.
_LOG_PREFIX = (
    r"^\s*(?:(?:\[[^\]]*\]|\d{4}-\d{2}-\d{2}|"
    r"t?\d{1,2}:\d{2}:\d{2}(?:[.,]\d+)?(?:z|[+-]\d{2}:?\d{2})?)\s*)*"
)

_FAILURE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(_LOG_PREFIX + r"error\b", re.IGNORECASE),
    re.compile(_LOG_PREFIX + r"fatal:", re.IGNORECASE),
    re.compile(r"\bFAILED\b"),
    re.compile(r"\bTraceback \(most recent call last\)"),
    re.compile(r"\b(?:Assertion|Type|Syntax|Value|Key|Attribute|Import|Name)Error\b"),
    re.compile(r"\bException\b"),
)
_API_LIMIT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"usage limit"),
    re.compile(r"rate limit(?:ed)? (?:reached|exceeded)"),
    re.compile(r"too many requests"),
    re.compile(r"5-hour limit"),
    re.compile(r"exceeded.*\blimit\b"),
)

_MAX_FAILURE_LINES = 5
_GATE_TAIL_LINES = 20
_FEEDBACK_MAX_CHARS = 4000

_NORMALIZERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"\d{4}-\d{2}-\d{2}[t ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:z|[+-]\d{2}:?\d{2})?"),
        "<ts>",
    ),
    (re.compile(r"\[[^\]]*\d{2}:\d{2}:\d{2}[^\]]*\]"), "<ts>"),
    (re.compile(r"\d{4}-\d{2}-\d{2}"), "<date>"),
    (re.compile(r"\b\d{1,2}:\d{2}:\d{2}(?:[.,]\d+)?\b"), "<time>"),
    (re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b"), "<uuid>"),
    (re.compile(r"\b0x[0-9a-f]+\b"), "<addr>"),
    (re.compile(r"(?:[a-z]:)?(?:[\\/][\w.@+-]+)+[\\/](?P<name>[\w.@+-]+)"), r"\g<name>"),
    (re.compile(r"\bline \d+\b"), "line <n>"),
    (re.compile(r":\d+(?::\d+)?\b"), ":<n>"),
    (re.compile(r"\b\d+(?:\.\d+)?\s*(?:ms|s|sec|secs|seconds)\b"), "<duration>"),
    (re.compile(r"\bpid \d+\b"), "pid <n>"),
    (re.compile(r"\s+"), " "),
)


class BlockKind(str, Enum):
    NARRATED = "narrated"
    ECHOED = "echoed"


@dataclass(slots=True)
class TranscriptBlock:
    kind: BlockKind
    text: str


@dataclass(slots=True)
class Failure:
    """Agent-authored or verification failure, reduced to a comparable fingerprint."""

    category: FailureCategory
    summary: str
    detail: str
    fingerprint: str


@dataclass(slots=True)
class ExitSignal:
    marker_seen: bool
    all_tasks_completed: bool

    @property
    def complete(self) -> bool:
        return self.marker_seen or self.all_tasks_completed


def parse_transcript(text: str) -> list[TranscriptBlock]:  # noqa: C901
    """Split a transcript into narrated and echoed blocks, preserving order."""

    blocks: list[TranscriptBlock] = []

    def _push(kind: BlockKind, line: str) -> None:
        if blocks and blocks[-1].kind is kind:
            blocks[-1].text += "\n" + line
        else:
            blocks.append(TranscriptBlock(kind=kind, text=line))

    close_tag: str | None = None
    in_fence = False
    for line in text.splitlines():
        if close_tag is not None:
            _push(BlockKind.ECHOED, line)
            if close_tag in line:
                close_tag = None
            continue
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
            _push(BlockKind.ECHOED, line)
            continue
        if in_fence:
            _push(BlockKind.ECHOED, line)
            continue

        opened = _ECHO_OPEN_RE.match(line)
        if opened is not None:
            tag_close = f"</{opened.group('tag')}>"
            _push(BlockKind.ECHOED, line)
            if tag_close not in line[opened.end() :]:
                close_tag = tag_close
            continue
        if line.lstrip().startswith(">"):
            _push(BlockKind.ECHOED, line)
            continue

        stripped = line.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            event = _parse_stream_event(stripped)
            if event is not None:
                kind, event_text = event
                if event_text:
                    _push(kind, event_text)
                continue
        _push(BlockKind.NARRATED, line)
    return blocks


def _parse_stream_event(line: str) -> tuple[BlockKind, str] | None:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or "type" not in payload:
        return None
    event_type = payload.get("type")
    if event_type in {"user", "tool_result"}:
        return BlockKind.ECHOED, line
    if event_type == "result":
        result = payload.get("result")
        return BlockKind.NARRATED, result if isinstance(result, str) else ""
    if event_type == "assistant":
        message = payload.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        parts: list[str] = []
        if isinstance(content, list):
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
        return BlockKind.NARRATED, "\n".join(parts)
    return BlockKind.ECHOED, ""


def narrated_text(transcript: str) -> str:
    return "\n".join(
        block.text for block in parse_transcript(transcript) if block.kind is BlockKind.NARRATED
    )


def normalize_failure_text(text: str) -> str:
    """Deterministic normalization applied before hashing a failure."""

    normalized = text.lower()
    for pattern, replacement in _NORMALIZERS:
        normalized = pattern.sub(replacement, normalized)
    return normalized.strip()


def fingerprint(category: FailureCategory, text: str) -> str:
    digest = hashlib.sha256(f"{category.value}\n{normalize_failure_text(text)}".encode())
    return digest.hexdigest()[:16]


def failure_lines(text: str, *, limit: int = _MAX_FAILURE_LINES) -> list[str]:
    matched: list[str] = []
    for line in text.splitlines():
        if any(pattern.search(line) for pattern in _FAILURE_PATTERNS):
            matched.append(line.strip())
            if len(matched) >= limit:
                break
    return matched


def extract_failure(narrated: str, *, exit_code: int) -> Failure | None:
    """Classify narrated agent output; ``None`` when the iteration shows no failure."""

    lines = failure_lines(narrated)
    if lines:
        detail = "\n".join(lines)
        return Failure(
            category=FailureCategory.AGENT_ERROR,
            summary=lines[0][:200],
            detail=detail,
            fingerprint=fingerprint(FailureCategory.AGENT_ERROR, detail),
        )
    if exit_code != 0:
        tail = _tail(narrated, 5)
        detail = f"exit code {exit_code}\n{tail}"
        return Failure(
            category=FailureCategory.AGENT_EXIT_NONZERO,
            summary=f"Agent exited with code {exit_code}",
            detail=detail,
            fingerprint=fingerprint(FailureCategory.AGENT_EXIT_NONZERO, detail),
        )
    return None


def verification_failure(
    gate_output: str,
    *,
    exit_code: int,
    source: str = "Quality gate",
) -> Failure:
    """Structured ``VERIFICATION_FAILED`` failure from quality-gate or hook output."""

    lines = failure_lines(gate_output) or _tail(gate_output, _GATE_TAIL_LINES).splitlines()
    detail = "\n".join(lines) if lines else f"{source.lower()} exited with code {exit_code}"
    return Failure(
        category=FailureCategory.VERIFICATION_FAILED,
        summary=f"{source} failed (exit code {exit_code})",
        detail=detail,
        fingerprint=fingerprint(FailureCategory.VERIFICATION_FAILED, detail),
    )


def detect_completion(
    narrated: str,
    task_set: TaskSet,
    *,
    marker: str = DEFAULT_COMPLETION_MARKER,
) -> ExitSignal:
    """Either signal is sufficient: the literal marker, or every task completed."""

    signal = ExitSignal(
        marker_seen=bool(marker) and marker in narrated,
        all_tasks_completed=task_set.all_completed(),
    )
    if signal.marker_seen and not signal.all_tasks_completed:
        logger.warning(
            "Completion marker seen with %d/%d tasks completed",
            task_set.completed_count(),
            len(task_set.tasks),
        )
    return signal


def detect_api_limit(narrated: str) -> str | None:
    """Matched pattern when the agent reports its own usage limit."""

    haystack = narrated.lower()
    for pattern in _API_LIMIT_PATTERNS:
        if pattern.search(haystack):
            return pattern.pattern
    return None


def completed_task_ids(narrated: str) -> list[str]:
    ids: list[str] = []
    for match in _TASK_COMPLETE_RE.finditer(narrated):
        task_id = match.group("id")
        if task_id not in ids:
            ids.append(task_id)
    return ids


def extract_learnings(narrated: str) -> str:
    return "\n".join(match.group("body").strip() for match in _LEARNINGS_RE.finditer(narrated))


def build_feedback(failure: Failure, *, repeat_count: int = 1) -> str:
    """Text injected into the next prompt so the next attempt sees the mistake."""

    header = f"## Previous iteration failed: {failure.category.value.upper()}"
    lines = [header, "", failure.summary]
    if repeat_count > 1:
        lines.append(f"This exact failure has now happened {repeat_count} times in a row.")
    lines.extend(["", "```", failure.detail[:_FEEDBACK_MAX_CHARS], "```"])
    lines.append("Fix this before doing anything else.")
    return "\n".join(lines)


def _tail(text: str, count: int) -> str:
    lines = [line for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-count:])
