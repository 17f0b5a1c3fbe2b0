from __future__ import annotations

import json

import allure

from taskloop.engine.exit_detector import (
    DEFAULT_COMPLETION_MARKER,
    BlockKind,
    build_feedback,
    completed_task_ids,
    detect_api_limit,
    detect_completion,
    extract_failure,
    extract_learnings,
    fingerprint,
    narrated_text,
    parse_transcript,
    verification_failure,
)
from taskloop.engine.models import FailureCategory, Task, TaskSet

pytestmark = [
    allure.epic("Iteration Engine"),
    allure.feature("Exit Detection"),
]


def _task_set(*completed: bool) -> TaskSet:
    return TaskSet(
        description="demo",
        created_at="2026-10-17",
        tasks=[
            Task(id=f"T-{index}", title=f"Task {index}", completed=done)
            for index, done in enumerate(completed, start=1)
        ],
    )


def test_completion_without_marker_when_every_task_is_done() -> None:
    signal = detect_completion("All done here.", _task_set(True, True))

    assert signal.complete
    assert not signal.marker_seen
    assert signal.all_tasks_completed


def test_marker_alone_is_sufficient() -> None:
    signal = detect_completion(f"Wrapping up {DEFAULT_COMPLETION_MARKER}", _task_set(True, False))

    assert signal.complete
    assert signal.marker_seen
    assert not signal.all_tasks_completed


def test_no_completion_without_marker_or_finished_tasks() -> None:
    assert not detect_completion("Still working.", _task_set(True, False)).complete
    assert not detect_completion(DEFAULT_COMPLETION_MARKER, _task_set(False), marker="").complete


def test_echoed_blocks_are_not_classified_as_failures() -> None:
    transcript = "\n".join(
        [
            "I read the previous log.",
            "<tool-result>",
            "Error: connection refused",
            "</tool-result>",
            "> Traceback (most recent call last)",
            "```",
            "raise ValueError('boom')  # AssertionError example",
            "```",
            "Everything passes now.",
        ],
    )

    blocks = parse_transcript(transcript)
    narrated = narrated_text(transcript)

    assert [block.kind for block in blocks] == [
        BlockKind.NARRATED,
        BlockKind.ECHOED,
        BlockKind.NARRATED,
    ]
    assert "connection refused" not in narrated
    assert extract_failure(narrated, exit_code=0) is None


def test_stream_json_events_split_into_narrated_and_echoed() -> None:
    lines = [
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Implemented <task-complete>T-1</task-complete>"},
                    {"type": "tool_use", "name": "Bash"},
                ],
            },
        },
        {"type": "user", "message": {"content": [{"type": "tool_result", "content": "Error: x"}]}},
        {"type": "system", "subtype": "init"},
        {"type": "result", "result": f"Done {DEFAULT_COMPLETION_MARKER}"},
    ]
    transcript = "\n".join(json.dumps(line) for line in lines)

    narrated = narrated_text(transcript)

    assert "Implemented" in narrated
    assert DEFAULT_COMPLETION_MARKER in narrated
    assert "Error: x" not in narrated
    assert "init" not in narrated
    assert completed_task_ids(narrated) == ["T-1"]


def test_fingerprint_ignores_timestamps_paths_and_whitespace() -> None:
    first = extract_failure(
        "Error: connection refused at 2026-10-17T10:00:01Z in /tmp/run-1/app.py:42",
        exit_code=1,
    )
    second = extract_failure(
        "  Error:   connection refused at 2026-10-18T23:59:59Z in /var/tmp/run-2/app.py:57",
        exit_code=1,
    )

    assert first is not None
    assert second is not None
    assert first.category is FailureCategory.AGENT_ERROR
    assert first.fingerprint == second.fingerprint
    assert fingerprint(FailureCategory.AGENT_ERROR, "Error: disk full") != first.fingerprint


def test_nonzero_exit_without_error_lines_is_its_own_category() -> None:
    failure = extract_failure("Stopped halfway.", exit_code=3)

    assert failure is not None
    assert failure.category is FailureCategory.AGENT_EXIT_NONZERO
    assert failure.summary == "Agent exited with code 3"


def test_verification_failure_uses_failing_lines_of_gate_output() -> None:
    output = "collected 4 items\nFAILED tests/test_login.py::test_token - AssertionError\n1 failed"

    failure = verification_failure(output, exit_code=1)

    assert failure.category is FailureCategory.VERIFICATION_FAILED
    assert "FAILED tests/test_login.py" in failure.detail
    assert failure.fingerprint == verification_failure(output, exit_code=1).fingerprint


def test_api_limit_phrases_are_detected() -> None:
    assert detect_api_limit("Claude usage limit reached. Try again at 5pm.") is not None
    assert detect_api_limit("429 Too Many Requests") is not None
    assert detect_api_limit("I added a rate limiter to the login endpoint.") is None


def test_learnings_and_feedback() -> None:
    narrated = "<learnings>\nuse bcrypt\n</learnings>\nmore\n<learnings>sessions expire</learnings>"
    assert extract_learnings(narrated) == "use bcrypt\nsessions expire"

    failure = verification_failure("FAILED test_a", exit_code=1)
    feedback = build_feedback(failure, repeat_count=3)

    assert feedback.startswith("## Previous iteration failed: VERIFICATION_FAILED")
    assert "3 times in a row" in feedback
    assert "FAILED test_a" in feedback


def test_error_lines_behind_log_prefixes_are_detected() -> None:
    bracketed = extract_failure("[12:00:01] ERROR: build failed in app.py", exit_code=0)
    stamped = extract_failure("2026-10-17T13:45:09Z ERROR: build failed in app.py", exit_code=0)
    tagged = extract_failure("[build] [12:00:01.250] fatal: not a git repository", exit_code=0)

    assert bracketed is not None
    assert stamped is not None
    assert tagged is not None
    assert bracketed.category is FailureCategory.AGENT_ERROR
    assert bracketed.fingerprint == stamped.fingerprint
    assert extract_failure("no errors reported, build ok", exit_code=0) is None
