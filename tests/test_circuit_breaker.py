from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from taskloop.engine.circuit_breaker import CircuitBreaker
from taskloop.engine.errors import CircuitBreakerTripped, SchemaError

pytestmark = [
    allure.epic("Iteration Engine"),
    allure.feature("Circuit Breaker"),
]

NOTHING = (False, False)
ONE_DONE = (True, False)


def test_trips_exactly_at_no_progress_threshold(tmp_path: Path) -> None:
    breaker = CircuitBreaker(tmp_path / "breaker.json", no_progress_threshold=3)

    first = breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="")
    second = breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="")
    assert not first.tripped
    assert not second.tripped
    breaker.check()

    third = breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="")

    assert third.tripped
    assert "no progress for 3" in (third.reason or "")
    with pytest.raises(CircuitBreakerTripped):
        breaker.check()


def test_progress_resets_no_progress_counter(tmp_path: Path) -> None:
    breaker = CircuitBreaker(tmp_path / "breaker.json", no_progress_threshold=3)
    breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="")
    breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="")

    decision = breaker.record_iteration(before=NOTHING, after=ONE_DONE, fingerprint="")

    assert decision.progressed
    assert breaker.state.no_progress_count == 0
    assert breaker.state.last_completion_vector == "true,false"


def test_same_error_trips_at_threshold_and_changes_reset_count(tmp_path: Path) -> None:
    breaker = CircuitBreaker(
        tmp_path / "breaker.json",
        no_progress_threshold=10,
        same_error_threshold=5,
    )
    for _ in range(3):
        breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="aaaa")
    breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="bbbb")
    assert breaker.state.same_error_count == 1

    decisions = [
        breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="bbbb")
        for _ in range(4)
    ]

    assert [decision.tripped for decision in decisions] == [False, False, False, True]
    assert "same error repeated 5" in (decisions[-1].reason or "")


def test_state_survives_reload_and_reset_clears_trip(tmp_path: Path) -> None:
    path = tmp_path / "breaker.json"
    breaker = CircuitBreaker(path, no_progress_threshold=1)
    breaker.record_iteration(before=NOTHING, after=NOTHING, fingerprint="cafe")

    reloaded = CircuitBreaker(path, no_progress_threshold=1)
    assert reloaded.tripped
    assert json.loads(path.read_text("utf-8"))["noProgressCount"] == 1

    reloaded.reset()

    assert not CircuitBreaker(path, no_progress_threshold=1).tripped
    assert reloaded.status_lines()[0] == "Circuit breaker: OK"


def test_rejects_non_positive_thresholds(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="positive"):
        CircuitBreaker(tmp_path / "breaker.json", no_progress_threshold=0)


@pytest.mark.parametrize("content", ["{", '{"sameErrorCount": [1]}'])
def test_unreadable_state_names_the_reset_command(tmp_path: Path, content: str) -> None:
    state_path = tmp_path / "breaker.json"
    state_path.write_text(content, "utf-8")

    with pytest.raises(SchemaError) as error:
        CircuitBreaker(state_path)

    assert error.value.check == "circuit_breaker"
    assert "taskloop reset-circuit" in error.value.remediation
