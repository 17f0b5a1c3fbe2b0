from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskloop.engine.errors import RateLimitExceeded, SchemaError
from taskloop.engine.rate_limiter import OnLimit, RateLimiter

pytestmark = [
    allure.epic("Iteration Engine"),
    allure.feature("Rate Limiter"),
]


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(tmp_path: Path, clock: FakeClock, **kwargs) -> RateLimiter:
    return RateLimiter(
        tmp_path / "rate.json",
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def test_allows_exactly_limit_calls_per_window(tmp_path: Path) -> None:
    clock = FakeClock()
    limiter = _limiter(tmp_path, clock, limit=3, window_seconds=60)

    assert [limiter.try_acquire() for _ in range(4)] == [True, True, True, False]
    assert limiter.remaining() == 0

    clock.now += 60

    assert limiter.remaining() == 3
    assert limiter.try_acquire()


def test_abort_mode_raises_with_retry_hint(tmp_path: Path) -> None:
    clock = FakeClock()
    limiter = _limiter(tmp_path, clock, limit=1, window_seconds=120, on_limit=OnLimit.ABORT)
    assert limiter.acquire()
    clock.now += 20

    with pytest.raises(RateLimitExceeded) as error:
        limiter.acquire()

    assert error.value.retry_after_seconds == pytest.approx(100)
    assert "TASKLOOP_RATE_LIMIT" in error.value.remediation


def test_wait_mode_sleeps_until_window_resets(tmp_path: Path) -> None:
    clock = FakeClock()
    limiter = _limiter(tmp_path, clock, limit=1, window_seconds=5, on_limit=OnLimit.WAIT)
    assert limiter.acquire()

    assert limiter.acquire()

    assert sum(clock.sleeps) == pytest.approx(5)
    assert limiter.state.call_count == 1


def test_wait_mode_returns_false_when_stop_requested(tmp_path: Path) -> None:
    clock = FakeClock()
    limiter = _limiter(tmp_path, clock, limit=1, window_seconds=300)
    limiter.acquire()

    assert limiter.acquire(stop_requested=lambda: len(clock.sleeps) >= 2) is False
    assert clock.now < 1_000.0 + 300


def test_counter_persists_between_instances(tmp_path: Path) -> None:
    clock = FakeClock()
    _limiter(tmp_path, clock, limit=2, window_seconds=60).try_acquire()

    reloaded = _limiter(tmp_path, clock, limit=2, window_seconds=60)

    assert reloaded.remaining() == 1
    assert "1/2 calls used" in reloaded.status_line()


def test_instances_sharing_a_state_file_count_each_others_calls(tmp_path: Path) -> None:
    clock = FakeClock()
    first = _limiter(tmp_path, clock, limit=2, window_seconds=60)
    second = _limiter(tmp_path, clock, limit=2, window_seconds=60)

    assert first.try_acquire()
    assert second.try_acquire()

    assert first.try_acquire() is False
    assert _limiter(tmp_path, clock, limit=2, window_seconds=60).remaining() == 0


def test_status_after_an_elapsed_window_leaves_the_state_file_alone(tmp_path: Path) -> None:
    clock = FakeClock()
    _limiter(tmp_path, clock, limit=3, window_seconds=60).try_acquire()
    state_path = tmp_path / "rate.json"
    before = state_path.read_bytes()
    clock.now += 120

    limiter = _limiter(tmp_path, clock, limit=3, window_seconds=60)

    assert limiter.remaining() == 3
    assert "0/3 calls used" in limiter.status_line()
    assert state_path.read_bytes() == before


@pytest.mark.parametrize("content", ["{not json", '{"callCount": "many"}'])
def test_corrupt_state_file_is_reported_with_a_fix(tmp_path: Path, content: str) -> None:
    (tmp_path / "rate.json").write_text(content, "utf-8")

    with pytest.raises(SchemaError) as error:
        _limiter(tmp_path, FakeClock(), limit=3, window_seconds=60)

    assert error.value.check == "rate_limiter"
    assert "Delete" in error.value.remediation
