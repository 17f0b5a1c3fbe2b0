"""Fixed-window cap on agent invocations.

This is advisory backpressure against the agent's own usage limits. The window
starts at the first call after a reset, not on wall-clock hour boundaries.

The state file is shared by every feature under one state root, so each
acquisition reloads it under a file lock before counting.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from filelock import FileLock, Timeout

from taskloop.engine.errors import RateLimitExceeded, SchemaError, StateIOError
from taskloop.engine.store import load_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 3600
_WAIT_REPORT_INTERVAL_SECONDS = 60.0
_WAIT_TICK_SECONDS = 0.5
_LOCK_TIMEOUT_SECONDS = 10.0


class OnLimit(str, Enum):
    WAIT = "wait"
    ABORT = "abort"


@dataclass(slots=True)
class RateLimiterState:
    call_count: int = 0
    window_start: float = 0.0


class RateLimiter:
    """Persisted call counter with blocking or aborting behaviour at the limit."""

    def __init__(  # noqa: PLR0913
        self,
        state_path: Path,
        *,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        on_limit: OnLimit = OnLimit.WAIT,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if limit <= 0:
            raise ValueError("Rate limit must be a positive integer.")
        if window_seconds <= 0:
            raise ValueError("Rate limit window must be positive.")
        self.state_path = state_path
        self.limit = limit
        self.window_seconds = window_seconds
        self.on_limit = on_limit
        self._clock = clock
        self._sleep = sleep
        self._lock = FileLock(str(state_path.with_name(f"{state_path.name}.lock")))
        self.state = self._load()

    def _load(self) -> RateLimiterState:
        if not self.state_path.is_file():
            return RateLimiterState(call_count=0, window_start=self._clock())
        try:
            raw = load_json(self.state_path)
            return RateLimiterState(
                call_count=int(raw.get("callCount", 0)),
                window_start=float(raw.get("windowStart", self._clock())),
            )
        except (SchemaError, TypeError, ValueError) as error:
            raise SchemaError(
                f"{self.state_path.name} is unreadable: {error}",
                remediation=f"Delete {self.state_path} to reset the rate limiter.",
                check="rate_limiter",
            ) from error

    def save(self) -> None:
        write_json(
            self.state_path,
            {"callCount": self.state.call_count, "windowStart": self.state.window_start},
        )

    def _rolled(self, state: RateLimiterState) -> RateLimiterState:
        now = self._clock()
        if now - state.window_start >= self.window_seconds:
            return RateLimiterState(call_count=0, window_start=now)
        return state

    def remaining(self) -> int:
        """Calls left in the current window; reads the state file without writing it."""

        self.state = self._rolled(self._load())
        return max(0, self.limit - self.state.call_count)

    def seconds_until_reset(self) -> float:
        return max(0.0, self.state.window_start + self.window_seconds - self._clock())

    def try_acquire(self) -> bool:
        """Record one call if budget remains; never blocks."""

        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock.acquire(timeout=_LOCK_TIMEOUT_SECONDS):
                loaded = self._load()
                self.state = self._rolled(loaded)
                if self.state is not loaded and loaded.call_count:
                    logger.info("Rate limit window elapsed; resetting call counter")
                if self.state.call_count >= self.limit:
                    return False
                self.state.call_count += 1
                self.save()
                return True
        except Timeout as error:
            raise StateIOError(
                f"Could not lock {self.state_path} within {_LOCK_TIMEOUT_SECONDS:.0f}s.",
                remediation="Another run is holding the rate limiter lock; retry shortly.",
            ) from error

    def acquire(self, *, stop_requested: Callable[[], bool] | None = None) -> bool:
        """Record one call, waiting for the window to reset when the budget is used up.

        Returns ``False`` only when ``stop_requested`` fires during the wait.
        Raises ``RateLimitExceeded`` in abort mode.
        """

        while not self.try_acquire():
            wait_seconds = self.seconds_until_reset()
            if self.on_limit is OnLimit.ABORT:
                raise RateLimitExceeded(
                    f"Rate limit of {self.limit} calls per {int(self.window_seconds)}s reached.",
                    retry_after_seconds=wait_seconds,
                    remediation=(
                        f"Retry in {int(wait_seconds)}s, raise TASKLOOP_RATE_LIMIT, "
                        "or set TASKLOOP_ON_RATE_LIMIT=wait."
                    ),
                )
            logger.warning(
                "Rate limit reached (%d/%d). Waiting %ds for the window to reset.",
                self.state.call_count,
                self.limit,
                int(wait_seconds),
            )
            if not self._wait(wait_seconds, stop_requested=stop_requested):
                return False
        return True

    def _wait(self, seconds: float, *, stop_requested: Callable[[], bool] | None) -> bool:
        deadline = self._clock() + seconds
        next_report = self._clock() + _WAIT_REPORT_INTERVAL_SECONDS
        while True:
            if stop_requested is not None and stop_requested():
                return False
            now = self._clock()
            if now >= deadline:
                return True
            if now >= next_report:
                logger.info("Rate limit resets in %ds", int(deadline - now))
                next_report = now + _WAIT_REPORT_INTERVAL_SECONDS
            self._sleep(min(_WAIT_TICK_SECONDS, max(0.0, deadline - now)))

    def status_line(self) -> str:
        remaining = self.remaining()
        return (
            f"Rate limiter: {self.state.call_count}/{self.limit} calls used "
            f"({remaining} remaining, window resets in {int(self.seconds_until_reset())}s)"
        )
