"""Stagnation and repeated-failure detection across iterations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from taskloop.engine.errors import CircuitBreakerTripped, SchemaError
from taskloop.engine.store import load_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_NO_PROGRESS_THRESHOLD = 3
DEFAULT_SAME_ERROR_THRESHOLD = 5

RESET_REMEDIATION = (
    "Inspect progress.txt and the last iteration transcripts, fix the cause, "
    "then run 'taskloop reset-circuit'."
)


@dataclass(slots=True)
class CircuitBreakerState:
    no_progress_count: int = 0
    same_error_count: int = 0
    last_error_fingerprint: str = ""
    last_completion_vector: str = ""
    tripped_reason: str | None = None


@dataclass(slots=True)
class BreakerDecision:
    progressed: bool
    tripped: bool
    reason: str | None
    state: CircuitBreakerState


def serialize_completion_vector(vector: tuple[bool, ...]) -> str:
    return ",".join("true" if item else "false" for item in vector)


class CircuitBreaker:
    """Counts no-progress and same-error iterations; state is persisted per feature."""

    def __init__(
        self,
        state_path: Path,
        *,
        no_progress_threshold: int = DEFAULT_NO_PROGRESS_THRESHOLD,
        same_error_threshold: int = DEFAULT_SAME_ERROR_THRESHOLD,
    ) -> None:
        if no_progress_threshold <= 0 or same_error_threshold <= 0:
            raise ValueError("Circuit breaker thresholds must be positive.")
        self.state_path = state_path
        self.no_progress_threshold = no_progress_threshold
        self.same_error_threshold = same_error_threshold
        self.state = self._load()

    def _load(self) -> CircuitBreakerState:
        if not self.state_path.is_file():
            return CircuitBreakerState()
        try:
            raw = load_json(self.state_path)
            return CircuitBreakerState(
                no_progress_count=int(raw.get("noProgressCount", 0)),
                same_error_count=int(raw.get("sameErrorCount", 0)),
                last_error_fingerprint=str(raw.get("lastErrorFingerprint", "")),
                last_completion_vector=str(raw.get("lastCompletionVector", "")),
                tripped_reason=raw.get("trippedReason"),
            )
        except (SchemaError, TypeError, ValueError) as error:
            raise SchemaError(
                f"{self.state_path.name} is unreadable: {error}",
                remediation="Run 'taskloop reset-circuit' to start the counters over.",
                check="circuit_breaker",
            ) from error

    def save(self) -> None:
        write_json(
            self.state_path,
            {
                "noProgressCount": self.state.no_progress_count,
                "sameErrorCount": self.state.same_error_count,
                "lastErrorFingerprint": self.state.last_error_fingerprint,
                "lastCompletionVector": self.state.last_completion_vector,
                "trippedReason": self.state.tripped_reason,
                "thresholds": {
                    "noProgress": self.no_progress_threshold,
                    "sameError": self.same_error_threshold,
                },
            },
        )

    @property
    def tripped(self) -> bool:
        return self._trip_reason() is not None

    def check(self) -> None:
        """Raise if the breaker is open (including a trip left by an earlier run)."""

        reason = self._trip_reason()
        if reason is not None:
            raise CircuitBreakerTripped(
                f"Circuit breaker is open: {reason}",
                remediation=RESET_REMEDIATION,
            )

    def record_iteration(
        self,
        *,
        before: tuple[bool, ...],
        after: tuple[bool, ...],
        fingerprint: str,
    ) -> BreakerDecision:
        state = self.state
        progressed = before != after
        if progressed:
            state.no_progress_count = 0
        else:
            state.no_progress_count += 1

        if fingerprint and fingerprint == state.last_error_fingerprint:
            state.same_error_count += 1
        elif fingerprint:
            # First sighting of this fingerprint counts as one occurrence.
            state.same_error_count = 1
            state.last_error_fingerprint = fingerprint
        else:
            state.same_error_count = 0
            state.last_error_fingerprint = ""

        state.last_completion_vector = serialize_completion_vector(after)
        reason = self._trip_reason()
        if reason is not None and state.tripped_reason is None:
            state.tripped_reason = reason
            logger.error("Circuit breaker tripped: %s", reason)
        else:
            logger.debug(
                "Breaker counters: no_progress=%d/%d same_error=%d/%d",
                state.no_progress_count,
                self.no_progress_threshold,
                state.same_error_count,
                self.same_error_threshold,
            )
        self.save()
        return BreakerDecision(
            progressed=progressed,
            tripped=reason is not None,
            reason=reason,
            state=state,
        )

    def reset(self) -> None:
        """Clear counters and trip reason; the remembered completion vector stays."""

        self.state.no_progress_count = 0
        self.state.same_error_count = 0
        self.state.last_error_fingerprint = ""
        self.state.tripped_reason = None
        self.save()
        logger.info("Circuit breaker reset")

    def _trip_reason(self) -> str | None:
        state = self.state
        if state.no_progress_count >= self.no_progress_threshold:
            return (
                f"no progress for {state.no_progress_count} consecutive iteration(s) "
                f"(threshold {self.no_progress_threshold})"
            )
        if state.same_error_count >= self.same_error_threshold:
            return (
                f"same error repeated {state.same_error_count} time(s) "
                f"(threshold {self.same_error_threshold}, "
                f"fingerprint {state.last_error_fingerprint})"
            )
        return state.tripped_reason

    def status_lines(self) -> list[str]:
        state = self.state
        overall = "TRIPPED" if self.tripped else "OK"
        lines = [
            f"Circuit breaker: {overall}",
            f"  no_progress: {state.no_progress_count}/{self.no_progress_threshold}",
            f"  same_error: {state.same_error_count}/{self.same_error_threshold}",
        ]
        if state.last_error_fingerprint:
            lines.append(f"  last_error_fingerprint: {state.last_error_fingerprint}")
        if state.tripped_reason:
            lines.append(f"  tripped_reason: {state.tripped_reason}")
        return lines
