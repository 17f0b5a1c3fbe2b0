"""Fatal and loop-level error kinds with operator remediation hints."""

from __future__ import annotations


class TaskloopError(Exception):
    """Base error: names the failed check, the reason, and how to fix it."""

    default_check = "taskloop"

    def __init__(
        self,
        message: str,
        *,
        remediation: str = "",
        check: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation
        self.check = check or self.default_check

    def render(self) -> list[str]:
        """Render operator-facing lines."""

        lines = [f"[{self.check}] {self.message}"]
        if self.remediation:
            lines.append(f"  Fix: {self.remediation}")
        return lines


class SchemaError(TaskloopError):
    """Persisted TaskSet does not match the expected structure."""

    default_check = "task_set_schema"


class SyncError(TaskloopError):
    """TaskSet projection differs from the Specification projection."""

    default_check = "sync"


class OrphanCompletedError(TaskloopError):
    """Completed task would be discarded because the Specification dropped it."""

    default_check = "orphans"


class PreflightError(TaskloopError):
    """Generic blocking preflight finding (missing artifacts, unknown branch)."""

    default_check = "preflight"


class CircuitBreakerTripped(TaskloopError):
    """Breaker is open; the loop refuses to run until reset."""

    default_check = "circuit_breaker"


class RateLimitExceeded(TaskloopError):
    """Invocation budget for the current window is used up."""

    default_check = "rate_limiter"

    def __init__(self, message: str, *, retry_after_seconds: float, remediation: str = "") -> None:
        super().__init__(message, remediation=remediation)
        self.retry_after_seconds = retry_after_seconds


class LockContention(TaskloopError):
    """Another run already holds the lease for this workspace."""

    default_check = "lease"


class StateIOError(TaskloopError):
    """Persisted state could not be read or written after one retry."""

    default_check = "state_io"


class ArchiveError(TaskloopError):
    """Archive copy could not be created or verified."""

    default_check = "archive"
