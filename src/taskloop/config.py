"""Runtime configuration for the iteration loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.engine.controller import DEFAULT_COMMAND_TEMPLATE
from taskloop.engine.exit_detector import DEFAULT_COMPLETION_MARKER

DEFAULT_STATE_DIR = ".taskloop"
DEFAULT_PROTECTED_BRANCHES = ("main", "master", "develop")
ON_RATE_LIMIT_CHOICES = ("wait", "abort")


@dataclass(slots=True)
class PathSettings:
    """Where the project and the loop state live."""

    project_dir: Path = Path(".")
    state_dir: Path = Path(DEFAULT_STATE_DIR)

    @property
    def state_root(self) -> Path:
        if self.state_dir.is_absolute():
            return self.state_dir
        return self.project_dir / self.state_dir


@dataclass(slots=True)
class LoopSettings:
    """Iteration budget, stop conditions and backpressure."""

    max_iterations: int = 20
    iteration_timeout_seconds: float = 900.0
    no_progress_threshold: int = 3
    same_error_threshold: int = 5
    rate_limit: int = 100
    rate_limit_window_seconds: float = 3_600.0
    on_rate_limit: str = "wait"
    pause_seconds: float = 0.0
    graceful_shutdown_seconds: float = 5.0
    progress_tail_records: int = 5
    memory_token_budget: int = 2_000
    hook_timeout_seconds: float = 300.0
    archive_on_complete: bool = True
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    protected_branches: tuple[str, ...] = DEFAULT_PROTECTED_BRANCHES


@dataclass(slots=True)
class AgentSettings:
    """External agent invocation."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    default_model: str = "sonnet"
    default_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class QualitySettings:
    """Post-iteration verification command; empty disables the gate."""

    command: str = ""
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> Settings:
        """Load settings from ``TASKLOOP_*`` environment variables."""

        return cls(
            paths=PathSettings(
                project_dir=project_dir or Path(os.getenv("TASKLOOP_PROJECT_DIR", ".")),
                state_dir=Path(os.getenv("TASKLOOP_STATE_DIR", DEFAULT_STATE_DIR)),
            ),
            loop=LoopSettings(
                max_iterations=int(os.getenv("TASKLOOP_MAX_ITERATIONS", "20")),
                iteration_timeout_seconds=float(
                    os.getenv("TASKLOOP_ITERATION_TIMEOUT_SECONDS", "900"),
                ),
                no_progress_threshold=int(os.getenv("TASKLOOP_NO_PROGRESS_THRESHOLD", "3")),
                same_error_threshold=int(os.getenv("TASKLOOP_SAME_ERROR_THRESHOLD", "5")),
                rate_limit=int(os.getenv("TASKLOOP_RATE_LIMIT", "100")),
                rate_limit_window_seconds=float(
                    os.getenv("TASKLOOP_RATE_LIMIT_WINDOW_SECONDS", "3600"),
                ),
                on_rate_limit=os.getenv("TASKLOOP_ON_RATE_LIMIT", "wait").strip().lower(),
                pause_seconds=float(os.getenv("TASKLOOP_PAUSE_SECONDS", "0")),
                graceful_shutdown_seconds=float(
                    os.getenv("TASKLOOP_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                progress_tail_records=int(os.getenv("TASKLOOP_PROGRESS_TAIL_RECORDS", "5")),
                memory_token_budget=int(os.getenv("TASKLOOP_MEMORY_TOKEN_BUDGET", "2000")),
                hook_timeout_seconds=float(os.getenv("TASKLOOP_HOOK_TIMEOUT_SECONDS", "300")),
                archive_on_complete=_env_bool("TASKLOOP_ARCHIVE_ON_COMPLETE", default=True),
                completion_marker=os.getenv(
                    "TASKLOOP_COMPLETION_MARKER",
                    DEFAULT_COMPLETION_MARKER,
                ),
                protected_branches=_env_csv(
                    "TASKLOOP_PROTECTED_BRANCHES",
                    default=DEFAULT_PROTECTED_BRANCHES,
                ),
            ),
            agent=AgentSettings(
                command_template=os.getenv("TASKLOOP_AGENT_COMMAND", DEFAULT_COMMAND_TEMPLATE),
                default_model=os.getenv("TASKLOOP_MODEL", "sonnet"),
                default_tools=_env_csv("TASKLOOP_DEFAULT_TOOLS", default=()),
            ),
            quality=QualitySettings(
                command=os.getenv("TASKLOOP_QUALITY_COMMAND", "").strip(),
                timeout_seconds=float(os.getenv("TASKLOOP_QUALITY_TIMEOUT_SECONDS", "600")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot run with."""

        loop = self.loop
        if loop.max_iterations <= 0:
            raise ValueError("TASKLOOP_MAX_ITERATIONS must be a positive integer.")
        if loop.iteration_timeout_seconds <= 0:
            raise ValueError("TASKLOOP_ITERATION_TIMEOUT_SECONDS must be > 0.")
        if loop.no_progress_threshold <= 0:
            raise ValueError("TASKLOOP_NO_PROGRESS_THRESHOLD must be a positive integer.")
        if loop.same_error_threshold <= 0:
            raise ValueError("TASKLOOP_SAME_ERROR_THRESHOLD must be a positive integer.")
        if loop.rate_limit <= 0:
            raise ValueError("TASKLOOP_RATE_LIMIT must be a positive integer.")
        if loop.rate_limit_window_seconds <= 0:
            raise ValueError("TASKLOOP_RATE_LIMIT_WINDOW_SECONDS must be > 0.")
        if loop.on_rate_limit not in ON_RATE_LIMIT_CHOICES:
            raise ValueError(
                f"TASKLOOP_ON_RATE_LIMIT must be one of {', '.join(ON_RATE_LIMIT_CHOICES)}; "
                f"got {loop.on_rate_limit!r}.",
            )
        if loop.pause_seconds < 0:
            raise ValueError("TASKLOOP_PAUSE_SECONDS must be >= 0.")
        if loop.memory_token_budget < 0:
            raise ValueError("TASKLOOP_MEMORY_TOKEN_BUDGET must be >= 0.")
        if loop.hook_timeout_seconds <= 0:
            raise ValueError("TASKLOOP_HOOK_TIMEOUT_SECONDS must be > 0.")
        if not loop.completion_marker.strip():
            raise ValueError("TASKLOOP_COMPLETION_MARKER must not be empty.")
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError("TASKLOOP_AGENT_COMMAND must include {prompt} or {prompt_file}.")
        if self.quality.timeout_seconds <= 0:
            raise ValueError("TASKLOOP_QUALITY_TIMEOUT_SECONDS must be > 0.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
