"""Backend interface for one agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to run the agent once."""

    prompt: str
    prompt_file: Path
    transcript_path: Path
    workdir: Path
    model: str
    command_template: str
    timeout_seconds: float
    tools: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome; stdout and stderr are merged into the transcript."""

    exit_code: int
    timed_out: bool
    interrupted: bool
    transcript_path: Path
    duration_seconds: float

    def read_transcript(self) -> str:
        if not self.transcript_path.is_file():
            return ""
        return self.transcript_path.read_text("utf-8", errors="replace")


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run the agent once and return execution metadata."""
