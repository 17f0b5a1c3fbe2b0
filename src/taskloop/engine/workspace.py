"""Feature workspace layout and read-only git queries."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SPEC_FILE = "spec.md"
TASKS_FILE = "tasks.json"
PROGRESS_FILE = "progress.txt"
BREAKER_FILE = "circuit_breaker.json"
RATE_LIMITER_FILE = "rate_limiter.json"
ITERATIONS_DIR = "iterations"
ARCHIVE_DIR = "archive"
LOCKS_DIR = "locks"
MEMORY_FILE = "memories.md"

_GIT_TIMEOUT_SECONDS = 10


@dataclass(slots=True)
class FeatureWorkspace:
    """Deterministic per-feature directory layout under the state root."""

    root_dir: Path
    feature: str

    @property
    def feature_dir(self) -> Path:
        return self.root_dir / self.feature

    @property
    def spec_path(self) -> Path:
        return self.feature_dir / SPEC_FILE

    @property
    def tasks_path(self) -> Path:
        return self.feature_dir / TASKS_FILE

    @property
    def progress_path(self) -> Path:
        return self.feature_dir / PROGRESS_FILE

    @property
    def breaker_path(self) -> Path:
        return self.feature_dir / BREAKER_FILE

    @property
    def memory_path(self) -> Path:
        return self.feature_dir / MEMORY_FILE

    @property
    def project_memory_path(self) -> Path:
        return self.root_dir / MEMORY_FILE

    @property
    def archive_root(self) -> Path:
        return self.root_dir / ARCHIVE_DIR

    @property
    def rate_limiter_path(self) -> Path:
        return self.root_dir / RATE_LIMITER_FILE

    @property
    def lock_path(self) -> Path:
        return self.root_dir / LOCKS_DIR / f"{self.feature}.lock"

    def iteration_dir(self, iteration: int) -> Path:
        path = self.feature_dir / ITERATIONS_DIR / f"{iteration:04d}"
        path.mkdir(parents=True, exist_ok=True)
        return path


def feature_name_from_branch(branch: str) -> str:
    """``feature/user-auth`` becomes ``feature-user-auth``."""

    return branch.strip().replace("/", "-")


class GitReader:
    """Reads branch and commit state; never mutates the repository."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def _git(self, *args: str) -> str | None:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                timeout=_GIT_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.debug("git %s failed: %s", " ".join(args), error)
            return None
        if completed.returncode != 0:
            logger.debug(
                "git %s exited %d: %s",
                " ".join(args),
                completed.returncode,
                completed.stderr,
            )
            return None
        return completed.stdout.strip()

    def current_branch(self) -> str | None:
        """Current branch name; ``None`` outside a repo or on a detached HEAD."""

        branch = self._git("branch", "--show-current")
        return branch or None

    def head_commit(self) -> str | None:
        commit = self._git("rev-parse", "--short", "HEAD")
        return commit or None

    def changed_files(self, since_commit: str | None) -> list[str]:
        """Files touched by commits after ``since_commit`` plus uncommitted edits."""

        names: list[str] = []
        if since_commit:
            committed = self._git("diff", "--name-only", f"{since_commit}..HEAD")
            if committed:
                names.extend(committed.splitlines())
        pending = self._git("status", "--porcelain")
        if pending:
            for line in pending.splitlines():
                path = line[3:].strip()
                if " -> " in path:
                    path = path.split(" -> ", 1)[1]
                names.append(path)
        deduped: list[str] = []
        for name in names:
            if name and name not in deduped:
                deduped.append(name)
        return deduped
