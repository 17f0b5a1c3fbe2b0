from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskloop.config import LoopSettings, PathSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch, tmp_path: Path) -> None:
    for name in ("TASKLOOP_MAX_ITERATIONS", "TASKLOOP_AGENT_COMMAND", "TASKLOOP_STATE_DIR"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env(project_dir=tmp_path)

    assert settings.loop.max_iterations == 20
    assert settings.loop.iteration_timeout_seconds == 900
    assert settings.loop.no_progress_threshold == 3
    assert settings.loop.same_error_threshold == 5
    assert settings.loop.on_rate_limit == "wait"
    assert settings.paths.state_root == tmp_path / ".taskloop"
    assert "{prompt}" in settings.agent.command_template
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKLOOP_PROJECT_DIR", str(tmp_path))
    monkeypatch.setenv("TASKLOOP_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("TASKLOOP_MAX_ITERATIONS", "7")
    monkeypatch.setenv("TASKLOOP_ON_RATE_LIMIT", " ABORT ")
    monkeypatch.setenv("TASKLOOP_ARCHIVE_ON_COMPLETE", "off")
    monkeypatch.setenv("TASKLOOP_PROTECTED_BRANCHES", "main, release ,")
    monkeypatch.setenv("TASKLOOP_QUALITY_COMMAND", "  make test  ")

    settings = Settings.from_env()

    assert settings.paths.project_dir == tmp_path
    assert settings.paths.state_root == tmp_path / "state"
    assert settings.loop.max_iterations == 7
    assert settings.loop.on_rate_limit == "abort"
    assert settings.loop.archive_on_complete is False
    assert settings.loop.protected_branches == ("main", "release")
    assert settings.quality.command == "make test"


def test_from_env_reads_tools_memory_and_hook_settings(monkeypatch) -> None:
    monkeypatch.setenv("TASKLOOP_DEFAULT_TOOLS", "Read, Edit,Bash(git log:*)")
    monkeypatch.setenv("TASKLOOP_MEMORY_TOKEN_BUDGET", "500")
    monkeypatch.setenv("TASKLOOP_HOOK_TIMEOUT_SECONDS", "45")

    settings = Settings.from_env()

    assert settings.agent.default_tools == ("Read", "Edit", "Bash(git log:*)")
    assert settings.loop.memory_token_budget == 500
    assert settings.loop.hook_timeout_seconds == 45


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("TASKLOOP_ARCHIVE_ON_COMPLETE", "maybe")

    with pytest.raises(ValueError, match="TASKLOOP_ARCHIVE_ON_COMPLETE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("loop", "message"),
    [
        (LoopSettings(max_iterations=0), "TASKLOOP_MAX_ITERATIONS"),
        (LoopSettings(same_error_threshold=-1), "TASKLOOP_SAME_ERROR_THRESHOLD"),
        (LoopSettings(on_rate_limit="sometimes"), "TASKLOOP_ON_RATE_LIMIT"),
        (LoopSettings(completion_marker="  "), "TASKLOOP_COMPLETION_MARKER"),
        (LoopSettings(memory_token_budget=-1), "TASKLOOP_MEMORY_TOKEN_BUDGET"),
        (LoopSettings(hook_timeout_seconds=0), "TASKLOOP_HOOK_TIMEOUT_SECONDS"),
    ],
)
def test_validate_rejects_unusable_loop_settings(loop: LoopSettings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(loop=loop).validate()


def test_validate_requires_prompt_placeholder() -> None:
    settings = Settings()
    settings.agent.command_template = "claude --model {model}"

    with pytest.raises(ValueError, match="TASKLOOP_AGENT_COMMAND"):
        settings.validate()


def test_absolute_state_dir_is_used_as_is(tmp_path: Path) -> None:
    paths = PathSettings(project_dir=Path("/project"), state_dir=tmp_path)

    assert paths.state_root == tmp_path
