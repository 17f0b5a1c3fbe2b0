from __future__ import annotations

import json
import shlex
from pathlib import Path

import allure
import pytest

from taskloop.engine.hooks import (
    VERIFICATION_FAILED_EXIT_CODE,
    HookContext,
    HookPoint,
    HookRunner,
)

pytestmark = [
    allure.epic("Iteration Engine"),
    allure.feature("Lifecycle Hooks"),
]


@pytest.fixture()
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    feature_dir = tmp_path / ".taskloop" / "feature-user-auth"
    feature_dir.mkdir(parents=True)
    return feature_dir, tmp_path / ".taskloop"


def _install(directory: Path, point: HookPoint, body: str) -> Path:
    hooks_dir = directory / "hooks"
    hooks_dir.mkdir(parents=True, exist_ok=True)
    script = hooks_dir / f"{point.value}.sh"
    script.write_text(body, "utf-8")
    return script


def _runner(dirs: tuple[Path, Path], **kwargs) -> HookRunner:
    feature_dir, state_root = dirs
    return HookRunner(
        feature_dir=feature_dir,
        state_root=state_root,
        workdir=state_root.parent,
        **kwargs,
    )


def test_feature_hook_takes_precedence_over_project_hook(dirs: tuple[Path, Path]) -> None:
    feature_dir, state_root = dirs
    project_script = _install(state_root, HookPoint.PRE_RUN, "echo project\n")
    runner = _runner(dirs)

    assert runner.find(HookPoint.PRE_RUN) == project_script

    feature_script = _install(feature_dir, HookPoint.PRE_RUN, "echo feature\n")

    assert runner.find(HookPoint.PRE_RUN) == feature_script
    result = runner.run(HookPoint.PRE_RUN, HookContext(feature_dir=feature_dir))
    assert result is not None
    assert result.passed
    assert result.output.strip() == "feature"


def test_missing_hook_is_skipped(dirs: tuple[Path, Path]) -> None:
    feature_dir, _ = dirs

    assert _runner(dirs).run(HookPoint.ON_ERROR, HookContext(feature_dir=feature_dir)) is None


def test_hook_receives_context_file_and_environment(
    dirs: tuple[Path, Path],
    tmp_path: Path,
) -> None:
    feature_dir, _ = dirs
    copy = shlex.quote(str(tmp_path / "context.json"))
    _install(
        feature_dir,
        HookPoint.POST_ITERATION,
        f'cp "$1" {copy}\necho "$TASKLOOP_HOOK_POINT/$TASKLOOP_ITERATION/$TASKLOOP_TASK_ID"\n',
    )
    context = HookContext(
        feature_dir=feature_dir,
        iteration=3,
        task_id="STORY-002",
        transcript_path=feature_dir / "iterations" / "0003" / "transcript.log",
    )

    result = _runner(dirs).run(HookPoint.POST_ITERATION, context)

    assert result is not None
    assert result.output.strip() == "post_iteration/3/STORY-002"
    payload = json.loads((tmp_path / "context.json").read_text("utf-8"))
    assert payload["hook"] == "post_iteration"
    assert payload["iteration"] == 3
    assert payload["taskId"] == "STORY-002"
    assert payload["transcriptFile"].endswith("transcript.log")
    assert payload["featureDir"] == str(feature_dir)
    assert payload["timestamp"]


def test_verification_exit_code_is_flagged(dirs: tuple[Path, Path]) -> None:
    feature_dir, _ = dirs
    _install(
        feature_dir,
        HookPoint.POST_ITERATION,
        f"echo 'screenshot differs'\nexit {VERIFICATION_FAILED_EXIT_CODE}\n",
    )

    result = _runner(dirs).run(HookPoint.POST_ITERATION, HookContext(feature_dir=feature_dir))

    assert result is not None
    assert result.verification_failed
    assert not result.passed
    assert "screenshot differs" in result.output


def test_other_failures_are_not_verification_failures(dirs: tuple[Path, Path]) -> None:
    feature_dir, _ = dirs
    _install(feature_dir, HookPoint.PRE_ITERATION, "exit 3\n")

    result = _runner(dirs).run(HookPoint.PRE_ITERATION, HookContext(feature_dir=feature_dir))

    assert result is not None
    assert result.exit_code == 3
    assert not result.verification_failed


def test_hook_is_killed_after_its_timeout(dirs: tuple[Path, Path]) -> None:
    feature_dir, _ = dirs
    _install(feature_dir, HookPoint.ON_COMPLETION, "sleep 30\n")

    result = _runner(dirs, timeout_seconds=0.5).run(
        HookPoint.ON_COMPLETION,
        HookContext(feature_dir=feature_dir),
    )

    assert result is not None
    assert result.timed_out
    assert not result.passed
    assert "timed out" in result.output
