from __future__ import annotations

import shlex
import sys
import time
from pathlib import Path

import allure
import pytest

from taskloop.engine.backend import BackendRunError, BackendRunRequest, CliAgentBackend
from taskloop.engine.backend.cli_backend import (
    INTERRUPT_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    _build_run_args,
)
from taskloop.engine.workspace import FeatureWorkspace

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Command Rendering"),
]

needs_procfs = pytest.mark.skipif(
    not Path("/proc/self/stat").exists(),
    reason="process state is read from /proc",
)

_STUBBORN_CHILD = """\
import os, signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
with open(sys.argv[1] + ".tmp", "w") as handle:
    handle.write(str(os.getpid()))
os.replace(sys.argv[1] + ".tmp", sys.argv[1])
time.sleep(60)
"""


def _request(
    tmp_path: Path,
    workspace: FeatureWorkspace,
    command_template: str,
    **overrides,
) -> BackendRunRequest:
    values = {
        "prompt": "Implement STORY-001",
        "prompt_file": tmp_path / "iteration" / "prompt.md",
        "transcript_path": tmp_path / "iteration" / "transcript.log",
        "workdir": tmp_path,
        "model": "sonnet",
        "command_template": command_template,
        "timeout_seconds": 30.0,
        "env": {"TASKLOOP_FEATURE_DIR": str(workspace.feature_dir), "TASKLOOP_ITERATION": "1"},
    }
    values.update(overrides)
    return BackendRunRequest(**values)


def _stubborn_agent(tmp_path: Path) -> tuple[str, Path]:
    """Shell agent whose background child ignores SIGTERM and outlives the shell."""

    child = tmp_path / "stubborn_child.py"
    child.write_text(_STUBBORN_CHILD, "utf-8")
    pid_file = tmp_path / "child.pid"
    script = tmp_path / "agent.sh"
    script.write_text(
        f"{shlex.quote(sys.executable)} {shlex.quote(str(child))} "
        f"{shlex.quote(str(pid_file))} &\nsleep 60\n",
        "utf-8",
    )
    return f"sh {shlex.quote(str(script))} {{prompt_file}}", pid_file


def _running(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text("utf-8")
    except OSError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] not in {"Z", "X"}


def _gone(pid: int, *, within: float = 5.0) -> bool:
    deadline = time.monotonic() + within
    while time.monotonic() < deadline:
        if not _running(pid):
            return True
        time.sleep(0.05)
    return False


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args, command_head = _build_run_args(
        command_template="claude -p --model {model} {prompt}",
        model="opus",
        prompt='fix "login"; rm -rf /',
        prompt_file=Path("prompt.md"),
        workdir=Path("/work dir"),
    )

    assert command_head == "claude"
    assert run_args == ["claude", "-p", "--model", "opus", 'fix "login"; rm -rf /']


def test_build_run_args_supports_prompt_file_and_workdir() -> None:
    run_args, _ = _build_run_args(
        command_template="agent --cwd {workdir} --input {prompt_file}",
        model="sonnet",
        prompt="ignored",
        prompt_file=Path("/tmp/iter 1/prompt.md"),
        workdir=Path("/work dir"),
    )

    assert run_args == ["agent", "--cwd", "/work dir", "--input", "/tmp/iter 1/prompt.md"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --model {model}", "must include"),
        ("agent {prompt} {unknown}", "placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error:
        _build_run_args(
            command_template=template,
            model="sonnet",
            prompt="p",
            prompt_file=Path("prompt.md"),
            workdir=Path("."),
        )
    assert error.value.transient is False


def test_run_writes_prompt_and_captures_transcript(
    tmp_path: Path,
    workspace: FeatureWorkspace,
    scripted_agent,
) -> None:
    command = scripted_agent([{"say": ["working on it", "error: flaky test"], "exit_code": 3}])

    result = CliAgentBackend().run(_request(tmp_path, workspace, command))

    assert result.exit_code == 3
    assert not result.timed_out
    assert not result.interrupted
    assert (tmp_path / "iteration" / "prompt.md").read_text("utf-8") == "Implement STORY-001"
    assert result.read_transcript().splitlines() == ["working on it", "error: flaky test"]


def test_run_kills_agent_that_exceeds_timeout(
    tmp_path: Path,
    workspace: FeatureWorkspace,
    scripted_agent,
) -> None:
    command = scripted_agent([{"say": ["thinking"], "sleep": 30}])

    result = CliAgentBackend().run(
        _request(
            tmp_path,
            workspace,
            command,
            timeout_seconds=1.0,
            graceful_shutdown_seconds=1.0,
        ),
    )

    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_seconds < 15


def test_run_interrupts_agent_when_shutdown_requested(
    tmp_path: Path,
    workspace: FeatureWorkspace,
    scripted_agent,
) -> None:
    command = scripted_agent([{"sleep": 30}])

    result = CliAgentBackend().run(
        _request(
            tmp_path,
            workspace,
            command,
            shutdown_requested=lambda: True,
            graceful_shutdown_seconds=0.5,
        ),
    )

    assert result.interrupted
    assert not result.timed_out
    assert result.exit_code != 0
    assert result.duration_seconds < 15
    assert INTERRUPT_EXIT_CODE == 130


def test_missing_agent_binary_is_not_transient(
    tmp_path: Path,
    workspace: FeatureWorkspace,
) -> None:
    with pytest.raises(BackendRunError, match="not found") as error:
        CliAgentBackend().run(
            _request(tmp_path, workspace, "taskloop-no-such-agent-binary {prompt}"),
        )

    assert error.value.transient is False


def test_build_run_args_renders_allowed_tools() -> None:
    run_args, _ = _build_run_args(
        command_template="agent --allowedTools {tools} {prompt}",
        model="sonnet",
        prompt="p",
        prompt_file=Path("prompt.md"),
        workdir=Path("."),
        tools=["Read", "Bash(git log:*)"],
    )

    assert run_args == ["agent", "--allowedTools", "Read,Bash(git log:*)", "p"]


def test_run_exports_allowed_tools_to_the_agent(
    tmp_path: Path,
    workspace: FeatureWorkspace,
) -> None:
    command = "sh -c 'echo \"tools=$TASKLOOP_ALLOWED_TOOLS\"' sh {prompt_file}"

    result = CliAgentBackend().run(
        _request(tmp_path, workspace, command, tools=["Read", "Edit"]),
    )

    assert result.exit_code == 0
    assert result.read_transcript().strip() == "tools=Read,Edit"


@needs_procfs
def test_timeout_kills_descendants_that_ignore_sigterm(
    tmp_path: Path,
    workspace: FeatureWorkspace,
) -> None:
    command, pid_file = _stubborn_agent(tmp_path)

    result = CliAgentBackend().run(
        _request(
            tmp_path,
            workspace,
            command,
            timeout_seconds=2.0,
            graceful_shutdown_seconds=0.5,
        ),
    )

    assert result.timed_out
    child_pid = int(pid_file.read_text("utf-8"))
    assert _gone(child_pid)


@needs_procfs
def test_interrupt_kills_descendants_after_the_agent_exits(
    tmp_path: Path,
    workspace: FeatureWorkspace,
) -> None:
    command, pid_file = _stubborn_agent(tmp_path)

    result = CliAgentBackend().run(
        _request(
            tmp_path,
            workspace,
            command,
            shutdown_requested=pid_file.exists,
            graceful_shutdown_seconds=0.5,
        ),
    )

    assert result.interrupted
    child_pid = int(pid_file.read_text("utf-8"))
    assert _gone(child_pid)
