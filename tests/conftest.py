"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import pytest

from taskloop.engine.sync import sync_workspace
from taskloop.engine.workspace import FeatureWorkspace

FEATURE = "feature-user-auth"

SPEC_TEXT = """\
# User authentication

## Problem Statement
Users cannot sign in.

## Success Criteria
- Users can sign in with a password

## Tasks

### STORY-001: Create user model
Add a persisted user record.

**Acceptance Criteria:**
- User has an email field
- Passwords are hashed

### STORY-002: Login endpoint
Priority: 2

Acceptance Criteria:
- POST /login returns a token

### STORY-003: Logout endpoint
Acceptance Criteria:
- POST /logout revokes the token

## Out of Scope
- Social login
"""


def write_spec(workspace: FeatureWorkspace, text: str = SPEC_TEXT) -> None:
    workspace.feature_dir.mkdir(parents=True, exist_ok=True)
    workspace.spec_path.write_text(text, "utf-8")


@pytest.fixture()
def workspace(tmp_path: Path) -> FeatureWorkspace:
    """Feature workspace with spec.md, a synced tasks.json and an empty progress.txt."""

    feature_workspace = FeatureWorkspace(root_dir=tmp_path / ".taskloop", feature=FEATURE)
    write_spec(feature_workspace)
    sync_workspace(feature_workspace)
    return feature_workspace


@pytest.fixture()
def scripted_agent(tmp_path: Path):
    """Write a scripted-agent step list and return the command template that plays it."""

    def _make(steps: list[dict]) -> str:
        script_path = tmp_path / "agent_script.json"
        script_path.write_text(json.dumps(steps), "utf-8")
        return (
            f"{shlex.quote(sys.executable)} -m taskloop.engine.backend.scripted_agent "
            f"--script {shlex.quote(str(script_path))} --prompt-file {{prompt_file}}"
        )

    return _make


@pytest.fixture()
def spec_text() -> str:
    return SPEC_TEXT
