from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskloop.engine.errors import LockContention
from taskloop.engine.lease import RunLease

pytestmark = [
    allure.epic("Iteration Engine"),
    allure.feature("Run Lease"),
]


def test_second_lease_for_same_feature_is_refused(tmp_path: Path) -> None:
    lock_path = tmp_path / "locks" / "feature-a.lock"

    with RunLease(lock_path, feature="feature-a") as first:
        assert first.held
        assert "pid" in first.holder_description()
        with pytest.raises(LockContention, match="feature-a") as error:
            RunLease(lock_path, feature="feature-a").acquire()
        assert "pid" in error.value.message

    assert not (tmp_path / "locks" / "feature-a.json").exists()
    with RunLease(lock_path, feature="feature-a") as again:
        assert again.held


def test_leases_for_different_features_are_independent(tmp_path: Path) -> None:
    with (
        RunLease(tmp_path / "locks" / "a.lock", feature="a"),
        RunLease(tmp_path / "locks" / "b.lock", feature="b") as second,
    ):
        assert second.held
