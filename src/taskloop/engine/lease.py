"""Exclusive per-feature run lease.

The lock file lives outside the feature folder so that archiving can remove the
live workspace while the lease is still held.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from filelock import FileLock, Timeout

from taskloop.engine.errors import LockContention
from taskloop.engine.store import load_json, write_json

logger = logging.getLogger(__name__)


class RunLease:
    """Context manager holding ``<root>/locks/<feature>.lock`` for a run's lifetime."""

    def __init__(self, lock_path: Path, *, feature: str) -> None:
        self.lock_path = lock_path
        self.info_path = lock_path.with_suffix(".json")
        self.feature = feature
        self._lock = FileLock(str(lock_path), timeout=0)

    @property
    def held(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout as error:
            holder = self.holder_description()
            raise LockContention(
                f"Another run holds the lease for feature {self.feature!r}{holder}.",
                remediation="Wait for the other run to finish, or stop it before retrying.",
            ) from error
        write_json(
            self.info_path,
            {
                "pid": os.getpid(),
                "feature": self.feature,
                "acquiredAt": datetime.now(UTC).isoformat(),
            },
        )
        logger.debug("Lease acquired: %s", self.lock_path)

    def release(self) -> None:
        if not self._lock.is_locked:
            return
        try:
            self.info_path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("Could not remove lease info %s: %s", self.info_path, error)
        self._lock.release()
        logger.debug("Lease released: %s", self.lock_path)

    def holder_description(self) -> str:
        if not self.info_path.is_file():
            return ""
        try:
            info = load_json(self.info_path)
        except Exception:  # noqa: BLE001
            return ""
        return f" (pid {info.get('pid')}, since {info.get('acquiredAt')})"

    def __enter__(self) -> RunLease:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()
