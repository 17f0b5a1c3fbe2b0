"""Archive a completed feature workspace.

Order matters: copy into a staging directory, verify the copy file by file,
rename it into place, and only then remove the live workspace. Any failure before
the rename leaves the live workspace untouched.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from taskloop.engine.errors import ArchiveError

logger = logging.getLogger(__name__)

ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
_STAGING_PREFIX = ".staging-"
_READ_ONLY = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH

CopyTree = Callable[[Path, Path], object]


@dataclass(slots=True)
class ArchiveEntry:
    name: str
    path: Path
    feature: str
    created_at: datetime | None


def archive_feature(
    feature_dir: Path,
    archive_root: Path,
    *,
    now: datetime | None = None,
    copy_tree: CopyTree = shutil.copytree,
) -> Path:
    """Move ``feature_dir`` under ``archive_root`` as ``<YYYYMMDD-HHMMSS>-<feature>``."""

    if not feature_dir.is_dir():
        raise ArchiveError(
            f"Feature folder not found: {feature_dir}",
            remediation="Check the feature name; it may already be archived.",
        )
    timestamp = (now or datetime.now(UTC)).strftime(ARCHIVE_TIMESTAMP_FORMAT)
    target = _unique_target(archive_root, f"{timestamp}-{feature_dir.name}")
    staging = archive_root / f"{_STAGING_PREFIX}{target.name}"

    archive_root.mkdir(parents=True, exist_ok=True)
    if staging.exists():
        shutil.rmtree(staging)

    try:
        copy_tree(feature_dir, staging)
    except OSError as error:
        shutil.rmtree(staging, ignore_errors=True)
        raise ArchiveError(
            f"Copying {feature_dir} to the archive failed: {error}",
            remediation="Check free disk space, then run 'taskloop archive' again.",
        ) from error

    problems = verify_copy(feature_dir, staging)
    if problems:
        shutil.rmtree(staging, ignore_errors=True)
        logger.error("Archive verification failed for %s: %s", feature_dir.name, problems)
        raise ArchiveError(
            f"Archive copy of {feature_dir.name} failed verification: {'; '.join(problems[:3])}",
            remediation="The live workspace was kept. Fix the cause and run 'taskloop archive'.",
        )

    os.replace(staging, target)
    _make_read_only(target)
    shutil.rmtree(feature_dir)
    logger.info("Archived %s to %s", feature_dir.name, target)
    return target


def verify_copy(source: Path, copy: Path) -> list[str]:
    """Differences between two trees: file set, sizes and SHA-256 digests."""

    expected = _manifest(source)
    actual = _manifest(copy) if copy.is_dir() else {}
    problems: list[str] = []
    for name in sorted(expected.keys() - actual.keys()):
        problems.append(f"missing {name}")
    for name in sorted(actual.keys() - expected.keys()):
        problems.append(f"unexpected {name}")
    for name in sorted(expected.keys() & actual.keys()):
        expected_size, expected_digest = expected[name]
        actual_size, actual_digest = actual[name]
        if expected_size != actual_size:
            problems.append(f"size mismatch {name} ({actual_size} != {expected_size})")
        elif expected_digest != actual_digest:
            problems.append(f"checksum mismatch {name}")
    return problems


def list_archives(archive_root: Path) -> list[ArchiveEntry]:
    if not archive_root.is_dir():
        return []
    entries: list[ArchiveEntry] = []
    for path in sorted(archive_root.iterdir()):
        if not path.is_dir() or path.name.startswith(_STAGING_PREFIX):
            continue
        created_at, feature = _parse_archive_name(path.name)
        entries.append(
            ArchiveEntry(name=path.name, path=path, feature=feature, created_at=created_at),
        )
    return entries


def _parse_archive_name(name: str) -> tuple[datetime | None, str]:
    stamp, _, feature = name[:15], name[15:16], name[16:]
    try:
        created = datetime.strptime(stamp, ARCHIVE_TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None, name
    return created, feature


def _unique_target(archive_root: Path, name: str) -> Path:
    target = archive_root / name
    suffix = 2
    while target.exists():
        target = archive_root / f"{name}-{suffix}"
        suffix += 1
    return target


def _manifest(root: Path) -> dict[str, tuple[int, str]]:
    manifest: dict[str, tuple[int, str]] = {}
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        digest = hashlib.sha256()
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(65536), b""):
                digest.update(chunk)
        manifest[path.relative_to(root).as_posix()] = (path.stat().st_size, digest.hexdigest())
    return manifest


def _make_read_only(root: Path) -> None:
    for path in root.rglob("*"):
        if path.is_file():
            path.chmod(_READ_ONLY)
