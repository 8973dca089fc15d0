"""Backup archive naming, discovery, creation, extraction and pruning.

Archives are plain gzip-compressed tarballs named
``<prefix>-<YYYYMMDD-HHMMSS>.tar.gz``. The timestamp embedded in the name
(UTC) is authoritative for recency and retention; file modification times are
only used to flag archives whose name and mtime disagree.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .runner import CommandError, CommandRunner

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"
PARTIAL_SUFFIX = ".partial"
MTIME_TOLERANCE = timedelta(hours=24)


class BackupError(RuntimeError):
    """Raised when backup or restore operations fail."""


class BackupNotFoundError(BackupError):
    """Raised when no archive matching the naming pattern exists."""


@dataclass(frozen=True, slots=True)
class BackupArchive:
    """An archive on the share and the timestamp embedded in its name."""

    path: Path
    timestamp: datetime
    mtime: datetime

    @property
    def name(self) -> str:
        """Return the archive file name."""
        return self.path.name

    @property
    def suspicious(self) -> bool:
        """Return True when the file mtime disagrees with the embedded timestamp."""
        return abs(self.mtime - self.timestamp) > MTIME_TOLERANCE

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "timestamp": self.timestamp.isoformat(),
            "mtime": self.mtime.isoformat(timespec="seconds"),
            "suspicious": self.suspicious,
        }


def archive_pattern(prefix: str) -> re.Pattern[str]:
    """Return the compiled file name pattern for archives with *prefix*."""
    return re.compile(rf"^{re.escape(prefix)}-(\d{{8}}-\d{{6}}){re.escape(ARCHIVE_SUFFIX)}$")


def archive_name(prefix: str, when: datetime) -> str:
    """Return the archive file name for a backup taken at *when*."""
    stamp = when.astimezone(UTC).strftime(TIMESTAMP_FORMAT)
    return f"{prefix}-{stamp}{ARCHIVE_SUFFIX}"


def parse_archive_name(name: str, prefix: str) -> datetime | None:
    """Return the UTC timestamp embedded in *name*, or None when it does not match."""
    match = archive_pattern(prefix).match(name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None


def discover_archives(root: Path, prefix: str) -> list[BackupArchive]:
    """Return archives under *root*, newest first.

    Ordering uses the embedded timestamp, then the file name, so repeated
    calls over an unchanged directory always agree.
    """
    if not root.is_dir():
        return []
    archives: list[BackupArchive] = []
    for entry in root.iterdir():
        timestamp = parse_archive_name(entry.name, prefix)
        if timestamp is None or not entry.is_file():
            continue
        mtime = datetime.fromtimestamp(entry.stat().st_mtime, tz=UTC)
        archives.append(BackupArchive(path=entry, timestamp=timestamp, mtime=mtime))
    archives.sort(key=lambda item: (item.timestamp, item.name), reverse=True)
    return archives


def select_latest(archives: list[BackupArchive]) -> BackupArchive | None:
    """Return the newest archive from an already sorted list."""
    if not archives:
        return None
    latest = archives[0]
    if latest.suspicious:
        LOGGER.warning(
            "Archive %s was modified at %s, far from its embedded timestamp %s.",
            latest.name,
            latest.mtime.isoformat(timespec="seconds"),
            latest.timestamp.isoformat(),
        )
    return latest


def create_archive(runner: CommandRunner, source_dir: Path, archive_path: Path) -> Path:
    """Archive the contents of *source_dir* (relative paths) into *archive_path*.

    The tarball is written under a ``.partial`` name and renamed once tar
    succeeds, so an interrupted run never leaves a file that matches the
    archive pattern.
    """
    if not source_dir.is_dir():
        raise BackupError(f"Data directory {source_dir} does not exist.")
    partial = archive_path.with_name(f"{archive_path.name}{PARTIAL_SUFFIX}")
    try:
        runner.run(["tar", "-czf", str(partial), "-C", str(source_dir), "."])
    except CommandError as exc:
        partial.unlink(missing_ok=True)
        raise BackupError(f"Failed to create archive {archive_path.name}: {exc}") from exc
    try:
        partial.replace(archive_path)
    except OSError as exc:
        partial.unlink(missing_ok=True)
        raise BackupError(f"Failed to finalise archive {archive_path}: {exc}") from exc
    return archive_path


def extract_archive(
    runner: CommandRunner,
    archive_path: Path,
    destination: Path,
    *,
    user: str | None = None,
) -> None:
    """Extract *archive_path* into *destination*, optionally as *user*."""
    try:
        runner.run(["tar", "-xzf", str(archive_path), "-C", str(destination)], user=user)
    except CommandError as exc:
        raise BackupError(f"Failed to extract {archive_path.name}: {exc}") from exc


def prune_archives(
    root: Path,
    prefix: str,
    retention_days: int,
    *,
    now: datetime | None = None,
) -> list[Path]:
    """Delete archives whose embedded timestamp is older than the retention window."""
    reference = now or datetime.now(tz=UTC)
    cutoff = reference - timedelta(days=retention_days)
    removed: list[Path] = []
    for archive in discover_archives(root, prefix):
        if archive.timestamp >= cutoff:
            continue
        try:
            archive.path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise BackupError(f"Failed to prune {archive.path}: {exc}") from exc
        LOGGER.info("Pruned %s", archive.name)
        removed.append(archive.path)
    return removed


__all__ = [
    "BackupArchive",
    "BackupError",
    "BackupNotFoundError",
    "archive_name",
    "archive_pattern",
    "create_archive",
    "discover_archives",
    "extract_archive",
    "parse_archive_name",
    "prune_archives",
    "select_latest",
]
