"""Restore the gateway's data directory from the newest archive on the share."""
from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .archive import (
    BackupArchive,
    BackupError,
    BackupNotFoundError,
    discover_archives,
    extract_archive,
    select_latest,
)
from .providers.nfs import NfsShare
from .runner import CommandError, CommandRunner

LOGGER = logging.getLogger(__name__)

_TOP_LEVEL_KEY = re.compile(r"^[^\s#][^:]*:")
_PORT_LINE = re.compile(r"^(\s+port:)")


@dataclass(slots=True)
class RestoreResult:
    """Outcome of a restore."""

    archive: BackupArchive
    data_dir: Path
    serial_patched: bool = False
    warnings: list[str] = field(default_factory=list)


def reset_data_dir(runner: CommandRunner, data_dir: Path, service_user: str) -> None:
    """Remove *data_dir* and recreate it empty, owned by *service_user*."""
    if data_dir.exists():
        try:
            shutil.rmtree(data_dir)
        except OSError as exc:
            raise BackupError(f"Failed to clear {data_dir}: {exc}") from exc
    try:
        runner.run(["mkdir", "-p", str(data_dir)], user=service_user)
    except CommandError as exc:
        raise BackupError(f"Failed to recreate {data_dir}: {exc}") from exc


def patch_serial_port(config_file: Path, device: str) -> bool:
    """Point ``serial.port`` in *config_file* at *device*.

    This is a line-level rewrite of the first indented ``port:`` key under
    the top-level ``serial:`` block, matching the layout of the stock
    ``configuration.yaml``; comments and other blocks are preserved.
    """
    text = config_file.read_text(encoding="utf-8")
    lines = text.splitlines(keepends=True)
    in_serial = False
    for index, line in enumerate(lines):
        if _TOP_LEVEL_KEY.match(line):
            in_serial = line.startswith("serial:")
            continue
        if not in_serial:
            continue
        match = _PORT_LINE.match(line)
        if match is None:
            continue
        ending = line[len(line.rstrip("\r\n")):]
        replacement = f"{match.group(1)} {device}{ending}"
        if replacement == line:
            return False
        lines[index] = replacement
        config_file.write_text("".join(lines), encoding="utf-8")
        return True
    return False


def restore_latest(
    *,
    runner: CommandRunner,
    share: NfsShare,
    prefix: str,
    data_dir: Path,
    service_user: str,
    serial_device: str | None = None,
) -> RestoreResult:
    """Replace *data_dir* with the contents of the newest archive.

    The data directory is left untouched when the share holds no archive.
    """
    with share.mounted() as root:
        latest = select_latest(discover_archives(root, prefix))
        if latest is None:
            raise BackupNotFoundError(f"No {prefix}-*.tar.gz backups found in {root}")
        LOGGER.info("Restoring %s into %s", latest.name, data_dir)
        reset_data_dir(runner, data_dir, service_user)
        extract_archive(runner, latest.path, data_dir, user=service_user)

    result = RestoreResult(archive=latest, data_dir=data_dir)
    if latest.suspicious:
        result.warnings.append(
            f"{latest.name}: modification time {latest.mtime.isoformat(timespec='seconds')} "
            "does not match the timestamp in its name."
        )
    if serial_device:
        _apply_serial_patch(result, data_dir / "configuration.yaml", serial_device)
    return result


def _apply_serial_patch(result: RestoreResult, config_file: Path, device: str) -> None:
    # Best-effort: a failed patch is reported but never aborts the restore.
    if not config_file.is_file():
        message = f"{config_file} not found. You may need to create/adjust it manually."
        LOGGER.warning(message)
        result.warnings.append(message)
        return
    try:
        result.serial_patched = patch_serial_port(config_file, device)
    except (OSError, UnicodeDecodeError) as exc:
        message = f"Could not update serial port in {config_file}: {exc}"
        LOGGER.warning(message)
        result.warnings.append(message)


__all__ = ["RestoreResult", "patch_serial_port", "reset_data_dir", "restore_latest"]
