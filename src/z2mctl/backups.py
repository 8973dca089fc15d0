"""Recurring backup job: archive the data directory to the share and prune."""
from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .archive import archive_name, create_archive, prune_archives
from .providers.nfs import NfsShare
from .providers.systemd import SystemdError, SystemdProvider
from .runner import CommandRunner
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

BACKUP_SCRIPT_TEMPLATE = "backup/backup.sh.j2"


@dataclass(slots=True)
class BackupRunResult:
    """Outcome of one backup job run."""

    archive: Path
    pruned: list[Path] = field(default_factory=list)


@dataclass(slots=True)
class BackupJob:
    """Stop the service, archive its data, restart it, prune old archives."""

    runner: CommandRunner
    share: NfsShare
    systemd: SystemdProvider
    data_dir: Path
    prefix: str
    retention_days: int
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(tz=UTC))

    def run(self) -> BackupRunResult:
        """Execute one backup.

        Service downtime covers archive creation only; the service is started
        again even when archiving fails.
        """
        now = self.clock()
        with self.share.mounted() as root:
            target = root / archive_name(self.prefix, now)
            LOGGER.info("Stopping %s for backup", self.systemd.unit_name)
            self.systemd.stop()
            try:
                create_archive(self.runner, self.data_dir, target)
            except BaseException:
                LOGGER.info("Starting %s after failed backup", self.systemd.unit_name)
                try:
                    self.systemd.start()
                except SystemdError as exc:
                    LOGGER.error("Restart after failure also failed: %s", exc)
                raise
            LOGGER.info("Starting %s after backup", self.systemd.unit_name)
            self.systemd.start()
            pruned = prune_archives(root, self.prefix, self.retention_days, now=now)
        LOGGER.info("Backup written to %s (%d pruned)", target, len(pruned))
        return BackupRunResult(archive=target, pruned=pruned)


def install_backup_script(
    templates: TemplateEngine,
    script_path: Path,
    *,
    config_file: Path,
    data_dir: Path,
    share_source: str,
    retention_days: int,
    python: str | None = None,
) -> bool:
    """Write the executable wrapper cron invokes; return True when it changed."""
    context = {
        "python": python or sys.executable,
        "config_file": str(config_file),
        "data_dir": str(data_dir),
        "share_source": share_source,
        "retention_days": retention_days,
    }
    return templates.render_to_path(BACKUP_SCRIPT_TEMPLATE, script_path, context, mode=0o755)


__all__ = ["BackupJob", "BackupRunResult", "install_backup_script"]
