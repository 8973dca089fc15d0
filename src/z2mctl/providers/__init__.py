"""Providers wrapping host facilities: systemd, NFS mounts and cron."""
from __future__ import annotations

from .crontab import CrontabError, CrontabProvider, backup_cron_line
from .nfs import NfsShare, ShareError
from .systemd import SystemdError, SystemdProvider, build_unit_context

__all__ = [
    "CrontabError",
    "CrontabProvider",
    "NfsShare",
    "ShareError",
    "SystemdError",
    "SystemdProvider",
    "backup_cron_line",
    "build_unit_context",
]
