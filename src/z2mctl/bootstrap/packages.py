"""APT package installation for the host environment."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..runner import CommandError, CommandRunner

LOGGER = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageError(RuntimeError):
    """Raised when the package manager fails."""


@dataclass(slots=True)
class PackageResult:
    """Summary of an ``ensure_packages`` run."""

    installed: list[str] = field(default_factory=list)
    upgraded: bool = False


@dataclass(slots=True)
class PackageManager:
    """Thin wrapper around ``apt-get``; relies on apt for idempotency."""

    runner: CommandRunner
    apt_bin: str = "apt-get"

    def refresh(self) -> None:
        """Refresh package indices."""
        self._apt("update")

    def upgrade(self) -> None:
        """Upgrade installed packages."""
        self._apt("-y", "upgrade")

    def install(self, packages: Sequence[str]) -> None:
        """Install *packages* (already-installed ones are left as they are)."""
        if not packages:
            return
        self._apt("install", "-y", *packages)

    def ensure_packages(self, packages: Sequence[str], *, upgrade: bool = True) -> PackageResult:
        """Refresh indices, optionally upgrade, then install *packages*."""
        self.refresh()
        if upgrade:
            self.upgrade()
        self.install(packages)
        LOGGER.info("Ensured %d packages", len(packages))
        return PackageResult(installed=list(packages), upgraded=upgrade)

    def _apt(self, *args: str) -> None:
        try:
            self.runner.run([self.apt_bin, *args], env=APT_ENV)
        except CommandError as exc:
            raise PackageError(str(exc)) from exc


__all__ = ["PackageError", "PackageManager", "PackageResult"]
