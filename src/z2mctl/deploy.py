"""Fetch or update the gateway's source tree and install its dependencies.

Updates are destructive on purpose: tracked edits and untracked files in the
source tree are discarded before fast-forwarding. Only the data directory is
meant to carry operator state, so it is excluded from the clean step.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .runner import CommandError, CommandRunner

LOGGER = logging.getLogger(__name__)

COREPACK_ENV = {
    "COREPACK_ENABLE_STRICT": "0",
    "COREPACK_ENABLE_DOWNLOAD_PROMPT": "0",
}


class DeployError(RuntimeError):
    """Raised when fetching or installing the application fails."""


@dataclass(slots=True)
class DeployResult:
    """Outcome of an application deployment."""

    action: str
    revision: str | None
    path: Path


@dataclass(slots=True)
class AppDeployer:
    """Clone/update the repository and run a frozen ``pnpm install``."""

    runner: CommandRunner
    repository: str
    install_dir: Path
    data_dir: Path
    service_user: str
    git_bin: str = "git"
    corepack_bin: str = "corepack"
    pnpm_bin: str = "pnpm"

    def deploy(self) -> DeployResult:
        """Bring the source tree up to date and install dependencies."""
        action = self.sync_source()
        self.fix_ownership()
        self.install_dependencies()
        return DeployResult(action=action, revision=self.revision(), path=self.install_dir)

    def sync_source(self) -> str:
        """Clone when the install dir has no checkout, otherwise hard-update it."""
        self._mark_safe_directory()
        if not (self.install_dir / ".git").is_dir():
            LOGGER.info("Cloning %s into %s", self.repository, self.install_dir)
            self.install_dir.parent.mkdir(parents=True, exist_ok=True)
            self._git("clone", "--depth", "1", self.repository, str(self.install_dir))
            return "clone"

        LOGGER.info("Updating existing checkout at %s", self.install_dir)
        self._git("-C", str(self.install_dir), "reset", "--hard")
        clean = ["-C", str(self.install_dir), "clean", "-fd"]
        excluded = self._data_dir_exclude()
        if excluded is not None:
            clean.extend(["-e", excluded])
        self._git(*clean)
        self._git("-C", str(self.install_dir), "pull", "--ff-only")
        return "update"

    def fix_ownership(self) -> None:
        """Hand the whole install dir to the service account."""
        owner = f"{self.service_user}:{self.service_user}"
        try:
            self.runner.run(["chown", "-R", owner, str(self.install_dir)])
        except CommandError as exc:
            raise DeployError(f"Failed to chown {self.install_dir}: {exc}") from exc

    def install_dependencies(self) -> None:
        """Enable corepack and install the lockfile-pinned dependency set."""
        try:
            self.runner.run([self.corepack_bin, "enable"])
            self.runner.run(
                [self.pnpm_bin, "install", "--frozen-lockfile"],
                user=self.service_user,
                env=COREPACK_ENV,
                cwd=self.install_dir,
            )
        except CommandError as exc:
            raise DeployError(f"Dependency installation failed: {exc}") from exc

    def revision(self) -> str | None:
        """Return the checked out commit, or None when it cannot be read."""
        try:
            result = self.runner.run(
                [self.git_bin, "-C", str(self.install_dir), "rev-parse", "HEAD"], check=False
            )
        except CommandError:
            return None
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None

    def _mark_safe_directory(self) -> None:
        # The checkout is owned by the service account but git runs as root.
        target = str(self.install_dir)
        result = self.runner.run(
            [self.git_bin, "config", "--global", "--get-all", "safe.directory"], check=False
        )
        existing = {line.strip() for line in (result.stdout or "").splitlines()}
        if target in existing:
            return
        self._git("config", "--global", "--add", "safe.directory", target)

    def _data_dir_exclude(self) -> str | None:
        try:
            relative = self.data_dir.relative_to(self.install_dir)
        except ValueError:
            return None
        return f"/{relative.as_posix()}/"

    def _git(self, *args: str) -> None:
        try:
            self.runner.run([self.git_bin, *args])
        except CommandError as exc:
            raise DeployError(str(exc)) from exc


__all__ = ["AppDeployer", "DeployError", "DeployResult"]
