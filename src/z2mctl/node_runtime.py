"""Helpers for ensuring the Node.js runtime via NodeSource."""
from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .bootstrap.packages import PackageError, PackageManager
from .runner import CommandError, CommandRunner

LOGGER = logging.getLogger(__name__)


class NodeRuntimeError(RuntimeError):
    """Raised when Node runtime management fails."""


@dataclass(slots=True)
class NodeVersionInfo:
    """Parsed Node version details."""

    raw: str
    version: Version

    @property
    def major(self) -> int:
        """Return the major version number."""
        return self.version.major


@dataclass(slots=True)
class NodeEnsureResult:
    """Outcome of :meth:`NodeRuntimeManager.ensure_runtime`."""

    installation_performed: bool
    version: NodeVersionInfo | None
    node_path: Path | None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class NodeRuntimeManager:
    """Install Node.js from NodeSource when it is not on ``PATH``."""

    runner: CommandRunner
    packages: PackageManager
    major: int = 20
    setup_url: str = "https://deb.nodesource.com/setup_20.x"
    node_bin: str = "node"
    curl_bin: str = "curl"
    bash_bin: str = "bash"

    def locate(self) -> Path | None:
        """Return the resolved ``node`` binary, if any."""
        resolved = shutil.which(self.node_bin)
        return Path(resolved) if resolved else None

    def detect_version(self) -> NodeVersionInfo | None:
        """Return the version reported by ``node --version``."""
        try:
            result = self.runner.run([self.node_bin, "--version"], check=False)
        except CommandError:
            return None
        output = (result.stdout or result.stderr or "").strip()
        if result.returncode != 0 or not output:
            return None
        try:
            version = Version(output.lstrip("v"))
        except InvalidVersion:
            LOGGER.warning("Unrecognised node version string %r", output)
            return None
        return NodeVersionInfo(raw=output, version=version)

    def ensure_runtime(self) -> NodeEnsureResult:
        """Install Node when missing; report the version either way.

        An older Node already on ``PATH`` is kept and reported as a warning.
        """
        node_path = self.locate()
        installation_performed = False
        if node_path is None:
            self._install()
            installation_performed = True
            node_path = self.locate()
            if node_path is None:
                raise NodeRuntimeError(
                    f"nodejs was installed but '{self.node_bin}' is still not on PATH."
                )

        info = self.detect_version()
        warnings: list[str] = []
        if info is not None and info.major < self.major:
            warnings.append(
                f"Node {info.version} is older than the requested {self.major}.x; "
                "leaving the existing installation in place."
            )
        LOGGER.info(
            "Node runtime ready: %s (installed now: %s)",
            info.raw if info else "unknown",
            installation_performed,
        )
        return NodeEnsureResult(
            installation_performed=installation_performed,
            version=info,
            node_path=node_path,
            warnings=warnings,
        )

    def _install(self) -> None:
        with tempfile.TemporaryDirectory(prefix="z2mctl-node-") as workdir:
            script = Path(workdir) / "nodesource_setup.sh"
            try:
                self.runner.run([self.curl_bin, "-fsSL", self.setup_url, "-o", str(script)])
                # The setup script adds the NodeSource APT source and refreshes indices.
                self.runner.run([self.bash_bin, str(script)])
            except CommandError as exc:
                raise NodeRuntimeError(f"NodeSource setup failed: {exc}") from exc
        try:
            self.packages.install(["nodejs"])
        except PackageError as exc:
            raise NodeRuntimeError(f"Installing nodejs failed: {exc}") from exc


__all__ = [
    "NodeEnsureResult",
    "NodeRuntimeError",
    "NodeRuntimeManager",
    "NodeVersionInfo",
]
