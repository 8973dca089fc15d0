"""Systemd provider for the gateway's service unit."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandError, CommandRunner
from ..templates import TemplateEngine

UNIT_TEMPLATE = "systemd/service.j2"


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage the systemd unit for the gateway service."""

    templates: TemplateEngine
    runner: CommandRunner
    unit_name: str
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    @property
    def unit_path(self) -> Path:
        """Return the full path of the unit file."""
        return self.systemd_dir / self.unit_name

    def render_unit(self, context: Mapping[str, object]) -> bool:
        """Write the unit file from *context*, reloading systemd when it changed."""
        changed = self.templates.render_to_path(UNIT_TEMPLATE, self.unit_path, context, mode=0o644)
        if changed:
            self.daemon_reload()
        return changed

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    def enable(self) -> subprocess.CompletedProcess[str]:
        """Enable the unit at boot."""
        return self._systemctl("enable", self.unit_name)

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit_name)

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit_name)

    def restart(self) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", self.unit_name)

    def is_active(self) -> bool:
        """Return True when systemd reports the unit active."""
        result = self._systemctl("is-active", "--quiet", self.unit_name, check=False)
        return result.returncode == 0

    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            return self.runner.run([self.systemctl_bin, *args], check=check)
        except CommandError as exc:
            raise SystemdError(str(exc)) from exc


def build_unit_context(
    *,
    description: str,
    service_user: str,
    working_directory: Path,
    exec_start: str,
    timezone: str,
    max_old_space_size: int,
    restart_sec: int,
    notify: bool,
    watchdog_sec: int,
) -> dict[str, object]:
    """Return the template context for the gateway unit."""
    return {
        "description": description,
        "service_user": service_user,
        "working_directory": str(working_directory),
        "exec_start": exec_start,
        "environment": [
            "NODE_ENV=production",
            f"TZ={timezone}",
            # Keeps Node from exhausting memory on low-RAM hosts.
            f"NODE_OPTIONS=--max_old_space_size={max_old_space_size}",
        ],
        "restart_sec": restart_sec,
        "notify": notify,
        "watchdog_sec": watchdog_sec,
    }


__all__ = ["SystemdError", "SystemdProvider", "build_unit_context"]
