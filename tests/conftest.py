"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest
import yaml

from z2mctl.config import AppConfig, load_config
from z2mctl.runner import CommandRunner


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class RecordingRunner(CommandRunner):
    """Command runner that records argv instead of spawning processes.

    Responses and side effects are matched on the longest argv prefix.
    Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        """Initialise an empty recording."""
        super().__init__()
        self.calls: list[list[str]] = []
        self.cwds: list[Path | None] = []
        self._responses: dict[tuple[str, ...], tuple[int, str, str]] = {}
        self._actions: list[tuple[tuple[str, ...], Callable[[list[str]], None]]] = []

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Return the given result for commands starting with *prefix*."""
        self._responses[prefix] = (returncode, stdout, stderr)

    def on(self, *prefix: str, action: Callable[[list[str]], None]) -> None:
        """Call *action* with the argv of commands starting with *prefix*."""
        self._actions.append((prefix, action))

    @property
    def commands(self) -> list[str]:
        """Return recorded commands joined as strings."""
        return [" ".join(call) for call in self.calls]

    def _execute(
        self,
        argv: list[str],
        *,
        env: Mapping[str, str] | None,
        cwd: Path | None,
        input_text: str | None,
    ) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        self.cwds.append(cwd)
        for prefix, action in self._actions:
            if tuple(argv[: len(prefix)]) == prefix:
                action(list(argv))
        best: tuple[int, str, str] = (0, "", "")
        best_len = -1
        for prefix, response in self._responses.items():
            if tuple(argv[: len(prefix)]) == prefix and len(prefix) > best_len:
                best, best_len = response, len(prefix)
        returncode, stdout, stderr = best
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)


@pytest.fixture
def recording_runner() -> RecordingRunner:
    """Return a fresh recording runner."""
    return RecordingRunner()


def write_config(tmp_path: Path, extra: Mapping[str, object] | None = None) -> Path:
    """Write a config file rooting every managed path under *tmp_path*."""
    data: dict[str, object] = {
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1,
        "app": {
            "install_dir": str(tmp_path / "opt" / "zigbee2mqtt"),
        },
        "share": {
            "server": "192.168.1.34",
            "export": "/volume1/backup",
            "mount_point": str(tmp_path / "mnt"),
        },
        "systemd": {"unit_dir": str(tmp_path / "systemd")},
        "backups": {
            "script_path": str(tmp_path / "sbin" / "zigbee2mqtt-backup"),
            "crontab": str(tmp_path / "crontab"),
        },
    }
    for key, value in (extra or {}).items():
        if isinstance(value, Mapping) and isinstance(data.get(key), dict):
            section = dict(data[key])  # type: ignore[arg-type]
            section.update(value)
            data[key] = section
        else:
            data[key] = value
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory producing configs rooted under ``tmp_path``."""

    def _factory(extra: Mapping[str, object] | None = None) -> AppConfig:
        return load_config(config_file=write_config(tmp_path, extra), env={})

    return _factory
