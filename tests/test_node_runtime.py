"""Tests covering Node runtime helpers."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import RecordingRunner

from z2mctl import node_runtime
from z2mctl.bootstrap.packages import PackageManager
from z2mctl.node_runtime import NodeRuntimeError, NodeRuntimeManager


def _manager(runner: RecordingRunner) -> NodeRuntimeManager:
    return NodeRuntimeManager(
        runner,
        PackageManager(runner),
        major=20,
        setup_url="https://deb.nodesource.com/setup_20.x",
    )


def test_detect_version_handles_missing_binary(recording_runner: RecordingRunner) -> None:
    """detect_version should return None when node is absent."""
    manager = _manager(recording_runner)
    recording_runner.respond("node", returncode=127)

    assert manager.detect_version() is None


def test_detect_version_parses_semver(recording_runner: RecordingRunner) -> None:
    """detect_version should parse the version string printed by node."""
    recording_runner.respond("node", "--version", stdout="v20.11.1\n")

    info = _manager(recording_runner).detect_version()

    assert info is not None
    assert info.raw == "v20.11.1"
    assert info.major == 20


def test_ensure_runtime_installs_when_missing(
    monkeypatch: pytest.MonkeyPatch, recording_runner: RecordingRunner
) -> None:
    """A missing node triggers the NodeSource setup and an apt install."""
    state = {"installed": False}

    def fake_which(name: str) -> str | None:
        return "/usr/bin/node" if state["installed"] else None

    def mark_installed(argv: list[str]) -> None:
        state["installed"] = True

    monkeypatch.setattr(node_runtime.shutil, "which", fake_which)
    recording_runner.on("apt-get", "install", action=mark_installed)
    recording_runner.respond("node", "--version", stdout="v20.11.1\n")

    result = _manager(recording_runner).ensure_runtime()

    assert result.installation_performed is True
    assert result.node_path == Path("/usr/bin/node")
    commands = recording_runner.commands
    assert commands[0].startswith("curl -fsSL https://deb.nodesource.com/setup_20.x -o ")
    assert commands[1].startswith("bash ") and commands[1].endswith("nodesource_setup.sh")
    assert commands[2] == "apt-get install -y nodejs"


def test_ensure_runtime_keeps_existing_and_warns_when_old(
    monkeypatch: pytest.MonkeyPatch, recording_runner: RecordingRunner
) -> None:
    """An older node on PATH is kept but reported."""
    monkeypatch.setattr(node_runtime.shutil, "which", lambda name: "/usr/local/bin/node")
    recording_runner.respond("node", "--version", stdout="v18.19.1\n")

    result = _manager(recording_runner).ensure_runtime()

    assert result.installation_performed is False
    assert recording_runner.commands == ["node --version"]
    assert result.warnings and "older than the requested 20.x" in result.warnings[0]


def test_ensure_runtime_errors_when_setup_fails(
    monkeypatch: pytest.MonkeyPatch, recording_runner: RecordingRunner
) -> None:
    """A failing setup script surfaces as NodeRuntimeError."""
    monkeypatch.setattr(node_runtime.shutil, "which", lambda name: None)
    recording_runner.respond("curl", returncode=22, stderr="404 Not Found")

    with pytest.raises(NodeRuntimeError, match="NodeSource setup failed"):
        _manager(recording_runner).ensure_runtime()


def test_ensure_runtime_errors_when_still_missing(
    monkeypatch: pytest.MonkeyPatch, recording_runner: RecordingRunner
) -> None:
    """Installing without node appearing on PATH is an error."""
    monkeypatch.setattr(node_runtime.shutil, "which", lambda name: None)

    with pytest.raises(NodeRuntimeError, match="still not on PATH"):
        _manager(recording_runner).ensure_runtime()
