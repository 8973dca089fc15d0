"""End-to-end stage sequencing with every external command recorded."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import RecordingRunner

from z2mctl import node_runtime
from z2mctl.archive import BackupNotFoundError
from z2mctl.bootstrap import service_accounts
from z2mctl.config import AppConfig
from z2mctl.providers import CrontabProvider, NfsShare, SystemdProvider
from z2mctl.provision import STAGES, Provisioner, StageResult
from z2mctl.templates import TemplateEngine


def _raise_key_error(*args: object, **kwargs: object) -> None:
    raise KeyError


@pytest.fixture(autouse=True)
def _host(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(service_accounts.pwd, "getpwnam", _raise_key_error)
    monkeypatch.setattr(node_runtime.shutil, "which", lambda name: "/usr/bin/node")


def _provisioner(config: AppConfig, runner: RecordingRunner) -> Provisioner:
    runner.respond("mountpoint", returncode=1)
    runner.respond("node", "--version", stdout="v20.11.1\n")
    runner.on("sudo", "-u", config.app.service_user, "mkdir", action=_mkdir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    return Provisioner(
        config,
        runner=runner,
        templates=templates,
        share=NfsShare(
            runner,
            server=config.share.server,
            export=config.share.export,
            mount_point=config.share.mount_point,
        ),
        systemd=SystemdProvider(
            templates=templates,
            runner=runner,
            unit_name=config.systemd.unit_name,
            systemd_dir=config.systemd.unit_dir,
        ),
        crontab=CrontabProvider(config.backups.crontab),
    )


def _mkdir(argv: list[str]) -> None:
    Path(argv[-1]).mkdir(parents=True, exist_ok=True)


def _seed_archive(config: AppConfig) -> Path:
    config.share.mount_point.mkdir(parents=True, exist_ok=True)
    archive = config.share.mount_point / "zigbee2mqtt-20240314-030000.tar.gz"
    archive.write_bytes(b"archive")
    return archive


def _first_index(commands: list[str], prefix: str) -> int:
    return next(i for i, command in enumerate(commands) if command.startswith(prefix))


def test_run_executes_stages_in_order(
    config_factory: Callable[..., AppConfig], recording_runner: RecordingRunner
) -> None:
    """Stages run prepare, deploy, restore, activate and report each one."""
    config = config_factory()
    _seed_archive(config)
    provisioner = _provisioner(config, recording_runner)
    seen: list[StageResult] = []

    results = provisioner.run(on_stage=seen.append)

    assert tuple(result.name for result in results) == STAGES
    assert seen == results
    commands = recording_runner.commands
    assert (
        _first_index(commands, "apt-get update")
        < _first_index(commands, "useradd")
        < _first_index(commands, "git clone")
        < _first_index(commands, "sudo -u zigbee2mqtt tar -xzf")
        < _first_index(commands, "systemctl enable")
        < _first_index(commands, "systemctl start")
    )


def test_activate_writes_unit_script_and_cron(
    config_factory: Callable[..., AppConfig], recording_runner: RecordingRunner
) -> None:
    """Activation leaves a unit, an executable script and one cron entry."""
    config = config_factory()
    provisioner = _provisioner(config, recording_runner)

    result = provisioner.activate_service()
    again = provisioner.activate_service()

    unit = config.unit_path.read_text(encoding="utf-8")
    assert "ExecStart=/usr/bin/node index.js" in unit
    assert f"WorkingDirectory={config.app.install_dir}" in unit
    assert config.backups.script_path.stat().st_mode & 0o111
    crontab = config.backups.crontab.read_text(encoding="utf-8")
    assert crontab.count(str(config.backups.script_path)) == 1
    assert f">> {config.logs_dir / 'backup.log'} 2>&1" in crontab
    assert result.changed is True
    assert again.changed is False
    assert recording_runner.commands.count("systemctl daemon-reload") == 1


def test_activate_without_start(
    config_factory: Callable[..., AppConfig], recording_runner: RecordingRunner
) -> None:
    """--no-start enables the unit without starting it."""
    config = config_factory({"systemd": {"exec_start": "/usr/bin/pnpm start"}})
    provisioner = _provisioner(config, recording_runner)

    provisioner.activate_service(start=False)

    assert "systemctl enable zigbee2mqtt.service" in recording_runner.commands
    assert "systemctl start zigbee2mqtt.service" not in recording_runner.commands
    assert "ExecStart=/usr/bin/pnpm start" in config.unit_path.read_text(encoding="utf-8")


def test_missing_archive_stops_before_activation(
    config_factory: Callable[..., AppConfig], recording_runner: RecordingRunner
) -> None:
    """A restore failure aborts the run; the service is never enabled."""
    config = config_factory()
    provisioner = _provisioner(config, recording_runner)
    seen: list[StageResult] = []

    with pytest.raises(BackupNotFoundError):
        provisioner.run(on_stage=seen.append)

    assert [result.name for result in seen] == ["prepare", "deploy"]
    assert not any(command.startswith("systemctl") for command in recording_runner.commands)
    assert not config.unit_path.exists()


def test_restore_state_fixes_ownership(
    config_factory: Callable[..., AppConfig], recording_runner: RecordingRunner
) -> None:
    """Restored files are handed to the service account."""
    config = config_factory()
    archive = _seed_archive(config)
    provisioner = _provisioner(config, recording_runner)

    result = provisioner.restore_state()

    assert result.detail == f"restored {archive.name}"
    assert recording_runner.commands[-1] == (
        f"chown -R zigbee2mqtt:zigbee2mqtt {config.app.install_dir}"
    )


def test_restore_with_stop_service_restarts_after_failure(
    config_factory: Callable[..., AppConfig], recording_runner: RecordingRunner
) -> None:
    """A failed restore of a running gateway still starts it again."""
    config = config_factory()
    provisioner = _provisioner(config, recording_runner)

    with pytest.raises(BackupNotFoundError):
        provisioner.restore_state(stop_service=True)

    commands = recording_runner.commands
    assert commands[0] == "systemctl is-active --quiet zigbee2mqtt.service"
    assert commands[1] == "systemctl stop zigbee2mqtt.service"
    assert commands[-1] == "systemctl start zigbee2mqtt.service"


def test_restore_with_stop_service_reports_restart(
    config_factory: Callable[..., AppConfig], recording_runner: RecordingRunner
) -> None:
    """A successful restore of a running gateway records the restart."""
    config = config_factory()
    _seed_archive(config)
    provisioner = _provisioner(config, recording_runner)

    result = provisioner.restore_state(stop_service=True)

    assert result.data["service_restarted"] is True
    assert recording_runner.commands[-1] == "systemctl start zigbee2mqtt.service"
