"""Sequence the four provisioning stages.

Stages run strictly in order and the first failure propagates; nothing that
already completed is rolled back.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from .backups import install_backup_script
from .bootstrap.packages import PackageManager
from .bootstrap.service_accounts import ServiceAccountSpec, ensure_service_account
from .config import AppConfig
from .deploy import AppDeployer
from .node_runtime import NodeRuntimeManager
from .providers.crontab import CrontabProvider, backup_cron_line
from .providers.nfs import NfsShare
from .providers.systemd import SystemdError, SystemdProvider, build_unit_context
from .restore import restore_latest
from .runner import CommandRunner
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

STAGES = ("prepare", "deploy", "restore", "activate")


@dataclass(slots=True)
class StageResult:
    """What a single stage did."""

    name: str
    changed: bool
    detail: str
    warnings: list[str] = field(default_factory=list)
    data: dict[str, object] = field(default_factory=dict)


StageCallback = Callable[[StageResult], None]


class Provisioner:
    """Turn a bare host into a running, backed-up gateway."""

    def __init__(
        self,
        config: AppConfig,
        *,
        runner: CommandRunner,
        templates: TemplateEngine,
        share: NfsShare,
        systemd: SystemdProvider,
        crontab: CrontabProvider,
    ) -> None:
        """Wire the stage collaborators from *config*."""
        self.config = config
        self.runner = runner
        self.templates = templates
        self.share = share
        self.systemd = systemd
        self.crontab = crontab
        self.packages = PackageManager(runner)
        self.node = NodeRuntimeManager(
            runner,
            self.packages,
            major=config.node.major,
            setup_url=config.node.resolved_setup_url,
        )
        self.deployer = AppDeployer(
            runner,
            repository=config.app.repository,
            install_dir=config.app.install_dir,
            data_dir=config.app.data_dir,
            service_user=config.app.service_user,
        )

    # Stage 1 ---------------------------------------------------------
    def prepare_environment(self) -> StageResult:
        """Install OS packages and Node, and make sure the service account exists."""
        self.packages.ensure_packages(
            self.config.packages, upgrade=self.config.upgrade_packages
        )
        node = self.node.ensure_runtime()
        account = ensure_service_account(
            ServiceAccountSpec(
                name=self.config.app.service_user,
                home=self.config.app.install_dir,
            ),
            self.runner,
        )
        version = node.version.raw if node.version else "unknown"
        return StageResult(
            name="prepare",
            changed=node.installation_performed or account.changed,
            detail=(
                f"{len(self.config.packages)} packages, node {version}, "
                f"account {'created' if account.changed else 'present'}"
            ),
            warnings=[*node.warnings, *account.warnings],
            data={"node": version, "account_created": account.changed},
        )

    # Stage 2 ---------------------------------------------------------
    def deploy_application(self) -> StageResult:
        """Clone or hard-update the source tree and install dependencies."""
        result = self.deployer.deploy()
        return StageResult(
            name="deploy",
            changed=True,
            detail=f"{result.action} at {result.revision or 'unknown revision'}",
            data={"action": result.action, "revision": result.revision},
        )

    # Stage 3 ---------------------------------------------------------
    def restore_state(self, *, stop_service: bool = False) -> StageResult:
        """Replace the data directory with the newest archive from the share.

        With *stop_service*, a running unit is stopped for the restore and
        started again afterwards, also when the restore fails.
        """
        if not (stop_service and self.systemd.is_active()):
            return self._restore()
        LOGGER.info("Stopping %s for restore", self.systemd.unit_name)
        self.systemd.stop()
        try:
            result = self._restore()
        except BaseException:
            try:
                self.systemd.start()
            except SystemdError as exc:
                LOGGER.error("Restart after failure also failed: %s", exc)
            raise
        LOGGER.info("Starting %s after restore", self.systemd.unit_name)
        self.systemd.start()
        result.data["service_restarted"] = True
        return result

    def _restore(self) -> StageResult:
        app = self.config.app
        result = restore_latest(
            runner=self.runner,
            share=self.share,
            prefix=self.config.backups.prefix,
            data_dir=app.data_dir,
            service_user=app.service_user,
            serial_device=app.serial_device,
        )
        self.deployer.fix_ownership()
        return StageResult(
            name="restore",
            changed=True,
            detail=f"restored {result.archive.name}",
            warnings=list(result.warnings),
            data={"archive": str(result.archive.path), "serial_patched": result.serial_patched},
        )

    # Stage 4 ---------------------------------------------------------
    def activate_service(self, *, start: bool = True) -> StageResult:
        """Write the unit, start the service and register the backup job."""
        unit_changed = self.systemd.render_unit(self._unit_context())
        self.systemd.enable()
        if start:
            self.systemd.start()
        script_changed, cron_changed = self.install_schedule()
        return StageResult(
            name="activate",
            changed=unit_changed or script_changed or cron_changed,
            detail=(
                f"unit {'updated' if unit_changed else 'unchanged'}, "
                f"service {'started' if start else 'not started'}, "
                f"schedule {'registered' if cron_changed else 'unchanged'}"
            ),
            data={
                "unit": str(self.systemd.unit_path),
                "script": str(self.config.backups.script_path),
            },
        )

    def install_schedule(self) -> tuple[bool, bool]:
        """Write the backup script and its crontab entry."""
        backups = self.config.backups
        script_changed = install_backup_script(
            self.templates,
            backups.script_path,
            config_file=self.config.config_file,
            data_dir=self.config.app.data_dir,
            share_source=self.config.share.source,
            retention_days=backups.retention_days,
        )
        line = backup_cron_line(
            backups.schedule, backups.script_path, self.config.logs_dir / "backup.log"
        )
        cron_changed = self.crontab.ensure_entry(self.schedule_tag, line)
        return script_changed, cron_changed

    @property
    def schedule_tag(self) -> str:
        """Return the crontab tag identifying this gateway's backup entry."""
        return f"{self.config.app.name}-backup"

    def run(self, *, start: bool = True, on_stage: StageCallback | None = None) -> list[StageResult]:
        """Run every stage in order, stopping at the first failure."""
        stages: list[Callable[[], StageResult]] = [
            self.prepare_environment,
            self.deploy_application,
            self.restore_state,
            lambda: self.activate_service(start=start),
        ]
        results: list[StageResult] = []
        for stage in stages:
            result = stage()
            LOGGER.info("Stage %s: %s", result.name, result.detail)
            results.append(result)
            if on_stage is not None:
                on_stage(result)
        return results

    def _unit_context(self) -> dict[str, object]:
        app = self.config.app
        systemd = self.config.systemd
        exec_start = systemd.exec_start
        if exec_start is None:
            node_path = self.node.locate()
            exec_start = f"{node_path or '/usr/bin/node'} index.js"
        return build_unit_context(
            description=app.name,
            service_user=app.service_user,
            working_directory=app.install_dir,
            exec_start=exec_start,
            timezone=self.config.timezone,
            max_old_space_size=app.max_old_space_size,
            restart_sec=systemd.restart_sec,
            notify=systemd.notify,
            watchdog_sec=systemd.watchdog_sec,
        )


__all__ = ["STAGES", "Provisioner", "StageResult"]
