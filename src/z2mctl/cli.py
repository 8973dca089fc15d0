"""Typer-powered command line for ``z2mctl``.

``z2mctl provision`` runs the whole flow on a fresh host. Each stage is also
exposed on its own (``prepare``, ``deploy``, ``restore``, ``activate``) and
the ``backup`` group is what the installed cron job calls.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import get_version
from .archive import BackupError, BackupNotFoundError, discover_archives, prune_archives
from .backups import BackupJob
from .bootstrap.packages import PackageError
from .bootstrap.service_accounts import ServiceAccountError
from .config import AppConfig, ConfigError, load_config
from .deploy import DeployError
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .node_runtime import NodeRuntimeError
from .providers import (
    CrontabError,
    CrontabProvider,
    NfsShare,
    ShareError,
    SystemdError,
    SystemdProvider,
)
from .provision import Provisioner, StageResult
from .runner import CommandError, CommandRunner
from .templates import TemplateEngine, TemplateError

console = Console()
err_console = Console(stderr=True)

PROVIDER_ERRORS: tuple[type[Exception], ...] = (
    CommandError,
    PackageError,
    NodeRuntimeError,
    ServiceAccountError,
    DeployError,
    ShareError,
    SystemdError,
    CrontabError,
    TemplateError,
    BackupError,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to z2mctl's YAML config file.",
)

NO_START_OPTION = typer.Option(
    False,
    "--no-start",
    help="Write and enable the systemd unit without starting the service.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision a Zigbee2MQTT gateway host, restore its state from the newest
        backup on an NFS share and keep it backed up.

        Configure the share in /etc/z2mctl/config.yml (or Z2MCTL_* environment
        variables) and run `z2mctl provision` as root.
        """
    ).strip(),
)
backup_app = typer.Typer(help="Create, list and prune backup archives on the share.")
schedule_app = typer.Typer(help="Manage the recurring backup job.")
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(backup_app, name="backup")
app.add_typer(schedule_app, name="schedule")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    runner: CommandRunner
    logger: StructuredLogger
    locks: LockManager
    templates: TemplateEngine
    share: NfsShare
    systemd: SystemdProvider
    crontab: CrontabProvider
    provisioner: Provisioner

    def backup_job(self) -> BackupJob:
        """Return the backup job wired from the configuration."""
        return BackupJob(
            runner=self.runner,
            share=self.share,
            systemd=self.systemd,
            data_dir=self.config.app.data_dir,
            prefix=self.config.backups.prefix,
            retention_days=self.config.backups.retention_days,
        )


def _build_runtime(config: AppConfig) -> RuntimeContext:
    runner = CommandRunner()
    templates = TemplateEngine.with_overrides(config.templates_dir)
    share = NfsShare(
        runner,
        server=config.share.server,
        export=config.share.export,
        mount_point=config.share.mount_point,
        fstype=config.share.fstype,
        options=config.share.options,
    )
    systemd = SystemdProvider(
        templates=templates,
        runner=runner,
        unit_name=config.systemd.unit_name,
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
    )
    crontab = CrontabProvider(config.backups.crontab)
    provisioner = Provisioner(
        config,
        runner=runner,
        templates=templates,
        share=share,
        systemd=systemd,
        crontab=crontab,
    )
    return RuntimeContext(
        config=config,
        runner=runner,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        templates=templates,
        share=share,
        systemd=systemd,
        crontab=crontab,
        provisioner=provisioner,
    )


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    raise typer.Exit(code=ExitCode.VALIDATION)  # pragma: no cover - root callback sets it


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the z2mctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log each external command and step to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"z2mctl {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    configure_console_logging(verbose=verbose, console=err_console)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)

    overrides: dict[str, object] = {}
    if lock_timeout is not None:
        overrides["lock_timeout"] = lock_timeout
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    ctx.obj = _build_runtime(config)


def _command_error(op: OperationScope, message: str, *, rc: int) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=[message], rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _guarded(runtime: RuntimeContext, op: OperationScope) -> Iterator[None]:
    """Hold the run lock and translate failures into exit codes."""
    try:
        with runtime.locks.run_lock() as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            yield
    except (LockTimeoutError, BackupNotFoundError) as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    except PROVIDER_ERRORS as exc:
        _command_error(op, str(exc), rc=ExitCode.PROVIDER)


def _report_stage(op: OperationScope, result: StageResult) -> None:
    op.add_step(f"stage.{result.name}", status="success", detail=result.detail)
    console.print(f"[green]✓[/green] [bold]{result.name}[/bold]: {result.detail}")
    for warning in result.warnings:
        console.print(f"  [yellow]warning:[/yellow] {warning}")


def _finish(op: OperationScope, results: list[StageResult], summary: str) -> None:
    warnings = [warning for result in results for warning in result.warnings]
    changed = sum(1 for result in results if result.changed)
    if warnings:
        op.warning(summary, warnings=warnings, changed=changed)
    else:
        op.success(summary, changed=changed)


@app.command()
def provision(ctx: typer.Context, no_start: bool = NO_START_OPTION) -> None:
    """Prepare the host, deploy the gateway, restore its data and start it."""
    runtime = _get_runtime(ctx)
    results: list[StageResult] = []

    def _on_stage(result: StageResult) -> None:
        results.append(result)
        _report_stage(op, result)

    with runtime.logger.operation(
        "provision",
        args={"no_start": no_start},
        target={"kind": "host", "app": runtime.config.app.name},
    ) as op:
        with _guarded(runtime, op):
            runtime.provisioner.run(start=not no_start, on_stage=_on_stage)
        console.print(f"[green]{runtime.config.app.name} provisioning complete.[/green]")
        console.print(f"Check service status: systemctl status {runtime.systemd.unit_name}")
        console.print(f"Check logs:           journalctl -u {runtime.systemd.unit_name} -f")
        _finish(op, results, "Provisioning complete.")


def _single_stage(
    ctx: typer.Context,
    command: str,
    stage: Callable[[Provisioner], StageResult],
    *,
    args: dict[str, object] | None = None,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args=args or {},
        target={"kind": "host", "app": runtime.config.app.name},
    ) as op:
        with _guarded(runtime, op):
            result = stage(runtime.provisioner)
        _report_stage(op, result)
        _finish(op, [result], f"Stage {result.name} complete.")


@app.command()
def prepare(ctx: typer.Context) -> None:
    """Install OS packages and Node.js, and create the service account."""
    _single_stage(ctx, "prepare", lambda provisioner: provisioner.prepare_environment())


@app.command()
def deploy(ctx: typer.Context) -> None:
    """Clone or hard-update the gateway source and install dependencies."""
    _single_stage(ctx, "deploy", lambda provisioner: provisioner.deploy_application())


@app.command()
def restore(ctx: typer.Context) -> None:
    """Replace the data directory with the newest archive on the share.

    A running gateway service is stopped for the restore and started again.
    """
    _single_stage(
        ctx, "restore", lambda provisioner: provisioner.restore_state(stop_service=True)
    )


@app.command()
def activate(ctx: typer.Context, no_start: bool = NO_START_OPTION) -> None:
    """Write the systemd unit, start the service and register the backup job."""
    _single_stage(
        ctx,
        "activate",
        lambda provisioner: provisioner.activate_service(start=not no_start),
        args={"no_start": no_start},
    )


@backup_app.command("run")
def backup_run(ctx: typer.Context) -> None:
    """Stop the service, archive the data directory to the share, restart, prune."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup run",
        target={"kind": "share", "source": runtime.share.source},
    ) as op:
        with _guarded(runtime, op):
            result = runtime.backup_job().run()
        op.add_step("archive.create", detail=result.archive.name)
        op.add_step("archive.prune", detail=f"{len(result.pruned)} removed")
        console.print(f"[green]Backup written:[/green] {result.archive}")
        for path in result.pruned:
            console.print(f"  pruned {path.name}")
        op.success(
            "Backup complete.",
            changed=1 + len(result.pruned),
            context={"archive": result.archive, "pruned": result.pruned},
        )


@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List archives on the share, newest first."""
    runtime = _get_runtime(ctx)
    prefix = runtime.config.backups.prefix
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "share", "source": runtime.share.source},
    ) as op:
        with _guarded(runtime, op):
            with runtime.share.mounted() as root:
                archives = discover_archives(root, prefix)
        if json_output:
            typer.echo(json.dumps([archive.to_dict() for archive in archives], indent=2))
        elif not archives:
            console.print(f"No {prefix}-*.tar.gz backups found on {runtime.share.source}.")
        else:
            table = Table(title=f"Backups on {runtime.share.source}")
            table.add_column("Archive")
            table.add_column("Taken (UTC)")
            table.add_column("Note")
            for index, archive in enumerate(archives):
                notes = []
                if index == 0:
                    notes.append("latest")
                if archive.suspicious:
                    notes.append("[yellow]mtime mismatch[/yellow]")
                table.add_row(
                    archive.name,
                    archive.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                    ", ".join(notes),
                )
            console.print(table)
        op.success(f"Listed {len(archives)} archives.", changed=0)


@backup_app.command("prune")
def backup_prune(ctx: typer.Context) -> None:
    """Delete archives older than the retention window."""
    runtime = _get_runtime(ctx)
    backups = runtime.config.backups
    with runtime.logger.operation(
        "backup prune",
        args={"retention_days": backups.retention_days},
        target={"kind": "share", "source": runtime.share.source},
    ) as op:
        with _guarded(runtime, op):
            with runtime.share.mounted() as root:
                removed = prune_archives(root, backups.prefix, backups.retention_days)
        for path in removed:
            console.print(f"pruned {path.name}")
        console.print(
            f"[green]{len(removed)} archive(s) older than {backups.retention_days} days removed.[/green]"
        )
        op.success("Prune complete.", changed=len(removed), context={"removed": removed})


@schedule_app.command("install")
def schedule_install(ctx: typer.Context) -> None:
    """Write the backup script and register its crontab entry."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "schedule install",
        target={"kind": "crontab", "path": runtime.crontab.path},
    ) as op:
        with _guarded(runtime, op):
            script_changed, cron_changed = runtime.provisioner.install_schedule()
        op.add_step("script.write", status="success" if script_changed else "skipped")
        op.add_step("crontab.entry", status="success" if cron_changed else "skipped")
        state = "registered" if cron_changed else "already registered"
        console.print(f"[green]Backup job {state}[/green] ({runtime.config.backups.schedule}).")
        op.success("Schedule installed.", changed=int(script_changed) + int(cron_changed))


@schedule_app.command("remove")
def schedule_remove(ctx: typer.Context) -> None:
    """Remove the backup job's crontab entry (the script is kept)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "schedule remove",
        target={"kind": "crontab", "path": runtime.crontab.path},
    ) as op:
        with _guarded(runtime, op):
            removed = runtime.crontab.remove(runtime.provisioner.schedule_tag)
        message = "Backup job removed." if removed else "No backup job was registered."
        console.print(message)
        op.success(message, changed=int(removed))


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print the resolved configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("config show", args={"json": json_output}) as op:
        payload = runtime.config.to_dict()
        if json_output:
            typer.echo(json.dumps(payload, indent=2))
        else:
            typer.echo(yaml.safe_dump(payload, sort_keys=False).rstrip())
        op.success("Displayed configuration.", changed=0)


__all__ = ["app"]
