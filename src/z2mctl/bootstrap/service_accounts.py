"""Inspect and create the system account the gateway runs as."""
from __future__ import annotations

import grp
import pwd
from dataclasses import dataclass, field
from pathlib import Path

from ..runner import CommandError, CommandRunner

NOLOGIN_SHELL = "/usr/sbin/nologin"


class ServiceAccountError(RuntimeError):
    """Raised when the service account cannot be created."""


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired attributes for the gateway's service account."""

    name: str
    home: Path
    shell: str = NOLOGIN_SHELL
    system: bool = True


@dataclass(slots=True)
class ServiceAccountStatus:
    """Current state of the account on the host."""

    exists: bool
    uid: int | None = None
    gid: int | None = None
    home: Path | None = None
    shell: str | None = None
    group: str | None = None


@dataclass(slots=True)
class ServiceAccountPlan:
    """The ``useradd`` command to run (if any) plus drift warnings."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    command: list[str] | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True when applying the plan creates the account."""
        return self.command is not None


def inspect_service_account(name: str) -> ServiceAccountStatus:
    """Return the passwd/group view of account *name*."""
    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        return ServiceAccountStatus(exists=False)
    try:
        group = grp.getgrgid(entry.pw_gid).gr_name
    except KeyError:
        group = None
    return ServiceAccountStatus(
        exists=True,
        uid=entry.pw_uid,
        gid=entry.pw_gid,
        home=Path(entry.pw_dir),
        shell=entry.pw_shell,
        group=group,
    )


def plan_service_account(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return what must happen for *spec* to hold on this host.

    An existing account is never modified; differences are only reported.
    """
    status = inspect_service_account(spec.name)
    plan = ServiceAccountPlan(spec=spec, status=status)
    if not status.exists:
        command = ["useradd"]
        if spec.system:
            command.append("--system")
        command.extend(
            [
                "--user-group",
                "--no-create-home",
                "--home-dir",
                str(spec.home),
                "--shell",
                spec.shell,
                spec.name,
            ]
        )
        plan.command = command
        return plan

    if status.home is not None and status.home != spec.home:
        plan.warnings.append(
            f"User '{spec.name}' home '{status.home}' differs from desired '{spec.home}'."
        )
    if status.shell and status.shell != spec.shell:
        plan.warnings.append(
            f"User '{spec.name}' shell '{status.shell}' differs from desired '{spec.shell}'."
        )
    if status.group and status.group != spec.name:
        plan.warnings.append(
            f"User '{spec.name}' primary group is '{status.group}', expected '{spec.name}'."
        )
    return plan


def apply_service_account_plan(plan: ServiceAccountPlan, runner: CommandRunner) -> None:
    """Run the plan's ``useradd`` command, if it has one."""
    if plan.command is None:
        return
    try:
        runner.run(plan.command)
    except CommandError as exc:
        raise ServiceAccountError(str(exc)) from exc


def ensure_service_account(spec: ServiceAccountSpec, runner: CommandRunner) -> ServiceAccountPlan:
    """Create the account described by *spec* when it does not exist yet."""
    plan = plan_service_account(spec)
    apply_service_account_plan(plan, runner)
    return plan


__all__ = [
    "ServiceAccountError",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "ensure_service_account",
    "inspect_service_account",
    "plan_service_account",
]
