"""Configuration loader for z2mctl.

Values are resolved from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/z2mctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``Z2MCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export Z2MCTL_SHARE__SERVER=192.168.1.34
    export Z2MCTL_BACKUPS__RETENTION_DAYS=30

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``. The NFS share coordinates have no sensible default and must
be supplied by the operator.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "Z2MCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class AppSettings:
    """Where and how the gateway application is deployed."""

    name: str
    repository: str
    install_dir: Path
    data_dir: Path
    service_user: str
    serial_device: str | None
    max_old_space_size: int

    @property
    def config_file(self) -> Path:
        """Return the gateway's own ``configuration.yaml`` path."""
        return self.data_dir / "configuration.yaml"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "repository": self.repository,
            "install_dir": str(self.install_dir),
            "data_dir": str(self.data_dir),
            "service_user": self.service_user,
            "serial_device": self.serial_device,
            "max_old_space_size": self.max_old_space_size,
        }


@dataclass(frozen=True)
class NodeSettings:
    """Managed Node.js runtime source."""

    major: int = 20
    setup_url: str = "https://deb.nodesource.com/setup_{major}.x"

    @property
    def resolved_setup_url(self) -> str:
        """Return the setup script URL for the configured major version."""
        return self.setup_url.format(major=self.major)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"major": self.major, "setup_url": self.setup_url}


@dataclass(frozen=True)
class ShareSettings:
    """Remote NFS share holding the backup archives."""

    server: str
    export: str
    mount_point: Path
    fstype: str = "nfs"
    options: str = "rw"

    @property
    def source(self) -> str:
        """Return the ``server:/export`` mount source."""
        return f"{self.server}:{self.export}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "server": self.server,
            "export": self.export,
            "mount_point": str(self.mount_point),
            "fstype": self.fstype,
            "options": self.options,
        }


@dataclass(frozen=True)
class SystemdSettings:
    """Systemd integration configuration values."""

    unit_dir: Path
    unit_name: str
    systemctl_bin: str = "systemctl"
    exec_start: str | None = None
    restart_sec: int = 10
    notify: bool = True
    watchdog_sec: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "unit_name": self.unit_name,
            "systemctl_bin": self.systemctl_bin,
            "exec_start": self.exec_start,
            "restart_sec": self.restart_sec,
            "notify": self.notify,
            "watchdog_sec": self.watchdog_sec,
        }


@dataclass(frozen=True)
class BackupSettings:
    """Archive naming, retention and scheduling."""

    prefix: str
    retention_days: int
    script_path: Path
    schedule: str
    crontab: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "prefix": self.prefix,
            "retention_days": self.retention_days,
            "script_path": str(self.script_path),
            "schedule": self.schedule,
            "crontab": str(self.crontab),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for z2mctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    timezone: str
    packages: tuple[str, ...]
    upgrade_packages: bool
    app: AppSettings
    node: NodeSettings
    share: ShareSettings
    systemd: SystemdSettings
    backups: BackupSettings

    @property
    def unit_path(self) -> Path:
        """Return the full path of the gateway's systemd unit."""
        return self.systemd.unit_dir / self.systemd.unit_name

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "timezone": self.timezone,
            "packages": list(self.packages),
            "upgrade_packages": self.upgrade_packages,
            "app": self.app.to_dict(),
            "node": self.node.to_dict(),
            "share": self.share.to_dict(),
            "systemd": self.systemd.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/z2mctl/config.yml",
    "logs_dir": "/var/log/z2mctl",
    "runtime_dir": "/run/z2mctl",
    "templates_dir": "/etc/z2mctl/templates",
    "lock_timeout": 30.0,
    "timezone": "Etc/UTC",
    "packages": [
        "build-essential",
        "python3",
        "python3-pip",
        "make",
        "gcc",
        "g++",
        "nfs-common",
        "curl",
        "git",
        "libsystemd-dev",
    ],
    "upgrade_packages": True,
    "app": {
        "name": "zigbee2mqtt",
        "repository": "https://github.com/Koenkk/zigbee2mqtt.git",
        "install_dir": "/opt/zigbee2mqtt",
        "data_dir": None,  # derived from install_dir when absent
        "service_user": "zigbee2mqtt",
        "serial_device": None,
        "max_old_space_size": 256,
    },
    "node": {
        "major": 20,
        "setup_url": "https://deb.nodesource.com/setup_{major}.x",
    },
    "share": {
        "server": None,
        "export": None,
        "mount_point": "/mnt/zigbee2mqtt-backup",
        "fstype": "nfs",
        "options": "rw",
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "unit_name": None,  # "<app.name>.service"
        "systemctl_bin": "systemctl",
        "exec_start": None,
        "restart_sec": 10,
        "notify": True,
        "watchdog_sec": 10,
    },
    "backups": {
        "prefix": None,  # app.name
        "retention_days": 14,
        "script_path": None,  # /usr/local/sbin/<app.name>-backup
        "schedule": "0 3 * * *",
        "crontab": "/etc/crontab",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("app", "node", "share", "systemd", "backups")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    packages = raw.get("packages")
    if packages is not None:
        for index, item in enumerate(_as_sequence(packages, "packages")):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(f"packages[{index}] must be a non-empty string.")

    share = _as_dict(raw.get("share"), "share")
    missing = [
        f"share.{key}"
        for key in ("server", "export")
        if not isinstance(share.get(key), str) or not str(share.get(key)).strip()
    ]
    if missing:
        joined = ", ".join(missing)
        raise ConfigError(
            f"Missing required configuration: {joined}. Set them in the config file "
            f"or via {ENV_PREFIX}SHARE__SERVER / {ENV_PREFIX}SHARE__EXPORT."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    app_map = _as_dict(raw.get("app"), "app")
    name = _expect_non_empty(app_map.get("name"), "app.name")
    install_dir = _to_path(app_map.get("install_dir"))
    data_dir_value = app_map.get("data_dir")
    data_dir = _to_path(data_dir_value) if data_dir_value else install_dir / "data"
    serial_value = app_map.get("serial_device")
    serial_device = str(serial_value).strip() if serial_value else None
    max_old_space = _expect_int(
        app_map.get("max_old_space_size"), "app.max_old_space_size", default=256
    )
    if max_old_space <= 0:
        raise ConfigError("app.max_old_space_size must be greater than zero.")
    app = AppSettings(
        name=name,
        repository=_expect_non_empty(app_map.get("repository"), "app.repository"),
        install_dir=install_dir,
        data_dir=data_dir,
        service_user=_expect_non_empty(app_map.get("service_user"), "app.service_user"),
        serial_device=serial_device or None,
        max_old_space_size=max_old_space,
    )

    node_map = _as_dict(raw.get("node"), "node")
    node_major = _expect_int(node_map.get("major"), "node.major", default=20)
    if node_major <= 0:
        raise ConfigError("node.major must be greater than zero.")
    node = NodeSettings(
        major=node_major,
        setup_url=_expect_non_empty(node_map.get("setup_url"), "node.setup_url"),
    )

    share_map = _as_dict(raw.get("share"), "share")
    share = ShareSettings(
        server=_expect_non_empty(share_map.get("server"), "share.server"),
        export=_expect_non_empty(share_map.get("export"), "share.export"),
        mount_point=_to_path(share_map.get("mount_point")),
        fstype=_expect_non_empty(share_map.get("fstype"), "share.fstype"),
        options=_expect_non_empty(share_map.get("options"), "share.options"),
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    unit_name_value = systemd_map.get("unit_name")
    unit_name = str(unit_name_value) if unit_name_value else f"{name}.service"
    exec_start_value = systemd_map.get("exec_start")
    restart_sec = _expect_int(systemd_map.get("restart_sec"), "systemd.restart_sec", default=10)
    watchdog_sec = _expect_int(
        systemd_map.get("watchdog_sec"), "systemd.watchdog_sec", default=10
    )
    if restart_sec < 0 or watchdog_sec < 0:
        raise ConfigError("systemd.restart_sec and systemd.watchdog_sec must be non-negative.")
    systemd = SystemdSettings(
        unit_dir=_to_path(systemd_map.get("unit_dir")),
        unit_name=unit_name,
        systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
        exec_start=str(exec_start_value) if exec_start_value else None,
        restart_sec=restart_sec,
        notify=_expect_bool(systemd_map.get("notify"), "systemd.notify", default=True),
        watchdog_sec=watchdog_sec,
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    prefix_value = backups_map.get("prefix")
    retention_days = _expect_int(
        backups_map.get("retention_days"), "backups.retention_days", default=14
    )
    if retention_days <= 0:
        raise ConfigError("backups.retention_days must be greater than zero.")
    script_value = backups_map.get("script_path")
    schedule = _expect_non_empty(backups_map.get("schedule"), "backups.schedule")
    if len(schedule.split()) != 5:
        raise ConfigError(
            f"backups.schedule must be a five-field cron expression. Got {schedule!r}."
        )
    backups = BackupSettings(
        prefix=str(prefix_value) if prefix_value else name,
        retention_days=retention_days,
        script_path=(
            _to_path(script_value) if script_value else Path(f"/usr/local/sbin/{name}-backup")
        ),
        schedule=schedule,
        crontab=_to_path(backups_map.get("crontab")),
    )

    packages_raw = raw.get("packages") or []
    packages = tuple(str(item).strip() for item in _as_sequence(packages_raw, "packages"))

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        timezone=_expect_non_empty(raw.get("timezone"), "timezone"),
        packages=packages,
        upgrade_packages=_expect_bool(
            raw.get("upgrade_packages"), "upgrade_packages", default=True
        ),
        app=app,
        node=node,
        share=share,
        systemd=systemd,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
        elif isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
        else:
            raise ConfigError(
                f"Environment overrides conflict with scalar value at {'.'.join(path)}"
            )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


def _to_path(value: object) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str) and value.strip():
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty(value: object, label: str) -> str:
    if value is None or isinstance(value, (bool, Mapping, list)):
        raise ConfigError(f"{label} must be a non-empty string.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


__all__ = [
    "AppConfig",
    "AppSettings",
    "BackupSettings",
    "ConfigError",
    "NodeSettings",
    "ShareSettings",
    "SystemdSettings",
    "load_config",
]
