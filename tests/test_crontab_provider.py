"""Tests for tagged crontab entries."""
from __future__ import annotations

from pathlib import Path

from z2mctl.providers.crontab import (
    CrontabProvider,
    backup_cron_line,
    remove_entry,
    upsert_entry,
)

SYSTEM_TABLE = (
    "SHELL=/bin/sh\n"
    "PATH=/usr/local/sbin:/usr/local/bin:/sbin:/bin:/usr/sbin:/usr/bin\n"
    "17 *\t* * *\troot\tcd / && run-parts --report /etc/cron.hourly\n"
)
FOREIGN_JOB = "15 4 * * * root /usr/local/bin/other-job"


def _line(schedule: str = "0 3 * * *") -> str:
    return backup_cron_line(
        schedule,
        Path("/usr/local/sbin/zigbee2mqtt-backup"),
        Path("/var/log/z2mctl/backup.log"),
    )


def test_backup_cron_line_runs_as_root() -> None:
    """The system crontab line names root and redirects output."""
    assert _line() == (
        "0 3 * * * root /usr/local/sbin/zigbee2mqtt-backup "
        ">> /var/log/z2mctl/backup.log 2>&1"
    )


def test_ensure_entry_is_idempotent(tmp_path: Path) -> None:
    """Registering the same entry twice leaves exactly one line."""
    path = tmp_path / "crontab"
    path.write_text(SYSTEM_TABLE, encoding="utf-8")
    provider = CrontabProvider(path)

    assert provider.ensure_entry("zigbee2mqtt-backup", _line()) is True
    assert provider.ensure_entry("zigbee2mqtt-backup", _line()) is False

    content = path.read_text(encoding="utf-8")
    assert content.startswith(SYSTEM_TABLE)
    assert content.count("zigbee2mqtt-backup >>") == 1
    assert content.count("# z2mctl:zigbee2mqtt-backup") == 1


def test_changed_schedule_replaces_entry() -> None:
    """A new schedule replaces the tagged line rather than adding another."""
    table, _ = upsert_entry(SYSTEM_TABLE, "zigbee2mqtt-backup", _line())

    updated, changed = upsert_entry(table, "zigbee2mqtt-backup", _line("30 2 * * *"))

    assert changed is True
    assert "0 3 * * * root" not in updated
    assert updated.count("30 2 * * * root /usr/local/sbin/zigbee2mqtt-backup") == 1


def test_untagged_duplicate_is_adopted() -> None:
    """A hand-written copy of the line is folded into the tagged entry."""
    table = SYSTEM_TABLE + _line() + "\n"

    updated, changed = upsert_entry(table, "zigbee2mqtt-backup", _line())

    assert changed is True
    assert updated.count(_line()) == 1
    assert updated.endswith(f"# z2mctl:zigbee2mqtt-backup\n{_line()}\n")


def test_remove_entry(tmp_path: Path) -> None:
    """Removing drops the tag and its line and leaves other jobs intact."""
    path = tmp_path / "crontab"
    provider = CrontabProvider(path)
    provider.ensure_entry("zigbee2mqtt-backup", _line())
    path.write_text(SYSTEM_TABLE + path.read_text(encoding="utf-8"), encoding="utf-8")

    assert provider.remove("zigbee2mqtt-backup") is True
    assert path.read_text(encoding="utf-8") == SYSTEM_TABLE
    assert provider.remove("zigbee2mqtt-backup") is False


def test_orphaned_tag_keeps_following_job_on_upsert() -> None:
    """A job below a tag whose line was deleted by hand is not replaced."""
    table = f"# z2mctl:zigbee2mqtt-backup\n{FOREIGN_JOB}\n"

    updated, changed = upsert_entry(table, "zigbee2mqtt-backup", _line())

    assert changed is True
    assert updated == f"# z2mctl:zigbee2mqtt-backup\n{_line()}\n{FOREIGN_JOB}\n"


def test_orphaned_tag_keeps_following_job_on_remove() -> None:
    """Removing an orphaned tag drops only the tag comment."""
    table = SYSTEM_TABLE + f"# z2mctl:zigbee2mqtt-backup\n{FOREIGN_JOB}\n"

    updated, changed = remove_entry(table, "zigbee2mqtt-backup")

    assert changed is True
    assert updated == SYSTEM_TABLE + f"{FOREIGN_JOB}\n"


def test_managed_line_with_other_script_is_replaced() -> None:
    """A tagged line written for a previous script path is still owned."""
    old = backup_cron_line(
        "0 3 * * *", Path("/usr/local/sbin/old-backup"), Path("/var/log/z2mctl/backup.log")
    )
    table = SYSTEM_TABLE + f"# z2mctl:zigbee2mqtt-backup\n{old}\n"

    updated, _ = upsert_entry(table, "zigbee2mqtt-backup", _line())

    assert updated == SYSTEM_TABLE + f"# z2mctl:zigbee2mqtt-backup\n{_line()}\n"


def test_remove_entry_on_missing_table() -> None:
    """Removing from an empty table is a no-op."""
    assert remove_entry("", "zigbee2mqtt-backup") == ("", False)


def test_missing_crontab_reads_empty(tmp_path: Path) -> None:
    """An absent crontab file is treated as empty and created on write."""
    provider = CrontabProvider(tmp_path / "etc" / "crontab")

    assert provider.read() == ""
    assert provider.ensure_entry("zigbee2mqtt-backup", _line()) is True
    assert oct((tmp_path / "etc" / "crontab").stat().st_mode & 0o777) == "0o644"
