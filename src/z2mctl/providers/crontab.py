"""Tagged entries in the system-wide crontab."""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

TAG_PREFIX = "# z2mctl:"

# Shape of the lines backup_cron_line writes: schedule, user, script, log redirect.
_MANAGED_LINE = re.compile(r"^(?:@\w+|\S+(?:\s+\S+){4})\s+root\s+\S+\s+>>\s+\S+\s+2>&1$")


class CrontabError(RuntimeError):
    """Raised when the crontab cannot be read or written."""


def _owned_by_tag(candidate: str, line: str | None = None) -> bool:
    """Return True when *candidate*, found under a tag, is a z2mctl line.

    Anything else, such as an operator job left below an orphaned tag, is kept.
    """
    stripped = candidate.strip()
    if line is not None and stripped == line.strip():
        return True
    return _MANAGED_LINE.match(stripped) is not None


def upsert_entry(table: str, tag: str, line: str) -> tuple[str, bool]:
    """Return *table* with *line* registered under *tag* and whether it changed.

    The entry is keyed by the tag comment, so a changed schedule or script
    path replaces the previous line instead of adding a second one. The line
    under the tag is only replaced when it has the shape z2mctl writes, and
    untagged copies of *line* are dropped.
    """
    marker = f"{TAG_PREFIX}{tag}"
    lines = table.splitlines()
    result: list[str] = []
    found = False
    index = 0
    while index < len(lines):
        current = lines[index]
        if current.strip() == marker:
            if not found:
                result.extend([marker, line])
                found = True
            index += 1
            if index < len(lines) and _owned_by_tag(lines[index], line):
                index += 1
            continue
        if current.strip() == line.strip():
            index += 1
            continue
        result.append(current)
        index += 1
    if not found:
        result.extend([marker, line])
    updated = "\n".join(result) + "\n"
    return updated, updated != table


def remove_entry(table: str, tag: str) -> tuple[str, bool]:
    """Return *table* without the entry registered under *tag*."""
    marker = f"{TAG_PREFIX}{tag}"
    lines = table.splitlines()
    result: list[str] = []
    index = 0
    while index < len(lines):
        if lines[index].strip() == marker:
            index += 1
            if index < len(lines) and _owned_by_tag(lines[index]):
                index += 1
            continue
        result.append(lines[index])
        index += 1
    updated = "\n".join(result) + "\n" if result else ""
    return updated, updated != table


@dataclass(slots=True)
class CrontabProvider:
    """Maintain z2mctl-owned lines in ``/etc/crontab``."""

    path: Path = Path("/etc/crontab")

    def read(self) -> str:
        """Return the current crontab text (empty when absent)."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise CrontabError(f"Failed to read {self.path}: {exc}") from exc

    def ensure_entry(self, tag: str, line: str) -> bool:
        """Register *line* under *tag*; return True when the file changed."""
        updated, changed = upsert_entry(self.read(), tag, line)
        if changed:
            self._write(updated)
        return changed

    def remove(self, tag: str) -> bool:
        """Remove the entry for *tag*; return True when the file changed."""
        updated, changed = remove_entry(self.read(), tag)
        if changed:
            self._write(updated)
        return changed

    def _write(self, content: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".crontab.")
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.chmod(tmp_path, 0o644)
                os.replace(tmp_path, self.path)
            finally:
                tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            raise CrontabError(f"Failed to write {self.path}: {exc}") from exc


def backup_cron_line(schedule: str, script_path: Path, log_file: Path) -> str:
    """Return the system crontab line that runs the backup script as root."""
    return f"{schedule} root {script_path} >> {log_file} 2>&1"


__all__ = [
    "CrontabError",
    "CrontabProvider",
    "backup_cron_line",
    "remove_entry",
    "upsert_entry",
]
