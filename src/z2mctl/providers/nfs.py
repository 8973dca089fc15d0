"""Scoped mounting of the NFS share that stores backup archives."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandError, CommandRunner

LOGGER = logging.getLogger(__name__)


class ShareError(RuntimeError):
    """Raised when the share cannot be mounted or unmounted."""


@dataclass(slots=True)
class NfsShare:
    """Mount ``server:/export`` at a local mount point on demand."""

    runner: CommandRunner
    server: str
    export: str
    mount_point: Path
    fstype: str = "nfs"
    options: str = "rw"
    mount_bin: str = "mount"
    umount_bin: str = "umount"
    mountpoint_bin: str = "mountpoint"

    @property
    def source(self) -> str:
        """Return the ``server:/export`` mount source."""
        return f"{self.server}:{self.export}"

    def is_mounted(self) -> bool:
        """Return True when something is mounted at the mount point."""
        result = self.runner.run([self.mountpoint_bin, "-q", str(self.mount_point)], check=False)
        return result.returncode == 0

    def mount(self) -> None:
        """Create the mount point and mount the share there."""
        try:
            self.mount_point.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ShareError(f"Cannot create mount point {self.mount_point}: {exc}") from exc
        LOGGER.info("Mounting %s at %s", self.source, self.mount_point)
        try:
            self.runner.run(
                [
                    self.mount_bin,
                    "-t",
                    self.fstype,
                    "-o",
                    self.options,
                    self.source,
                    str(self.mount_point),
                ]
            )
        except CommandError as exc:
            raise ShareError(f"Failed to mount {self.source}: {exc}") from exc

    def unmount(self) -> None:
        """Unmount the share."""
        LOGGER.info("Unmounting %s", self.mount_point)
        try:
            self.runner.run([self.umount_bin, str(self.mount_point)])
        except CommandError as exc:
            raise ShareError(f"Failed to unmount {self.mount_point}: {exc}") from exc

    @contextmanager
    def mounted(self) -> Iterator[Path]:
        """Yield the mount point with the share mounted.

        A share this block mounted is unmounted on every exit path; a share
        that was already mounted beforehand is left alone.
        """
        acquired = False
        if self.is_mounted():
            LOGGER.info("%s is already mounted, skipping mount.", self.mount_point)
        else:
            self.mount()
            acquired = True
        try:
            yield self.mount_point
        except BaseException:
            if acquired:
                try:
                    self.unmount()
                except ShareError as exc:
                    LOGGER.error("Unmount after failure also failed: %s", exc)
            raise
        if acquired:
            self.unmount()


__all__ = ["NfsShare", "ShareError"]
