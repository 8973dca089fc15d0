"""Process exit codes returned by z2mctl commands."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    # Invalid or incomplete configuration.
    VALIDATION = 2
    # Host state prevents the run: no backup archive, lock held elsewhere.
    ENVIRONMENT = 3
    # An external command (apt, git, mount, tar, systemctl...) failed.
    PROVIDER = 4
