"""Advisory run lock serialising provisioning and backup runs."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

DEFAULT_LOCK_NAME = "z2mctl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Information about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out ``flock`` based locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str = DEFAULT_LOCK_NAME) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def run_lock(
        self,
        name: str = DEFAULT_LOCK_NAME,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the exclusive lock *name* for the duration of the block."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout

        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            started = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for {path}; "
                            "another z2mctl run appears to be in progress."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
