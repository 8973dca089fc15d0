"""Subprocess seam shared by every provisioning step."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command exits non-zero or cannot be started."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Capture the failing command and its output."""
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = stderr.strip() or stdout.strip() or "no output"
        super().__init__(f"{' '.join(self.argv)} failed (exit {returncode}): {message}")


class CommandRunner:
    """Run external commands, optionally as an unprivileged account."""

    def __init__(self, *, sudo_bin: str = "sudo") -> None:
        """Initialise the runner with the privilege-switching binary."""
        self.sudo_bin = sudo_bin

    def build_argv(
        self,
        args: Sequence[str],
        *,
        user: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> list[str]:
        """Return the argv actually executed for *args*.

        Commands run as *user* are wrapped in ``sudo -u <user> env K=V ...``
        because sudo resets the caller's environment.
        """
        argv = [str(item) for item in args]
        if user is None:
            return argv
        prefix = [self.sudo_bin, "-u", user]
        if env:
            prefix.append("env")
            prefix.extend(f"{key}={value}" for key, value in env.items())
        return [*prefix, *argv]

    def run(
        self,
        args: Sequence[str],
        *,
        user: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* and return the completed process.

        Raises :class:`CommandError` when *check* is true and the command
        fails, or when the binary cannot be found.
        """
        argv = self.build_argv(args, user=user, env=env)
        process_env: dict[str, str] | None = None
        if user is None and env:
            process_env = os.environ.copy()
            process_env.update(env)

        LOGGER.debug("exec: %s", " ".join(argv))
        try:
            result = self._execute(argv, env=process_env, cwd=cwd, input_text=input_text)
        except FileNotFoundError as exc:
            raise CommandError(argv, 127, stderr=f"{argv[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            raise CommandError(
                argv,
                result.returncode,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
            )
        return result

    def _execute(
        self,
        argv: list[str],
        *,
        env: Mapping[str, str] | None,
        cwd: Path | None,
        input_text: str | None,
    ) -> subprocess.CompletedProcess[str]:
        """Invoke the process (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            check=False,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            input=input_text,
        )


__all__ = ["CommandError", "CommandRunner"]
