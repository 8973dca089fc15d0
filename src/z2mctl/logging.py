"""Structured operation logging for z2mctl.

Every CLI operation appends exactly one JSON object to
``<logs_dir>/operations.jsonl`` describing the command, its arguments, the
steps it performed and the final result. The file sink is best-effort: when
the directory cannot be created or a write fails the logger disables itself
and the command carries on.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER = logging.getLogger("z2mctl")

OPERATIONS_LOG_NAME = "operations.jsonl"


def configure_console_logging(*, verbose: bool, console: Console | None = None) -> None:
    """Route stdlib logging for the ``z2mctl`` namespace to a Rich handler."""
    level = logging.DEBUG if verbose else logging.WARNING
    LOGGER.setLevel(level)
    for handler in list(LOGGER.handlers):
        if isinstance(handler, RichHandler):
            LOGGER.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=verbose,
    )
    handler.setLevel(level)
    LOGGER.addHandler(handler)


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_json_safe(item) for item in value]
    return str(value)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(slots=True)
class OperationStep:
    """One recorded step within an operation."""

    name: str
    status: str
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status}
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass
class OperationScope:
    """Collects steps and the final result for a single CLI operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    op_id: str = field(default_factory=lambda: secrets.token_hex(6))
    started_at: str = field(default_factory=_now_iso)
    steps: list[OperationStep] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a named step and its outcome."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))
        LOGGER.debug("%s: %s [%s] %s", self.command, name, status, detail or "")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed with exit status *rc*."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
        }
        if backups is not None:
            result["backups"] = list(backups)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _json_safe(dict(context))
        self.result = result


class StructuredLogger:
    """Append JSON operation records to the logs directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the sink when it is unusable."""
        self.logs_dir = Path(logs_dir)
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL file operations are appended to."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._emit(scope, duration_ms)

    def _emit(self, scope: OperationScope, duration_ms: int) -> None:
        result = scope.result or {}
        status = result.get("status")
        level = {"error": logging.ERROR, "warning": logging.WARNING}.get(
            str(status), logging.INFO
        )
        LOGGER.log(level, "%s: %s", scope.command, result.get("message", ""))

        if not self._enabled:
            return
        record = {
            "timestamp": scope.started_at,
            "op_id": scope.op_id,
            "pid": os.getpid(),
            "command": scope.command,
            "args": _json_safe(scope.args),
            "target": _json_safe(scope.target),
            "steps": [step.to_dict() for step in scope.steps],
            "result": result,
            "duration_ms": duration_ms,
        }
        if scope.lock_wait_ms is not None:
            record["lock_wait_ms"] = scope.lock_wait_ms
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = [
    "OperationScope",
    "OperationStep",
    "StructuredLogger",
    "configure_console_logging",
]
