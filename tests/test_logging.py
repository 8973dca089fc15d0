"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from z2mctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_one_record_with_steps(tmp_path: Path) -> None:
    """Each operation appends a single JSON line including its steps."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("backup run", target={"kind": "share"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("archive.create", detail="zigbee2mqtt-20240101-030000.tar.gz")
        op.success("Backup complete.", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "backup run"
    assert record["target"] == {"kind": "share"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [
        {
            "name": "archive.create",
            "status": "success",
            "detail": "zigbee2mqtt-20240101-030000.tar.gz",
        }
    ]
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_operation_records_error_on_exception(tmp_path: Path) -> None:
    """An exception escaping the block is recorded as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("restore"):
            raise RuntimeError("share offline")

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["RuntimeError: share offline"]  # type: ignore[index]


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """Blocks that never report a result are logged as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("config show"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            backups=["zigbee2mqtt-20240101-030000.tar.gz"],
            context={"path": Path("/opt/zigbee2mqtt/data"), "obj": Custom()},
        )

    (record,) = _records(logger)
    assert record["args"] == {"path": "foo"}
    result = record["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["note"]  # type: ignore[index]
    assert result["errors"] == ["err"]  # type: ignore[index]
    assert result["backups"] == ["zigbee2mqtt-20240101-030000.tar.gz"]  # type: ignore[index]
    assert result["context"] == {"path": "/opt/zigbee2mqtt/data", "obj": "<custom>"}  # type: ignore[index]


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.error("boom", errors=None, rc=4, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["boom"]  # type: ignore[index]
    assert result["rc"] == 4  # type: ignore[index]
    assert result["context"] == {"value": "{1, 2}"}  # type: ignore[index]
