"""Tests for the structured operations log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from hardenctl.logging import HUMAN_LOG, StructuredLogger, get_logger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_one_record_per_operation(tmp_path: Path) -> None:
    """Each operation appends exactly one JSON line with steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("run", args={"dry_run": False}, target={"service": "mongod"}) as op:
        op.add_step("step.tls-config", detail={"changed": True})
        op.set_lock_wait_ms(12)
        op.success("Converged.", changed=1)
    with logger.operation("status") as op:
        op.success("ok")

    first, second = _records(logger)
    assert first["operation"] == "run"
    assert first["args"] == {"dry_run": False}
    assert first["target"] == {"service": "mongod"}
    assert first["lock_wait_ms"] == 12
    assert first["steps"][0]["name"] == "step.tls-config"
    assert first["steps"][0]["detail"] == {"changed": True}
    assert first["result"]["changed"] == 1
    assert second["operation"] == "status"
    assert second["target"] is None


def test_exception_is_logged_as_error(tmp_path: Path) -> None:
    """A body that raises still produces an error record."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError), logger.operation("run"):
        raise RuntimeError("lost the service")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["message"] == "RuntimeError: lost the service"


def test_missing_result_defaults_to_success(tmp_path: Path) -> None:
    """Operations that never record an outcome are closed as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("config.show"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"
    assert record["result"]["message"] == "Operation finished without explicit result."


def test_human_log_mirrors_progress(tmp_path: Path) -> None:
    """Progress lines reach hardenctl.log in the same directory."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("run") as op:
        op.add_step("snapshot.pristine")
        get_logger("executor").warning("Step %s failed: %s", "tls", "boom")
        op.error("1 step(s) failed", rc=1)

    text = (tmp_path / "logs" / HUMAN_LOG).read_text(encoding="utf-8")
    assert "run: snapshot.pristine [success]" in text
    assert "[hardenctl.executor] Step tls failed: boom" in text
    assert _records(logger)[0]["result"]["rc"] == 1


def test_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when the log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("run", args={"enforce": True}) as op:
        op.success("done")


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so later writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.operations_log_path

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("run") as op:
        op.success("done")

    assert logger.enabled is False

    with logger.operation("status") as op:
        op.success("done")


def test_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings are recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("rollback", args={"path": Path("desired.yml")}) as op:
        op.warning(
            "partial rollback",
            warnings=("teardown skipped",),
            errors=("sec1: undo reported failure",),
            changed=1,
            context={"path": Path("/var/lib/hardenctl"), "obj": Custom(), "ids": {3}},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert record["args"] == {"path": "desired.yml"}
    assert result["status"] == "warning"
    assert result["warnings"] == ["teardown skipped"]
    assert result["errors"] == ["sec1: undo reported failure"]
    assert result["context"] == {"path": "/var/lib/hardenctl", "obj": "<custom>", "ids": "{3}"}


def test_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors default to the message when none are provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("run") as op:
        op.error("boom")

    (record,) = _records(logger)
    assert record["result"]["errors"] == ["boom"]
