"""Structured logging for hardenctl operations.

Every CLI operation produces exactly one JSON object appended to
``operations.jsonl`` inside the configured logs directory. Human readable
progress lines are mirrored to ``hardenctl.log`` through the standard
:mod:`logging` machinery so operators can ``tail -f`` a run.

The logger never fails a command: when the directory cannot be created or a
write fails, it disables itself and the operation continues.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER_NAME = "hardenctl"
OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "hardenctl.log"
_HUMAN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a child of the package logger."""
    if not name:
        return logging.getLogger(LOGGER_NAME)
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


@dataclass
class OperationScope:
    """Mutable record for a single operation, finalised on scope exit."""

    operation: str
    args: dict[str, object]
    target: dict[str, object] | None
    started_at: str = field(default_factory=_now_iso)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None
    _started: float = field(default_factory=time.monotonic, repr=False)

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step (apply, retry, restart, rollback...)."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self.steps.append(entry)
        get_logger("ops").info("%s: %s [%s]", self.operation, name, status)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Attach the time spent waiting for locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int | bool = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        warnings: Sequence[str] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
            warnings=warnings,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | bool = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            backups=backups,
            context=context,
            warnings=warnings,
            errors=errors,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            context=context,
            warnings=warnings,
            errors=list(errors) if errors else [message],
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | bool = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": int(changed),
            "warnings": [str(item) for item in warnings or []],
            "errors": [str(item) for item in errors or []],
            "backups": [str(item) for item in backups or []],
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result
        level = logging.ERROR if status == "error" else (
            logging.WARNING if status == "warning" else logging.INFO
        )
        get_logger("ops").log(level, "%s: %s", self.operation, message)

    def to_record(self) -> dict[str, object]:
        """Return the JSON document written to ``operations.jsonl``."""
        finished = time.monotonic()
        record: dict[str, object] = {
            "ts": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((finished - self._started) * 1000),
            "operation": self.operation,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target) if self.target is not None else None,
            "pid": os.getpid(),
            "steps": self.steps,
            "result": self.result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSONL operations log plus a human readable mirror."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._human_log_path = self._log_dir / HUMAN_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_human_handler()

    @property
    def enabled(self) -> bool:
        """Whether log records are still being written."""
        return self._enabled

    @property
    def operations_log_path(self) -> Path:
        """Location of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Context manager yielding an :class:`OperationScope`.

        If the body raises without recording a result the operation is logged
        as an error before the exception propagates.
        """
        scope = OperationScope(
            operation=name,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation finished without explicit result.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False

    def _attach_human_handler(self) -> None:
        """Point the package logger at ``hardenctl.log`` in this directory.

        Only one human log handler is installed at a time; a logger created for
        another directory replaces the previous one.
        """
        package_logger = logging.getLogger(LOGGER_NAME)
        target = os.path.abspath(self._human_log_path)
        for existing in list(package_logger.handlers):
            if not getattr(existing, "_hardenctl_human", False):
                continue
            if isinstance(existing, logging.FileHandler) and existing.baseFilename == target:
                return
            package_logger.removeHandler(existing)
            existing.close()
        handler = logging.FileHandler(target, encoding="utf-8", delay=True)
        handler.setFormatter(logging.Formatter(_HUMAN_FORMAT))
        handler._hardenctl_human = True  # type: ignore[attr-defined]
        package_logger.addHandler(handler)
        if package_logger.level == logging.NOTSET:
            package_logger.setLevel(logging.INFO)


__all__ = ["OperationScope", "StructuredLogger", "get_logger"]
