"""Durable, resumable run state.

A single JSON record (``run-state.json`` under the state directory) captures
where the executor is: the session, its state machine position, which steps
completed (with the fingerprint of the declaration that completed them), which
failed, recovery points, a pending restart confirmation and the progress of
any rollback. The record is rewritten atomically after every transition so a
crash at any point leaves a consistent file behind.

The executor and rollback manager only touch the record through
:class:`RunStateTracker`. Reading needs no lock.
"""
from __future__ import annotations

import os
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from ..logging import get_logger
from .files import StateFileError, read_json, write_json

_log = get_logger("runstate")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_session_id() -> str:
    """Return a sortable, unique session identifier."""
    timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
    return f"{timestamp}-{secrets.token_hex(3)}"


class ExecutorState(str, Enum):
    """Positions of the phase executor state machine."""

    IDLE = "idle"
    RUNNING = "running"
    VERIFYING = "verifying"
    RECOVERING = "recovering"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    PAUSED = "paused"

    @property
    def resumable(self) -> bool:
        """True for states a later invocation picks up from."""
        return self in {
            ExecutorState.RUNNING,
            ExecutorState.VERIFYING,
            ExecutorState.RECOVERING,
            ExecutorState.ROLLING_BACK,
            ExecutorState.INTERRUPTED,
            ExecutorState.PAUSED,
        }


_SETTLED = {
    ExecutorState.IDLE,
    ExecutorState.COMPLETED,
    ExecutorState.FAILED,
    ExecutorState.INTERRUPTED,
    ExecutorState.PAUSED,
}

TRANSITIONS: dict[ExecutorState, frozenset[ExecutorState]] = {
    ExecutorState.IDLE: frozenset({ExecutorState.RUNNING, ExecutorState.ROLLING_BACK}),
    ExecutorState.RUNNING: frozenset(
        {
            ExecutorState.VERIFYING,
            ExecutorState.RECOVERING,
            ExecutorState.ROLLING_BACK,
            ExecutorState.COMPLETED,
            ExecutorState.FAILED,
            ExecutorState.INTERRUPTED,
            ExecutorState.PAUSED,
        }
    ),
    ExecutorState.VERIFYING: frozenset(
        {
            ExecutorState.RUNNING,
            ExecutorState.RECOVERING,
            ExecutorState.ROLLING_BACK,
            ExecutorState.FAILED,
            ExecutorState.INTERRUPTED,
            ExecutorState.PAUSED,
        }
    ),
    ExecutorState.RECOVERING: frozenset(
        {
            ExecutorState.RUNNING,
            ExecutorState.ROLLING_BACK,
            ExecutorState.FAILED,
            ExecutorState.INTERRUPTED,
        }
    ),
    ExecutorState.ROLLING_BACK: frozenset(
        {ExecutorState.COMPLETED, ExecutorState.FAILED, ExecutorState.INTERRUPTED}
    ),
}
for _settled in _SETTLED - {ExecutorState.IDLE}:
    TRANSITIONS[_settled] = frozenset(
        {ExecutorState.IDLE, ExecutorState.RUNNING, ExecutorState.ROLLING_BACK}
    )


class InvalidTransitionError(RuntimeError):
    """Raised when the executor attempts an illegal state change."""


class StepRef(Protocol):
    """Anything with a step name and declaration fingerprint."""

    name: str
    fingerprint: str


@dataclass
class CompletedStep:
    """A step that converged, with the declaration fingerprint that did it."""

    name: str
    phase: str
    timestamp: str
    fingerprint: str
    snapshot_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "phase": self.phase,
            "timestamp": self.timestamp,
            "fingerprint": self.fingerprint,
            "snapshot_id": self.snapshot_id,
        }


@dataclass
class FailedStep:
    """A step whose apply or verification failed in this session."""

    name: str
    phase: str
    timestamp: str
    error: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "phase": self.phase,
            "timestamp": self.timestamp,
            "error": self.error,
        }


@dataclass
class RecoveryPoint:
    """A named marker pointing at a snapshot."""

    snapshot_id: str | None
    name: str
    timestamp: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"snapshot_id": self.snapshot_id, "name": self.name, "timestamp": self.timestamp}


@dataclass
class PendingRestart:
    """A restart that needs operator confirmation before the run continues."""

    step: str
    phase: str
    service: str
    reason: str
    requested_at: str
    snapshot_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "step": self.step,
            "phase": self.phase,
            "service": self.service,
            "reason": self.reason,
            "requested_at": self.requested_at,
            "snapshot_id": self.snapshot_id,
        }


@dataclass
class RollbackProgress:
    """Progress of an in-flight or finished rollback."""

    level: str
    reason: str
    status: str = "in_progress"
    target_snapshot: str | None = None
    undone_steps: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=_now_iso)
    finished_at: str | None = None

    @property
    def finished(self) -> bool:
        """True once the rollback reached a terminal status."""
        return self.status in {"completed", "failed"}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "level": self.level,
            "reason": self.reason,
            "status": self.status,
            "target_snapshot": self.target_snapshot,
            "undone_steps": list(self.undone_steps),
            "errors": list(self.errors),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class RunState:
    """The complete durable run-state record."""

    session_id: str
    state: ExecutorState = ExecutorState.IDLE
    current_phase: str | None = None
    current_step: str | None = None
    completed_steps: list[CompletedStep] = field(default_factory=list)
    failed_steps: list[FailedStep] = field(default_factory=list)
    recovery_points: list[RecoveryPoint] = field(default_factory=list)
    pending_restart: PendingRestart | None = None
    rollback: RollbackProgress | None = None
    consecutive_failures: int = 0
    started_at: str = field(default_factory=_now_iso)
    last_updated: str = field(default_factory=_now_iso)
    pid: int = field(default_factory=os.getpid)

    # Queries -----------------------------------------------------------
    def completed(self, name: str) -> CompletedStep | None:
        """Return the completion record for *name*, if any."""
        for entry in self.completed_steps:
            if entry.name == name:
                return entry
        return None

    def is_completed(self, name: str, fingerprint: str) -> bool:
        """True when *name* completed with the same declaration *fingerprint*."""
        entry = self.completed(name)
        return entry is not None and entry.fingerprint == fingerprint

    def failed_names(self) -> list[str]:
        """Names of failed steps, in failure order."""
        return [entry.name for entry in self.failed_steps]

    # Serialisation -----------------------------------------------------
    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "current_phase": self.current_phase,
            "current_step": self.current_step,
            "completed_steps": [entry.to_dict() for entry in self.completed_steps],
            "failed_steps": [entry.to_dict() for entry in self.failed_steps],
            "recovery_points": [entry.to_dict() for entry in self.recovery_points],
            "pending_restart": (
                self.pending_restart.to_dict() if self.pending_restart is not None else None
            ),
            "rollback": self.rollback.to_dict() if self.rollback is not None else None,
            "consecutive_failures": self.consecutive_failures,
            "started_at": self.started_at,
            "last_updated": self.last_updated,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RunState:
        """Build a record from parsed JSON, raising ``ValueError`` on bad shape."""
        session_id = data.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("session_id missing")
        state = ExecutorState(str(data.get("state", "idle")))
        completed = [
            CompletedStep(
                name=str(item["name"]),
                phase=str(item.get("phase", "")),
                timestamp=str(item.get("timestamp", "")),
                fingerprint=str(item.get("fingerprint", "")),
                snapshot_id=_opt_str(item.get("snapshot_id")),
            )
            for item in _mappings(data.get("completed_steps"))
        ]
        failed = [
            FailedStep(
                name=str(item["name"]),
                phase=str(item.get("phase", "")),
                timestamp=str(item.get("timestamp", "")),
                error=str(item.get("error", "")),
            )
            for item in _mappings(data.get("failed_steps"))
        ]
        points = [
            RecoveryPoint(
                snapshot_id=_opt_str(item.get("snapshot_id")),
                name=str(item.get("name", "")),
                timestamp=str(item.get("timestamp", "")),
            )
            for item in _mappings(data.get("recovery_points"))
        ]
        pending_raw = data.get("pending_restart")
        pending = None
        if isinstance(pending_raw, Mapping):
            pending = PendingRestart(
                step=str(pending_raw["step"]),
                phase=str(pending_raw.get("phase", "")),
                service=str(pending_raw.get("service", "")),
                reason=str(pending_raw.get("reason", "")),
                requested_at=str(pending_raw.get("requested_at", "")),
                snapshot_id=_opt_str(pending_raw.get("snapshot_id")),
            )
        rollback_raw = data.get("rollback")
        rollback = None
        if isinstance(rollback_raw, Mapping):
            rollback = RollbackProgress(
                level=str(rollback_raw["level"]),
                reason=str(rollback_raw.get("reason", "")),
                status=str(rollback_raw.get("status", "in_progress")),
                target_snapshot=_opt_str(rollback_raw.get("target_snapshot")),
                undone_steps=[str(x) for x in _list(rollback_raw.get("undone_steps"))],
                errors=[str(x) for x in _list(rollback_raw.get("errors"))],
                started_at=str(rollback_raw.get("started_at", "")),
                finished_at=_opt_str(rollback_raw.get("finished_at")),
            )
        consecutive = data.get("consecutive_failures", 0)
        pid = data.get("pid", 0)
        return cls(
            session_id=session_id,
            state=state,
            current_phase=_opt_str(data.get("current_phase")),
            current_step=_opt_str(data.get("current_step")),
            completed_steps=completed,
            failed_steps=failed,
            recovery_points=points,
            pending_restart=pending,
            rollback=rollback,
            consecutive_failures=int(consecutive) if isinstance(consecutive, int) else 0,
            started_at=str(data.get("started_at", "")),
            last_updated=str(data.get("last_updated", "")),
            pid=int(pid) if isinstance(pid, int) else 0,
        )


def _opt_str(value: object) -> str | None:
    return None if value is None else str(value)


def _list(value: object) -> list[object]:
    return list(value) if isinstance(value, list) else []


def _mappings(value: object) -> list[Mapping[str, object]]:
    return [item for item in _list(value) if isinstance(item, Mapping)]


class RunStateTracker:
    """Owns ``run-state.json`` and every mutation of it."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._state: RunState | None = None

    @property
    def state(self) -> RunState:
        """The record loaded or started by this tracker."""
        if self._state is None:
            raise RuntimeError("Run state not initialised; call load() or start() first.")
        return self._state

    @property
    def loaded(self) -> bool:
        """True once a record is attached to this tracker."""
        return self._state is not None

    # Persistence ---------------------------------------------------------
    def _parse(self) -> tuple[RunState | None, str | None]:
        """Return the stored record, or the reason it cannot be used."""
        try:
            raw = read_json(self.path)
        except StateFileError as exc:
            return None, str(exc)
        if raw is None:
            return None, None
        if not isinstance(raw, Mapping):
            return None, "top-level value is not an object"
        try:
            return RunState.from_dict(raw), None
        except (KeyError, ValueError, TypeError) as exc:
            return None, f"invalid record: {exc}"

    def load(self) -> RunState | None:
        """Read the record; a missing or corrupt file yields None.

        A corrupt file is moved aside so the next session starts fresh.
        """
        state, problem = self._parse()
        if problem is not None:
            self._quarantine(problem)
            return None
        if state is not None:
            self._state = state
        return state

    def peek(self) -> RunState | None:
        """Read the record without attaching it or touching a corrupt file."""
        state, problem = self._parse()
        if problem is not None:
            _log.warning("Run state %s is unusable (%s).", self.path, problem)
        return state

    def save(self) -> None:
        """Atomically persist the current record."""
        state = self.state
        state.last_updated = _now_iso()
        state.pid = os.getpid()
        write_json(self.path, state.to_dict())

    def _quarantine(self, reason: str) -> None:
        _log.warning("Run state %s is unusable (%s); starting fresh.", self.path, reason)
        stamp = datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S")
        try:
            os.replace(self.path, self.path.with_name(f"{self.path.name}.corrupt-{stamp}"))
        except OSError:
            self.path.unlink(missing_ok=True)

    # Session lifecycle ---------------------------------------------------
    def start(self, session_id: str | None = None) -> RunState:
        """Begin a fresh session, carrying forward completion marks.

        Failed steps, recovery points and counters of a previous session are
        dropped; completed steps stay so converged work is skipped.
        """
        previous = self._state if self._state is not None else self.load()
        state = RunState(session_id=session_id or new_session_id())
        if previous is not None:
            state.completed_steps = list(previous.completed_steps)
        self._state = state
        self.save()
        return state

    def resume_session(self) -> RunState:
        """Continue the persisted session as-is, or start one if none exists."""
        existing = self._state if self._state is not None else self.load()
        if existing is None:
            return self.start()
        self._state = existing
        return existing

    def transition(self, new_state: ExecutorState) -> None:
        """Move the state machine, validating the edge, and persist."""
        state = self.state
        if new_state is not state.state:
            allowed = TRANSITIONS.get(state.state, frozenset())
            if new_state not in allowed:
                raise InvalidTransitionError(
                    f"Illegal executor transition {state.state.value} -> {new_state.value}."
                )
            state.state = new_state
        self.save()

    def set_position(self, phase: str | None, step: str | None) -> None:
        """Record the step currently being executed."""
        state = self.state
        state.current_phase = phase
        state.current_step = step
        self.save()

    # Step bookkeeping ----------------------------------------------------
    def mark_step_completed(
        self,
        name: str,
        phase: str,
        fingerprint: str,
        *,
        snapshot_id: str | None = None,
    ) -> CompletedStep:
        """Record a converged step and reset the consecutive failure counter."""
        state = self.state
        entry = CompletedStep(
            name=name,
            phase=phase,
            timestamp=_now_iso(),
            fingerprint=fingerprint,
            snapshot_id=snapshot_id,
        )
        state.completed_steps = [item for item in state.completed_steps if item.name != name]
        state.completed_steps.append(entry)
        state.failed_steps = [item for item in state.failed_steps if item.name != name]
        state.consecutive_failures = 0
        self.save()
        return entry

    def mark_step_failed(self, name: str, phase: str, error: str) -> FailedStep:
        """Record a failed step; its completion mark (if any) is dropped."""
        state = self.state
        entry = FailedStep(name=name, phase=phase, timestamp=_now_iso(), error=error)
        state.completed_steps = [item for item in state.completed_steps if item.name != name]
        state.failed_steps = [item for item in state.failed_steps if item.name != name]
        state.failed_steps.append(entry)
        state.consecutive_failures += 1
        self.save()
        return entry

    def unmark_completed(self, name: str) -> None:
        """Forget a completion mark (used when a step is undone)."""
        state = self.state
        state.completed_steps = [item for item in state.completed_steps if item.name != name]
        self.save()

    def add_recovery_point(self, name: str, snapshot_id: str | None = None) -> RecoveryPoint:
        """Append a named recovery point."""
        point = RecoveryPoint(snapshot_id=snapshot_id, name=name, timestamp=_now_iso())
        self.state.recovery_points.append(point)
        self.save()
        return point

    def set_pending_restart(self, pending: PendingRestart | None) -> None:
        """Record or clear a restart awaiting confirmation."""
        self.state.pending_restart = pending
        self.save()

    def begin_rollback(self, level: str, reason: str) -> RollbackProgress:
        """Start rollback bookkeeping, or return the unfinished one for *level*."""
        state = self.state
        current = state.rollback
        if current is not None and not current.finished and current.level == level:
            return current
        state.rollback = RollbackProgress(level=level, reason=reason)
        self.save()
        return state.rollback

    def record_undo(self, step_name: str) -> None:
        """Persist that *step_name* was undone by the running rollback."""
        progress = self.state.rollback
        if progress is None:
            raise RuntimeError("No rollback in progress.")
        if step_name not in progress.undone_steps:
            progress.undone_steps.append(step_name)
        self.state.completed_steps = [
            item for item in self.state.completed_steps if item.name != step_name
        ]
        self.save()

    def finish_rollback(self, status: str, errors: Iterable[str] = ()) -> None:
        """Close the running rollback with *status*."""
        progress = self.state.rollback
        if progress is None:
            raise RuntimeError("No rollback in progress.")
        progress.status = status
        progress.errors.extend(str(item) for item in errors)
        progress.finished_at = _now_iso()
        self.save()

    # Resume ----------------------------------------------------------------
    def resume(self, steps: Iterable[StepRef]) -> StepRef | None:
        """Return the first step (in declared order) that is not yet complete."""
        state = self.state
        for step in steps:
            if not state.is_completed(step.name, step.fingerprint):
                return step
        return None


__all__ = [
    "CompletedStep",
    "ExecutorState",
    "FailedStep",
    "InvalidTransitionError",
    "PendingRestart",
    "RecoveryPoint",
    "RollbackProgress",
    "RunState",
    "RunStateTracker",
    "TRANSITIONS",
    "new_session_id",
]
