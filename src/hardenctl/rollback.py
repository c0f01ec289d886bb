"""Graded rollback.

Levels are cumulative; each one undoes the step categories of the levels
below it plus its own:

========== ======================================= ==================================
Level      Categories undone                        Configuration restored to
========== ======================================= ==================================
config     config                                  last-known-good version
security   config, security                        newest boundary snapshot covering
                                                    ``security``
monitoring config, security, monitoring; removes   as ``security``
           the watchdog unit and maintenance jobs
full       everything including ``service``         the pristine snapshot
========== ======================================= ==================================

Only steps completed after the target snapshot are undone, newest first.
Progress is persisted after every undo so an interrupted rollback resumes
where it stopped, and re-running a finished one changes nothing.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from .appliers.base import ApplierContext, ApplierError
from .appliers.registry import ApplierRegistry
from .config_store import ConfigStore, ConfigStoreError
from .logging import OperationScope, get_logger
from .plan import PlanError, Step, parse_steps
from .providers.systemd import ServiceController, SystemdError
from .snapshots import Snapshot, SnapshotKind, SnapshotStore
from .state.runstate import CompletedStep, ExecutorState, RunStateTracker

_log = get_logger("rollback")

MONITORING_TEARDOWN = "monitoring-teardown"


class RollbackError(RuntimeError):
    """Raised when a rollback cannot even be attempted."""


class RollbackLevel(str, Enum):
    """Ordered rollback levels."""

    CONFIG = "config"
    SECURITY = "security"
    MONITORING = "monitoring"
    FULL = "full"

    @property
    def rank(self) -> int:
        """Position in ``config < security < monitoring < full``."""
        return list(RollbackLevel).index(self)

    @property
    def categories(self) -> frozenset[str]:
        """Step categories this level undoes."""
        return LEVEL_CATEGORIES[self]

    @classmethod
    def parse(cls, value: str) -> RollbackLevel:
        """Parse a level name, raising :class:`RollbackError` on unknown input."""
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            allowed = ", ".join(level.value for level in cls)
            raise RollbackError(f"Unknown rollback level '{value}'. Allowed: {allowed}.") from exc


LEVEL_CATEGORIES: Mapping[RollbackLevel, frozenset[str]] = {
    RollbackLevel.CONFIG: frozenset({"config"}),
    RollbackLevel.SECURITY: frozenset({"config", "security"}),
    RollbackLevel.MONITORING: frozenset({"config", "security", "monitoring"}),
    RollbackLevel.FULL: frozenset({"config", "security", "monitoring", "service"}),
}


@dataclass(frozen=True)
class RollbackResult:
    """Outcome of a rollback."""

    level: RollbackLevel
    reason: str
    status: str
    target_snapshot: str | None
    config_version: int | None
    undone_steps: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        """True when every undo and restore succeeded."""
        return self.status == "completed"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "level": self.level.value,
            "reason": self.reason,
            "status": self.status,
            "target_snapshot": self.target_snapshot,
            "config_version": self.config_version,
            "undone_steps": list(self.undone_steps),
            "errors": list(self.errors),
        }


def _default_context(document: Mapping[str, object]) -> ApplierContext:
    return ApplierContext(document=document)


class RollbackManager:
    """Undo completed steps and restore configuration for a rollback level."""

    def __init__(
        self,
        *,
        config_store: ConfigStore,
        snapshots: SnapshotStore,
        tracker: RunStateTracker,
        registry: ApplierRegistry,
        controller: ServiceController,
        context_factory: Callable[[Mapping[str, object]], ApplierContext] = _default_context,
        teardown_monitoring: Callable[[], None] | None = None,
    ) -> None:
        self.config_store = config_store
        self.snapshots = snapshots
        self.tracker = tracker
        self.registry = registry
        self.controller = controller
        self.context_factory = context_factory
        self.teardown_monitoring = teardown_monitoring

    # ------------------------------------------------------------------
    # Target selection
    # ------------------------------------------------------------------
    def select_target(self, level: RollbackLevel) -> Snapshot | None:
        """Return the snapshot *level* rolls back to."""
        if level is RollbackLevel.FULL:
            pristine = self.snapshots.pristine()
            if pristine is not None:
                return pristine
            snapshots = self.snapshots.list_snapshots()
            return snapshots[0] if snapshots else None
        if level is RollbackLevel.CONFIG:
            lkg = self.config_store.last_known_good()
            if lkg is not None:
                matching = self.snapshots.latest(
                    lambda snap: snap.kind is SnapshotKind.CHECKPOINT
                    and snap.config_version == lkg.sequence
                )
                if matching is not None:
                    return matching
            return self.snapshots.latest(lambda snap: snap.kind.is_boundary)
        return self.snapshots.latest(
            lambda snap: snap.kind.is_boundary and snap.covers("security")
        ) or self.snapshots.pristine()

    def _position(self, snapshot_id: str | None, order: Mapping[str, int]) -> int:
        if snapshot_id is None:
            return -1
        return order.get(snapshot_id, -1)

    def steps_to_undo(
        self,
        level: RollbackLevel,
        target: Snapshot | None,
        declared: Mapping[str, Step],
    ) -> list[CompletedStep]:
        """Completed steps of *level*'s categories taken after *target*, newest first."""
        order = {snap.id: index for index, snap in enumerate(self.snapshots.list_snapshots())}
        target_position = self._position(target.id, order) if target is not None else -1
        candidates: list[CompletedStep] = []
        for entry in reversed(self.tracker.state.completed_steps):
            step = declared.get(entry.name)
            category = step.category if step is not None else None
            if category not in level.categories:
                continue
            if self._position(entry.snapshot_id, order) < target_position:
                continue
            candidates.append(entry)
        return candidates

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def rollback(
        self,
        level: RollbackLevel | str,
        reason: str,
        *,
        op: OperationScope | None = None,
    ) -> RollbackResult:
        """Roll back to *level*, persisting progress after every action."""
        level = level if isinstance(level, RollbackLevel) else RollbackLevel.parse(level)
        if not self.tracker.loaded:
            self.tracker.resume_session()
        progress = self.tracker.begin_rollback(level.value, reason)
        self.tracker.transition(ExecutorState.ROLLING_BACK)
        _log.warning("Rolling back to level %s: %s", level.value, reason)

        target: Snapshot | None = None
        if progress.target_snapshot is not None:
            target = self.snapshots.get(progress.target_snapshot)
        if target is None:
            target = self.select_target(level)
            progress.target_snapshot = target.id if target is not None else None
            self.tracker.save()
        if op is not None:
            op.add_step(
                "rollback.start",
                status="info",
                detail={"level": level.value, "reason": reason, "target": progress.target_snapshot},
            )

        errors: list[str] = []
        document = self._current_document(errors)
        declared = self._declared_steps(document, target, errors)
        context = self.context_factory(document)

        for entry in self.steps_to_undo(level, target, declared):
            if entry.name in progress.undone_steps:
                continue
            error = self._undo_step(entry, declared.get(entry.name), target, context)
            if error is None:
                self.tracker.record_undo(entry.name)
                if op is not None:
                    op.add_step(f"rollback.undo.{entry.name}", status="success")
            else:
                errors.append(error)
                if op is not None:
                    op.add_step(f"rollback.undo.{entry.name}", status="error", detail=error)

        if level.rank >= RollbackLevel.MONITORING.rank and MONITORING_TEARDOWN not in (
            progress.undone_steps
        ):
            if self._teardown(errors):
                progress.undone_steps.append(MONITORING_TEARDOWN)
                self.tracker.save()

        before = self.config_store.current_version()
        version = self._restore_config(level, target, errors)
        changed = version != (before.sequence if before is not None else None) or any(
            name != MONITORING_TEARDOWN for name in progress.undone_steps
        )
        self._restore_services(target, errors, changed=changed)

        status = "completed" if not errors else "failed"
        self.tracker.finish_rollback(status, errors)
        self.tracker.transition(
            ExecutorState.COMPLETED if status == "completed" else ExecutorState.FAILED
        )
        result = RollbackResult(
            level=level,
            reason=reason,
            status=status,
            target_snapshot=progress.target_snapshot,
            config_version=version,
            undone_steps=tuple(progress.undone_steps),
            errors=tuple(errors),
        )
        if op is not None:
            op.add_step("rollback.finish", status=status, detail=result.to_dict())
        return result

    # ------------------------------------------------------------------
    def _current_document(self, errors: list[str]) -> dict[str, object]:
        try:
            return self.config_store.read()
        except ConfigStoreError as exc:
            errors.append(f"config: {exc}")
            return {}

    def _declared_steps(
        self,
        document: Mapping[str, object],
        target: Snapshot | None,
        errors: list[str],
    ) -> dict[str, Step]:
        declared: dict[str, Step] = {}
        sources: list[Mapping[str, object]] = [document]
        if target is not None and target.config_version is not None:
            try:
                sources.append(self.config_store.load_version(target.config_version))
            except ConfigStoreError as exc:
                _log.warning("Target configuration unavailable: %s", exc)
        for source in sources:
            try:
                steps: Sequence[Step] = parse_steps(source)
            except PlanError as exc:
                errors.append(f"plan: {exc}")
                continue
            for step in steps:
                declared.setdefault(step.name, step)
        return declared

    def _undo_step(
        self,
        entry: CompletedStep,
        step: Step | None,
        target: Snapshot | None,
        context: ApplierContext,
    ) -> str | None:
        if step is None:
            return f"{entry.name}: declaration not found; cannot undo"
        snapshot = target
        if entry.snapshot_id is not None:
            own = self.snapshots.get(entry.snapshot_id)
            if own is not None and own.kind is SnapshotKind.PRE_STEP and own.step == entry.name:
                snapshot = own
        try:
            applier = self.registry.create(step, context)
            undone = applier.undo(snapshot)
        except ApplierError as exc:
            return f"{entry.name}: {exc}"
        except Exception as exc:
            _log.exception("Undo of %s raised unexpectedly.", entry.name)
            return f"{entry.name}: {type(exc).__name__}: {exc}"
        if not undone:
            return f"{entry.name}: undo reported failure"
        return None

    def _teardown(self, errors: list[str]) -> bool:
        if self.teardown_monitoring is None:
            return True
        try:
            self.teardown_monitoring()
        except (SystemdError, OSError, RuntimeError) as exc:
            errors.append(f"monitoring: {exc}")
            return False
        return True

    def _restore_config(
        self,
        level: RollbackLevel,
        target: Snapshot | None,
        errors: list[str],
    ) -> int | None:
        try:
            if level is RollbackLevel.CONFIG and self.config_store.last_known_good() is not None:
                return self.config_store.rollback_to_last_known_good().sequence
            if target is not None and target.config_version is not None:
                return self.config_store.restore(
                    target.config_version,
                    message=f"{level.value} rollback to snapshot {target.id}",
                ).sequence
        except ConfigStoreError as exc:
            errors.append(f"config: {exc}")
            return None
        current = self.config_store.current_version()
        return current.sequence if current is not None else None

    def _restore_services(
        self, target: Snapshot | None, errors: list[str], *, changed: bool
    ) -> None:
        """Return services to the activity *target* captured.

        A running service is only restarted when *changed* says the rollback
        touched something it reads; otherwise it is left alone.
        """
        if target is None:
            return
        for service, raw in target.service_state().items():
            if not isinstance(raw, Mapping):
                continue
            try:
                if "enabled" in raw:
                    enabled = self.controller.is_enabled(service)
                    if raw["enabled"] and not enabled:
                        self.controller.enable(service)
                    elif not raw["enabled"] and enabled:
                        self.controller.disable(service)
                active = self.controller.is_active(service)
                if raw.get("active"):
                    if not active:
                        self.controller.start(service)
                    elif changed:
                        self.controller.restart(service)
                elif active:
                    self.controller.stop(service)
            except SystemdError as exc:
                errors.append(f"service {service}: {exc}")


__all__ = [
    "LEVEL_CATEGORIES",
    "RollbackError",
    "RollbackLevel",
    "RollbackManager",
    "RollbackResult",
]
