"""Phase executor.

Drives the execution plan step by step through the applier contract and the
run-state machine::

    idle -> running -> verifying -> running ... -> completed | failed
                   \\-> recovering (undo after a failed step)
                   \\-> rolling_back (threshold or undo failure)
                   \\-> paused (restart needs confirmation) | interrupted (signal)

Per step: skip when already completed with the same declaration fingerprint;
snapshot risky steps; apply under a timeout; verify through the applier and
the health verifier; undo on failure. Reload-vs-restart is decided here, and
so is escalation to the rollback manager.
"""
from __future__ import annotations

import signal
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import FrameType

from .appliers.base import (
    Applier,
    ApplierContext,
    ApplierError,
    ApplierTimeoutError,
    ApplyResult,
    ChangePlan,
    PreconditionError,
    VerifyResult,
    call_with_timeout,
)
from .appliers.registry import ApplierRegistry
from .config import AppConfig
from .config_store import ConfigStore, ConfigStoreError, ConfigVersion
from .exit_codes import ExitCode
from .health.engine import HealthVerifier
from .health.models import HealthReport
from .logging import OperationScope, get_logger
from .plan import CATEGORIES, PHASES, ExecutionPlan, Step, build_plan, parse_steps
from .providers.systemd import ServiceController, SystemdError
from .rollback import RollbackLevel, RollbackManager, RollbackResult
from .snapshots import Snapshot, SnapshotKind, SnapshotStore
from .state.runstate import ExecutorState, PendingRestart, RunStateTracker, new_session_id

_log = get_logger("executor")


class FatalRunError(RuntimeError):
    """Raised when the service cannot be brought back to health."""


class RestartConfirmationRequired(RuntimeError):
    """Raised when a restart needs operator confirmation that was not given."""

    def __init__(self, service: str, step: str) -> None:
        super().__init__(
            f"Step '{step}' needs a restart of {service}; re-run with --allow-restart."
        )
        self.service = service
        self.step = step


StepTimeoutError = ApplierTimeoutError


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _error_text(exc: Exception) -> str:
    if isinstance(exc, ApplierError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


class CancellationToken:
    """Cooperative cancellation checked at step boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str) -> None:
        """Request cancellation; the first reason wins."""
        if self.reason is None:
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """True once cancellation was requested."""
        return self._event.is_set()


@contextmanager
def handle_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT/SIGTERM to *token* for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum: int, _frame: FrameType | None) -> None:
        token.cancel(signal.Signals(signum).name)

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@dataclass(frozen=True)
class RunOptions:
    """Switches for a single invocation."""

    dry_run: bool = False
    enforce: bool = False
    recovery: bool = False
    allow_restart: bool = False
    phases: tuple[str, ...] = PHASES
    confirm: Callable[[str], bool] | None = None
    session_id: str | None = None


@dataclass
class RunReport:
    """What happened during a run."""

    session_id: str | None
    state: ExecutorState
    exit_code: ExitCode
    message: str
    changed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    plans: list[ChangePlan] = field(default_factory=list)
    rollback: RollbackResult | None = None
    pending_restart: PendingRestart | None = None
    resumed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "exit_code": int(self.exit_code),
            "message": self.message,
            "changed": list(self.changed),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
            "plans": [plan.to_dict() for plan in self.plans],
            "rollback": self.rollback.to_dict() if self.rollback is not None else None,
            "pending_restart": (
                self.pending_restart.to_dict() if self.pending_restart is not None else None
            ),
            "resumed": self.resumed,
        }


class _Halt(Exception):
    """Internal: stop the step loop and return *report*."""

    def __init__(self, report: RunReport) -> None:
        super().__init__(report.message)
        self.report = report


class PhaseExecutor:
    """Run the plan derived from the desired-state document."""

    def __init__(
        self,
        *,
        config: AppConfig,
        config_store: ConfigStore,
        snapshots: SnapshotStore,
        tracker: RunStateTracker,
        registry: ApplierRegistry,
        health: HealthVerifier,
        controller: ServiceController,
        rollback: RollbackManager,
        context_factory: Callable[[Mapping[str, object]], ApplierContext] | None = None,
    ) -> None:
        self.config = config
        self.config_store = config_store
        self.snapshots = snapshots
        self.tracker = tracker
        self.registry = registry
        self.health = health
        self.controller = controller
        self.rollback_manager = rollback
        self._context_factory = context_factory or (
            lambda document: ApplierContext(
                document=document, default_timeout=config.policy.apply_timeout
            )
        )
        self._op: OperationScope | None = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _note(self, name: str, status: str = "success", detail: object = None) -> None:
        if self._op is not None:
            self._op.add_step(name, status=status, detail=detail)

    def _timeout_for(self, step: Step) -> float:
        return step.timeout or self.config.policy.apply_timeout

    def _services(self, plan: ExecutionPlan) -> list[str]:
        services = [self.config.service.name]
        for step in plan:
            if step.restart and step.restart not in services:
                services.append(step.restart)
        return services

    def _capture_services(self, services: Sequence[str]) -> dict[str, object]:
        captured: dict[str, object] = {}
        for service in services:
            try:
                captured[service] = {
                    "enabled": self.controller.is_enabled(service),
                    "active": self.controller.is_active(service),
                }
            except SystemdError as exc:
                _log.info("Not capturing state of %s: %s", service, exc)
        return captured

    def _capture_appliers(self, appliers: Mapping[str, Applier]) -> dict[str, object]:
        captured: dict[str, object] = {}
        for name, applier in appliers.items():
            try:
                state = applier.capture_state()
            except Exception as exc:
                _log.warning("Unable to capture state of step %s: %s", name, _error_text(exc))
                continue
            if state is not None:
                captured[name] = dict(state)
        return captured

    def _current_sequence(self) -> int | None:
        current = self.config_store.current_version()
        return current.sequence if current is not None else None

    def _take_snapshot(
        self,
        name: str,
        kind: SnapshotKind,
        categories: Sequence[str],
        *,
        appliers: Mapping[str, Applier],
        services: Sequence[str],
        phase: str | None = None,
        step: str | None = None,
    ) -> Snapshot:
        snapshot = self.snapshots.create(
            name,
            kind=kind,
            categories=categories,
            config_version=self._current_sequence(),
            session_id=self.tracker.state.session_id,
            phase=phase,
            step=step,
            aux={
                "services": self._capture_services(services),
                "appliers": self._capture_appliers(appliers),
            },
        )
        self._note(f"snapshot.{kind.value}", detail={"id": snapshot.id, "name": name})
        return snapshot

    def _latest_snapshot_id(self) -> str | None:
        latest = self.snapshots.latest()
        return latest.id if latest is not None else None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(
        self,
        options: RunOptions,
        *,
        lock_status: str = "acquired",
        op: OperationScope | None = None,
        token: CancellationToken | None = None,
    ) -> RunReport:
        """Execute the plan and return a report carrying the exit code."""
        self._op = op
        token = token or CancellationToken()
        if options.dry_run:
            document = self.config_store.peek()
        else:
            document = self.config_store.read()
        steps = parse_steps(document, known_kinds=self.registry.kinds())
        plan = build_plan(steps, options.phases)
        context = self._context_factory(document)

        if options.dry_run:
            return self._dry_run(plan, context, options)

        existing = self.tracker.load()
        if (
            existing is not None
            and existing.rollback is not None
            and not existing.rollback.finished
        ):
            self._note("rollback.resume", status="info", detail=existing.rollback.to_dict())
            result = self.rollback_manager.rollback(
                existing.rollback.level, existing.rollback.reason, op=op
            )
            return self._rollback_report(result, "Resumed interrupted rollback.")

        resume = (
            options.recovery
            or lock_status == "recovered"
            or (existing is not None and existing.pending_restart is not None)
            or (existing is not None and existing.state is ExecutorState.INTERRUPTED)
        )
        if resume and existing is not None:
            state = self.tracker.resume_session()
            point = "recovered_from_stale_lock" if lock_status == "recovered" else "resume"
            self.tracker.add_recovery_point(point, self._latest_snapshot_id())
            next_step = self.tracker.resume(plan)
            first = next_step.name if next_step is not None else None
            _log.info("Resuming session %s at step %s.", state.session_id, first or "(none)")
            self._note("resume.from", status="info", detail=first)
        else:
            resume = False
            state = self.tracker.start(options.session_id or new_session_id())
        self.tracker.transition(ExecutorState.RUNNING)
        self._note("session", status="info", detail={"id": state.session_id, "resumed": resume})

        report = RunReport(
            session_id=state.session_id,
            state=ExecutorState.RUNNING,
            exit_code=ExitCode.OK,
            message="",
            resumed=resume,
        )
        try:
            appliers = self._build_appliers(plan, context, report)
            services = self._services(plan)
            if self.snapshots.pristine() is None and len(plan):
                self._take_snapshot(
                    "pristine",
                    SnapshotKind.PRISTINE,
                    CATEGORIES,
                    appliers=appliers,
                    services=services,
                )
            if not resume:
                self._take_snapshot(
                    f"baseline-{state.session_id}",
                    SnapshotKind.BASELINE,
                    sorted(plan.categories() | {"config"}),
                    appliers=appliers,
                    services=services,
                )
            if state.pending_restart is not None:
                self._resume_pending_restart(plan, appliers, report, options)
            self._run_steps(plan, appliers, services, report, options, token)
        except _Halt as halt:
            return halt.report
        return self._finish(report)

    # ------------------------------------------------------------------
    def _dry_run(
        self,
        plan: ExecutionPlan,
        context: ApplierContext,
        options: RunOptions,
    ) -> RunReport:
        state = self.tracker.peek()
        report = RunReport(
            session_id=state.session_id if state is not None else None,
            state=state.state if state is not None else ExecutorState.IDLE,
            exit_code=ExitCode.OK,
            message="Dry run complete; nothing was changed.",
        )
        for step in plan:
            if not options.enforce and state is not None and state.is_completed(
                step.name, step.fingerprint
            ):
                report.skipped.append(step.name)
                continue
            try:
                applier = self.registry.create(step, context)
                report.plans.append(applier.describe())
            except Exception as exc:
                report.plans.append(
                    ChangePlan(
                        step=step.name,
                        summary=f"cannot plan: {_error_text(exc)}",
                        changes_expected=None,
                    )
                )
        return report

    def _build_appliers(
        self,
        plan: ExecutionPlan,
        context: ApplierContext,
        report: RunReport,
    ) -> dict[str, Applier]:
        appliers: dict[str, Applier] = {}
        for step in plan:
            try:
                appliers[step.name] = self.registry.create(step, context)
            except Exception as exc:
                _log.error("Step %s cannot be instantiated: %s", step.name, _error_text(exc))
                self._note(f"step.{step.name}.invalid", status="error", detail=_error_text(exc))
        return appliers

    def _run_steps(
        self,
        plan: ExecutionPlan,
        appliers: Mapping[str, Applier],
        services: Sequence[str],
        report: RunReport,
        options: RunOptions,
        token: CancellationToken,
    ) -> None:
        failed_phases: set[str] = set()
        ran_phases: set[str] = set()
        for step in plan:
            if token.cancelled:
                self._interrupt(report, token)
            if step.name in report.failed:
                continue
            state = self.tracker.state
            if not options.enforce and state.is_completed(step.name, step.fingerprint):
                report.skipped.append(step.name)
                self._note(f"step.{step.name}", status="skipped", detail="already completed")
                self._maybe_checkpoint(plan, step, appliers, services, failed_phases, ran_phases)
                continue

            ran_phases.add(step.phase)
            applier = appliers.get(step.name)
            if applier is None:
                self._record_failure(step, "applier could not be instantiated", report)
                failed_phases.add(step.phase)
                self._check_thresholds(report)
                continue

            ok = self._execute_step(step, applier, services, report, options)
            if not ok:
                failed_phases.add(step.phase)
                self._check_thresholds(report)
                if not self.config.policy.continue_on_failure:
                    break
                continue
            self._maybe_checkpoint(plan, step, appliers, services, failed_phases, ran_phases)

    def _step_snapshot(
        self,
        step: Step,
        applier: Applier,
        services: Sequence[str],
    ) -> tuple[Snapshot, str | None]:
        """Return the snapshot undo uses and the id the completion mark records.

        Risky steps get a persisted pre-step snapshot. Other steps undo from an
        in-memory capture and are ordered after the newest persisted snapshot.
        """
        if step.risky:
            snapshot = self._take_snapshot(
                f"pre-{step.name}",
                SnapshotKind.PRE_STEP,
                [step.category],
                appliers={step.name: applier},
                services=services,
                phase=step.phase,
                step=step.name,
            )
            return snapshot, snapshot.id
        latest_id = self._latest_snapshot_id()
        return self._ephemeral_snapshot(step, applier), latest_id

    def _ephemeral_snapshot(self, step: Step, applier: Applier) -> Snapshot:
        try:
            captured = applier.capture_state()
        except Exception as exc:
            _log.warning("Unable to capture state of step %s: %s", step.name, _error_text(exc))
            captured = None
        return Snapshot.in_memory(
            step.name,
            step.category,
            captured,
            config_version=self._current_sequence(),
            session_id=self.tracker.state.session_id,
            phase=step.phase,
        )

    def _execute_step(
        self,
        step: Step,
        applier: Applier,
        services: Sequence[str],
        report: RunReport,
        options: RunOptions,
    ) -> bool:
        self.tracker.set_position(step.phase, step.name)
        snapshot, snapshot_id = self._step_snapshot(step, applier, services)
        version_before = self.config_store.current_version()
        health_before = self.health.check()

        try:
            result = call_with_timeout(
                applier.apply, self._timeout_for(step), f"apply {step.name}"
            )
        except PreconditionError as exc:
            self._precondition_halt(step, str(exc), report)
        except ApplierError as exc:
            result = ApplyResult.failure(str(exc))
        except Exception as exc:
            _log.exception("Applier for step %s raised unexpectedly.", step.name)
            result = ApplyResult.failure(_error_text(exc))

        if result.failed:
            self._note(f"step.{step.name}.apply", status="error", detail=result.message)
            return self._recover(step, applier, snapshot, version_before, result.message, report)

        if result.needs_restart:
            self._note(f"step.{step.name}.apply", status="success", detail="restart required")
            outcome = self._converge_service(step, applier, snapshot, report, options)
            if outcome is not None:
                return self._failed_after_recovery(step, outcome, report)
        else:
            self._note(
                f"step.{step.name}.apply",
                status="success",
                detail="changed" if result.changed else "unchanged",
            )

        verdict = self._verify(step, applier, health_before)
        if not verdict.healthy:
            self._note(f"step.{step.name}.verify", status="error", detail=verdict.message)
            return self._recover(step, applier, snapshot, version_before, verdict.message, report)

        self.tracker.mark_step_completed(
            step.name, step.phase, step.fingerprint, snapshot_id=snapshot_id
        )
        if result.changed:
            report.changed.append(step.name)
        self._note(f"step.{step.name}", status="success", detail=result.message or None)
        return True

    def _verify(
        self, step: Step, applier: Applier, before: HealthReport | None
    ) -> VerifyResult:
        """Verify *step*, then fail it on any check that turned red since *before*.

        Checks that were already red before the step ran do not count against it.
        """
        self.tracker.transition(ExecutorState.VERIFYING)
        try:
            verdict = call_with_timeout(
                applier.verify, self._timeout_for(step), f"verify {step.name}"
            )
        except Exception as exc:
            verdict = VerifyResult.failed(_error_text(exc))
        if verdict.healthy:
            regressions = self.health.check().regressions(before)
            if regressions:
                detail = "; ".join(f"{item.id}: {item.message}" for item in regressions)
                verdict = VerifyResult.failed(f"service unhealthy: {detail}")
        self.tracker.transition(ExecutorState.RUNNING)
        return verdict

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------
    def _recover(
        self,
        step: Step,
        applier: Applier,
        snapshot: Snapshot,
        version_before: ConfigVersion | None,
        error: str,
        report: RunReport,
    ) -> bool:
        self.tracker.transition(ExecutorState.RECOVERING)
        try:
            undone = applier.undo(snapshot)
        except Exception as exc:
            _log.error("Undo of %s raised: %s", step.name, _error_text(exc))
            undone = False
        if not undone:
            self._record_failure(step, error, report)
            self._note(f"step.{step.name}.undo", status="error")
            result = self.rollback_manager.rollback(
                RollbackLevel.SECURITY, f"undo of step '{step.name}' failed", op=self._op
            )
            raise _Halt(self._rollback_report(result, f"Undo of step '{step.name}' failed."))

        self._note(f"step.{step.name}.undo", status="success")
        current = self.config_store.current_version()
        if version_before is not None and (
            current is None or current.sequence != version_before.sequence
        ):
            try:
                self.config_store.restore(
                    version_before.sequence, message=f"revert after failed step {step.name}"
                )
            except ConfigStoreError as exc:
                _log.error("Unable to restore configuration after %s: %s", step.name, exc)
        if step.restart:
            self._ensure_started(step.restart)
        self._record_failure(step, error, report)
        self.tracker.transition(ExecutorState.RUNNING)
        return False

    def _failed_after_recovery(self, step: Step, error: str, report: RunReport) -> bool:
        self._record_failure(step, error, report)
        self.tracker.transition(ExecutorState.RUNNING)
        return False

    def _record_failure(self, step: Step, error: str, report: RunReport) -> None:
        self.tracker.mark_step_failed(step.name, step.phase, error)
        if step.name not in report.failed:
            report.failed.append(step.name)
        _log.error("Step %s failed: %s", step.name, error)

    def _check_thresholds(self, report: RunReport) -> None:
        state = self.tracker.state
        policy = self.config.rollback
        reason: str | None = None
        if len(state.failed_steps) > policy.max_failed_steps:
            reason = (
                f"{len(state.failed_steps)} failed steps exceed the limit of "
                f"{policy.max_failed_steps}"
            )
        elif state.consecutive_failures >= policy.max_consecutive_failures:
            reason = f"{state.consecutive_failures} consecutive step failures"
        if reason is None:
            return
        result = self.rollback_manager.rollback(policy.auto_level, reason, op=self._op)
        raise _Halt(self._rollback_report(result, f"Automatic rollback: {reason}."))

    def _precondition_halt(self, step: Step, error: str, report: RunReport) -> None:
        self.tracker.mark_step_failed(step.name, step.phase, error)
        report.failed.append(step.name)
        self._note(f"step.{step.name}.precondition", status="error", detail=error)
        self.tracker.transition(ExecutorState.FAILED)
        report.state = ExecutorState.FAILED
        report.exit_code = ExitCode.FAILURE
        report.message = error
        raise _Halt(report)

    def _interrupt(self, report: RunReport, token: CancellationToken) -> None:
        reason = token.reason or "signal"
        self.tracker.add_recovery_point(f"interrupted_by_{reason}", self._latest_snapshot_id())
        self.tracker.transition(ExecutorState.INTERRUPTED)
        self._note("run.interrupted", status="warning", detail=reason)
        report.state = ExecutorState.INTERRUPTED
        report.exit_code = ExitCode.FAILURE
        report.message = f"Run interrupted by {reason}; resume with --recovery."
        raise _Halt(report)

    def _rollback_report(self, result: RollbackResult, message: str) -> RunReport:
        state = self.tracker.state
        return RunReport(
            session_id=state.session_id,
            state=state.state,
            exit_code=ExitCode.ROLLBACK,
            message=message,
            failed=state.failed_names(),
            rollback=result,
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------
    def _maybe_checkpoint(
        self,
        plan: ExecutionPlan,
        step: Step,
        appliers: Mapping[str, Applier],
        services: Sequence[str],
        failed_phases: set[str],
        ran_phases: set[str],
    ) -> None:
        if not plan.is_last_in_phase(step):
            return
        if step.phase in failed_phases or step.phase not in ran_phases:
            return
        phase_steps = plan.phase_steps(step.phase)
        snapshot = self._take_snapshot(
            f"checkpoint-{step.phase}",
            SnapshotKind.CHECKPOINT,
            sorted({item.category for item in phase_steps} | {"config"}),
            appliers={
                item.name: appliers[item.name] for item in phase_steps if item.name in appliers
            },
            services=services,
            phase=step.phase,
        )
        current = self.config_store.current_version()
        if current is not None:
            self.config_store.mark_last_known_good(current)
            self._note("config.lkg", detail={"version": current.sequence, "snapshot": snapshot.id})

    # ------------------------------------------------------------------
    # Reload vs restart
    # ------------------------------------------------------------------
    def _restart_needs_confirmation(self) -> bool:
        policy = self.config.policy
        return policy.zero_downtime_preferred and policy.warn_if_restart_required

    def _converge_service(
        self,
        step: Step,
        applier: Applier,
        snapshot: Snapshot,
        report: RunReport,
        options: RunOptions,
    ) -> str | None:
        """Apply a restart-requiring change; return an error string on recovered failure."""
        service = step.restart or self.config.service.name
        policy = self.config.policy
        try:
            if self.controller.can_reload(service):
                self.controller.reload(service)
                self._note(f"service.{service}.reload")
                health = self.health.wait_until_healthy(
                    policy.restart_timeout, policy.health_poll_interval
                )
                if health.healthy:
                    return None
                _log.warning("Reload of %s left it unhealthy: %s", service, health.summary())
        except SystemdError as exc:
            _log.warning("Reload of %s failed: %s", service, exc)

        if self._restart_needs_confirmation() and not options.allow_restart:
            prompt = f"Step '{step.name}' needs a restart of {service}. Restart now?"
            if options.confirm is None or not options.confirm(prompt):
                self._pause(step, service, snapshot, report)

        try:
            self.controller.restart(service)
            self._note(f"service.{service}.restart")
        except SystemdError as exc:
            _log.error("Restart of %s failed: %s", service, exc)
        health = self.health.wait_until_healthy(policy.restart_timeout, policy.health_poll_interval)
        if health.healthy:
            return None
        return self._restore_after_bad_restart(step, applier, snapshot, service, health.summary())

    def _restore_after_bad_restart(
        self,
        step: Step,
        applier: Applier,
        snapshot: Snapshot,
        service: str,
        problem: str,
    ) -> str:
        self.tracker.transition(ExecutorState.RECOVERING)
        self._note(f"service.{service}.unhealthy", status="error", detail=problem)
        try:
            applier.undo(snapshot)
        except Exception as exc:
            _log.error("Undo of %s raised: %s", step.name, _error_text(exc))
        try:
            if self.config_store.last_known_good() is not None:
                self.config_store.rollback_to_last_known_good()
        except ConfigStoreError as exc:
            _log.error("Unable to restore last-known-good configuration: %s", exc)
        self._start_service(service)
        health = self.health.wait_until_healthy(
            self.config.policy.restart_timeout, self.config.policy.health_poll_interval
        )
        if not health.healthy:
            self.tracker.mark_step_failed(step.name, step.phase, problem)
            self.tracker.transition(ExecutorState.FAILED)
            raise FatalRunError(
                f"{service} did not recover after restoring the last-known-good "
                f"configuration: {health.summary()}"
            )
        self._note(f"service.{service}.recovered")
        return f"{service} unhealthy after restart ({problem}); change undone"

    def _start_service(self, service: str) -> None:
        try:
            self.controller.start(service)
        except SystemdError as exc:
            _log.error("Start of %s failed: %s", service, exc)

    def _ensure_started(self, service: str) -> None:
        try:
            if self.controller.is_active(service):
                return
            self.controller.start(service)
        except SystemdError as exc:
            _log.error("Start of %s failed: %s", service, exc)

    def _pause(self, step: Step, service: str, snapshot: Snapshot, report: RunReport) -> None:
        if snapshot.ephemeral:
            snapshot = self.snapshots.create(
                f"pre-{step.name}",
                kind=SnapshotKind.PRE_STEP,
                categories=snapshot.categories,
                config_version=snapshot.config_version,
                session_id=snapshot.session_id,
                phase=step.phase,
                step=step.name,
                aux=snapshot.aux,
            )
        pending = PendingRestart(
            step=step.name,
            phase=step.phase,
            service=service,
            reason="restart required and not confirmed",
            requested_at=_now_iso(),
            snapshot_id=snapshot.id,
        )
        self.tracker.set_pending_restart(pending)
        self.tracker.transition(ExecutorState.PAUSED)
        self._note(f"step.{step.name}.paused", status="warning", detail=pending.to_dict())
        report.state = ExecutorState.PAUSED
        report.exit_code = ExitCode.FAILURE
        report.pending_restart = pending
        report.message = str(RestartConfirmationRequired(service, step.name))
        raise _Halt(report)

    def _resume_pending_restart(
        self,
        plan: ExecutionPlan,
        appliers: Mapping[str, Applier],
        report: RunReport,
        options: RunOptions,
    ) -> None:
        pending = self.tracker.state.pending_restart
        assert pending is not None
        step = plan.step(pending.step)
        applier = appliers.get(pending.step)
        if step is None or applier is None:
            _log.warning("Pending restart for %s no longer applies; clearing.", pending.step)
            self.tracker.set_pending_restart(None)
            return
        if self.tracker.state.is_completed(step.name, step.fingerprint):
            self.tracker.set_pending_restart(None)
            return
        snapshot = self.snapshots.get(pending.snapshot_id) if pending.snapshot_id else None
        if snapshot is None:
            _log.warning("Snapshot for paused step %s is gone; undo may be incomplete.", step.name)
            snapshot = self._ephemeral_snapshot(step, applier)
        self._note(f"step.{step.name}.resume", status="info", detail="pending restart")
        outcome = self._converge_service(step, applier, snapshot, report, options)
        self.tracker.set_pending_restart(None)
        if outcome is not None:
            self._failed_after_recovery(step, outcome, report)
            self._check_thresholds(report)
            return
        verdict = self._verify(step, applier, None)
        if not verdict.healthy:
            version = self.config_store.current_version()
            self._recover(step, applier, snapshot, version, verdict.message, report)
            self._check_thresholds(report)
            return
        self.tracker.mark_step_completed(
            step.name, step.phase, step.fingerprint, snapshot_id=pending.snapshot_id
        )
        report.changed.append(step.name)

    # ------------------------------------------------------------------
    def _finish(self, report: RunReport) -> RunReport:
        if report.failed:
            self.tracker.transition(ExecutorState.FAILED)
            report.state = ExecutorState.FAILED
            report.exit_code = ExitCode.FAILURE
            report.message = f"{len(report.failed)} step(s) failed: {', '.join(report.failed)}."
        else:
            self.tracker.set_position(None, None)
            self.tracker.transition(ExecutorState.COMPLETED)
            report.state = ExecutorState.COMPLETED
            report.exit_code = ExitCode.OK
            if report.changed:
                report.message = f"Converged; {len(report.changed)} step(s) changed."
            else:
                report.message = "Already converged; nothing to do."
        return report


__all__ = [
    "CancellationToken",
    "FatalRunError",
    "PhaseExecutor",
    "RestartConfirmationRequired",
    "RunOptions",
    "RunReport",
    "StepTimeoutError",
    "handle_signals",
]
