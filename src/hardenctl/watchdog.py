"""Service supervisor.

The watchdog runs as its own systemd unit and shares nothing with the executor
except the durable stores: it reads the desired-state history, queries the run
lock and writes ``watchdog-state.json`` and ``alerts.json`` under the state
directory. It never changes configuration and never triggers a rollback.
"""
from __future__ import annotations

import secrets
import shutil
import sys
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .appliers.base import ApplierContext, call_with_timeout
from .appliers.registry import ApplierRegistry
from .config import AppConfig, WatchdogConfig
from .config_store import ConfigStore, ConfigStoreError
from .health.engine import HealthVerifier
from .locking import LockManager
from .logging import OperationScope, get_logger
from .plan import MaintenanceTrigger, PlanError, parse_maintenance
from .providers.systemd import ServiceController, SystemdError, SystemdProvider
from .snapshots import Snapshot
from .state.files import StateFileError, read_json, write_json
from .state.runstate import new_session_id

_log = get_logger("watchdog")

STATE_FILE = "watchdog-state.json"
ALERTS_FILE = "alerts.json"
WATCHDOG_UNIT = "hardenctl-watchdog"
WATCHDOG_TEMPLATE = "systemd/watchdog.service.j2"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _iso_from_epoch(value: float) -> str:
    stamp = datetime.fromtimestamp(value, tz=UTC).isoformat(timespec="seconds")
    return stamp.replace("+00:00", "Z")


def backoff_delay(settings: WatchdogConfig, attempt: int) -> float:
    """Return the wait after restart *attempt* (1-based)."""
    if attempt <= 0:
        return 0.0
    if settings.backoff == "fixed":
        return min(settings.backoff_base, settings.backoff_max)
    return min(settings.backoff_base * (2 ** (attempt - 1)), settings.backoff_max)


@dataclass
class WatchdogRecord:
    """Durable supervisor state for one watchdog session."""

    session_id: str
    restart_attempts: int = 0
    last_check_at: str | None = None
    last_status: str | None = None
    next_attempt_at: float | None = None
    exhausted: bool = False
    maintenance: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "session_id": self.session_id,
            "restart_attempts": self.restart_attempts,
            "last_check_at": self.last_check_at,
            "last_status": self.last_status,
            "next_attempt_at": self.next_attempt_at,
            "next_attempt_at_iso": (
                _iso_from_epoch(self.next_attempt_at) if self.next_attempt_at else None
            ),
            "exhausted": self.exhausted,
            "maintenance": dict(self.maintenance),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WatchdogRecord:
        """Build from the persisted document."""
        attempts = data.get("restart_attempts", 0)
        next_attempt = data.get("next_attempt_at")
        maintenance = data.get("maintenance")
        return cls(
            session_id=str(data.get("session_id") or new_session_id()),
            restart_attempts=attempts if isinstance(attempts, int) else 0,
            last_check_at=str(data["last_check_at"]) if data.get("last_check_at") else None,
            last_status=str(data["last_status"]) if data.get("last_status") else None,
            next_attempt_at=float(next_attempt)
            if isinstance(next_attempt, (int, float))
            else None,
            exhausted=bool(data.get("exhausted", False)),
            maintenance={
                str(key): float(value)
                for key, value in maintenance.items()
                if isinstance(value, (int, float))
            }
            if isinstance(maintenance, Mapping)
            else {},
        )


@dataclass(frozen=True)
class Alert:
    """An operator-facing alert raised by the watchdog."""

    id: str
    raised_at: str
    service: str
    kind: str
    message: str
    attempts: int = 0
    acknowledged: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "raised_at": self.raised_at,
            "service": self.service,
            "kind": self.kind,
            "message": self.message,
            "attempts": self.attempts,
            "acknowledged": self.acknowledged,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Alert:
        """Build from a persisted entry."""
        attempts = data.get("attempts", 0)
        return cls(
            id=str(data.get("id", "")),
            raised_at=str(data.get("raised_at", "")),
            service=str(data.get("service", "")),
            kind=str(data.get("kind", "")),
            message=str(data.get("message", "")),
            attempts=attempts if isinstance(attempts, int) else 0,
            acknowledged=bool(data.get("acknowledged", False)),
        )


class AlertLog:
    """Append-only alert list stored as JSON."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def entries(self, *, include_acknowledged: bool = True) -> list[Alert]:
        """Return alerts, oldest first."""
        try:
            raw = read_json(self.path, default={"alerts": []})
        except StateFileError as exc:
            _log.warning("Alert log unreadable (%s); treating as empty.", exc)
            return []
        entries = raw.get("alerts", []) if isinstance(raw, Mapping) else []
        alerts = [Alert.from_dict(item) for item in entries if isinstance(item, Mapping)]
        if include_acknowledged:
            return alerts
        return [alert for alert in alerts if not alert.acknowledged]

    def raise_alert(self, *, service: str, kind: str, message: str, attempts: int = 0) -> Alert:
        """Record a new alert and return it."""
        alert = Alert(
            id=f"{datetime.now(tz=UTC).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3)}",
            raised_at=_now_iso(),
            service=service,
            kind=kind,
            message=message,
            attempts=attempts,
        )
        alerts = self.entries()
        alerts.append(alert)
        self._write(alerts)
        _log.error("ALERT %s: %s", kind, message)
        return alert

    def acknowledge_all(self) -> int:
        """Mark every open alert acknowledged; return how many changed."""
        alerts = self.entries()
        changed = 0
        updated: list[Alert] = []
        for alert in alerts:
            if not alert.acknowledged:
                changed += 1
                alert = Alert(**{**alert.to_dict(), "acknowledged": True})
            updated.append(alert)
        if changed:
            self._write(updated)
        return changed

    def _write(self, alerts: list[Alert]) -> None:
        write_json(self.path, {"alerts": [alert.to_dict() for alert in alerts]})


@dataclass
class TickResult:
    """What a single supervisor pass did."""

    healthy: bool
    action: str
    attempts: int
    summary: str
    delay: float | None = None
    maintenance: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "healthy": self.healthy,
            "action": self.action,
            "attempts": self.attempts,
            "summary": self.summary,
            "delay": self.delay,
            "maintenance": dict(self.maintenance),
        }


def _default_context(document: Mapping[str, object]) -> ApplierContext:
    return ApplierContext(document=document)


class Watchdog:
    """Periodic liveness supervision with bounded restarts and maintenance triggers."""

    def __init__(
        self,
        *,
        config: AppConfig,
        health: HealthVerifier,
        controller: ServiceController,
        locks: LockManager,
        config_store: ConfigStore,
        registry: ApplierRegistry,
        context_factory: Callable[[Mapping[str, object]], ApplierContext] = _default_context,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.settings = config.watchdog
        self.health = health
        self.controller = controller
        self.locks = locks
        self.config_store = config_store
        self.registry = registry
        self.context_factory = context_factory
        self._clock = clock
        self.state_path = config.state_dir / STATE_FILE
        self.alerts = AlertLog(config.state_dir / ALERTS_FILE)
        self._record: WatchdogRecord | None = None

    # Record ------------------------------------------------------------
    def load_record(self) -> WatchdogRecord:
        """Return the persisted record, starting a fresh one when absent or corrupt."""
        if self._record is not None:
            return self._record
        try:
            raw = read_json(self.state_path)
        except StateFileError as exc:
            _log.warning("Watchdog state unreadable (%s); starting fresh.", exc)
            raw = None
        if isinstance(raw, Mapping):
            self._record = WatchdogRecord.from_dict(raw)
        else:
            self._record = WatchdogRecord(session_id=new_session_id())
        return self._record

    def start_session(self, session_id: str | None = None) -> WatchdogRecord:
        """Reset the restart budget; maintenance schedule carries over."""
        previous = self.load_record()
        self._record = WatchdogRecord(
            session_id=session_id or new_session_id(),
            maintenance=dict(previous.maintenance),
        )
        self._save()
        return self._record

    def _save(self) -> None:
        if self._record is not None:
            write_json(self.state_path, self._record.to_dict())

    # Supervision -------------------------------------------------------
    def tick(self, *, op: OperationScope | None = None) -> TickResult:
        """Run one liveness check, restart if due, then run due maintenance."""
        record = self.load_record()
        service = self.config.service.name
        now = self._clock()
        report = self.health.liveness()
        record.last_check_at = _now_iso()
        record.last_status = "healthy" if report.healthy else "unhealthy"

        if report.healthy:
            if record.next_attempt_at is not None:
                _log.info(
                    "%s is healthy again after %d restart(s).", service, record.restart_attempts
                )
            record.next_attempt_at = None
            result = TickResult(
                healthy=True,
                action="none",
                attempts=record.restart_attempts,
                summary=report.summary(),
            )
        else:
            result = self._handle_unhealthy(record, service, now, report.summary(), op)

        result.maintenance = self._run_maintenance(record, now, op)
        self._save()
        return result

    def _handle_unhealthy(
        self,
        record: WatchdogRecord,
        service: str,
        now: float,
        summary: str,
        op: OperationScope | None,
    ) -> TickResult:
        if record.restart_attempts >= self.settings.max_restarts:
            if not record.exhausted:
                record.exhausted = True
                self.alerts.raise_alert(
                    service=service,
                    kind="restart-budget-exhausted",
                    message=(
                        f"{service} still unhealthy after {record.restart_attempts} "
                        f"restart(s): {summary}"
                    ),
                    attempts=record.restart_attempts,
                )
                if op is not None:
                    op.add_step("watchdog.alert", status="error", detail=summary)
            return TickResult(
                healthy=False,
                action="exhausted",
                attempts=record.restart_attempts,
                summary=summary,
            )

        if record.next_attempt_at is not None and now < record.next_attempt_at:
            return TickResult(
                healthy=False,
                action="backoff",
                attempts=record.restart_attempts,
                summary=summary,
                delay=record.next_attempt_at - now,
            )

        record.restart_attempts += 1
        delay = backoff_delay(self.settings, record.restart_attempts)
        record.next_attempt_at = now + delay
        try:
            self.controller.restart(service)
            action = "restarted"
            _log.warning(
                "Restarted %s (attempt %d/%d); next attempt no sooner than %.1fs.",
                service,
                record.restart_attempts,
                self.settings.max_restarts,
                delay,
            )
        except SystemdError as exc:
            action = "restart-failed"
            _log.error("Restart of %s failed: %s", service, exc)
        if op is not None:
            op.add_step(
                "watchdog.restart",
                status="success" if action == "restarted" else "error",
                detail={"attempt": record.restart_attempts, "delay": delay},
            )
        return TickResult(
            healthy=False,
            action=action,
            attempts=record.restart_attempts,
            summary=summary,
            delay=delay,
        )

    # Maintenance -------------------------------------------------------
    def _document(self) -> Mapping[str, object]:
        current = self.config_store.current_version()
        if current is None:
            return {}
        try:
            return self.config_store.load_version(current.sequence)
        except ConfigStoreError as exc:
            _log.warning("Desired state unavailable for maintenance: %s", exc)
            return {}

    def triggers(self) -> list[MaintenanceTrigger]:
        """Return the maintenance triggers declared in the current desired state."""
        try:
            return parse_maintenance(self._document(), known_kinds=self.registry.kinds())
        except PlanError as exc:
            _log.warning("Ignoring maintenance triggers: %s", exc)
            return []

    def _run_maintenance(
        self,
        record: WatchdogRecord,
        now: float,
        op: OperationScope | None,
    ) -> dict[str, str]:
        outcomes: dict[str, str] = {}
        triggers = self.triggers()
        if not triggers:
            return outcomes
        document = self._document()
        context = self.context_factory(document)
        for trigger in triggers:
            last = record.maintenance.get(trigger.name)
            if last is not None and now - last < trigger.interval:
                continue
            if self.locks.is_held():
                outcomes[trigger.name] = "skipped"
                continue
            outcomes[trigger.name] = self._run_trigger(trigger, context)
            record.maintenance[trigger.name] = now
            if op is not None:
                op.add_step(
                    f"maintenance.{trigger.name}",
                    status="success" if outcomes[trigger.name] == "ok" else "error",
                )
        return outcomes

    def _run_trigger(self, trigger: MaintenanceTrigger, context: ApplierContext) -> str:
        timeout = trigger.step.timeout or self.config.policy.apply_timeout
        try:
            applier = self.registry.create(trigger.step, context)
            captured = applier.capture_state()
        except Exception as exc:
            _log.error("Maintenance %s could not start: %s", trigger.name, exc)
            return "failed"
        try:
            result = call_with_timeout(applier.apply, timeout, f"maintenance {trigger.name}")
            if result.failed:
                problem = result.message
            else:
                verdict = call_with_timeout(
                    applier.verify, timeout, f"verify maintenance {trigger.name}"
                )
                if verdict.healthy:
                    return "ok"
                problem = verdict.message or "verification failed"
        except Exception as exc:
            problem = str(exc)
        _log.error("Maintenance %s failed: %s", trigger.name, problem)
        snapshot = Snapshot.in_memory(trigger.step.name, trigger.step.category, captured)
        try:
            undone = call_with_timeout(
                lambda: applier.undo(snapshot), timeout, f"undo maintenance {trigger.name}"
            )
        except Exception as exc:
            _log.error("Undo of maintenance %s failed: %s", trigger.name, exc)
            undone = False
        return "undone" if undone else "failed"

    def clear_schedule(self) -> None:
        """Forget when maintenance triggers last ran."""
        record = self.load_record()
        record.maintenance.clear()
        self._save()

    # Loop --------------------------------------------------------------
    def _tick_failed(self, exc: Exception) -> None:
        _log.exception("Watchdog tick failed; supervision continues.")
        try:
            self.alerts.raise_alert(
                service=self.config.service.name,
                kind="watchdog-tick-failed",
                message=f"{type(exc).__name__}: {exc}",
            )
        except StateFileError as alert_exc:
            _log.error("Unable to record tick failure alert: %s", alert_exc)

    def run_forever(
        self,
        stop: threading.Event,
        *,
        session_id: str | None = None,
        op: OperationScope | None = None,
    ) -> int:
        """Tick every ``watchdog.interval`` seconds until *stop* is set.

        Holds the watchdog lock for the lifetime of the loop, so a second
        supervisor fails with :class:`~hardenctl.locking.LockBusyError`.
        A tick that raises is logged and alerted, and the loop carries on.
        Returns the number of ticks performed.
        """
        session = session_id or new_session_id()
        ticks = 0
        with self.locks.watchdog_lock(session):
            self.start_session(session)
            _log.info("Watchdog session %s supervising %s.", session, self.config.service.name)
            while not stop.is_set():
                try:
                    self.tick(op=op)
                except Exception as exc:
                    self._tick_failed(exc)
                ticks += 1
                stop.wait(self.settings.interval)
        return ticks


class WatchdogService:
    """Install and remove the watchdog's own systemd unit."""

    def __init__(
        self,
        *,
        config: AppConfig,
        provider: SystemdProvider,
        executable: str | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.executable = executable or self._default_executable()

    @staticmethod
    def _default_executable() -> str:
        found = shutil.which("hardenctl")
        if found:
            return found
        return f"{sys.executable} -m hardenctl"

    @property
    def unit_path(self) -> Path:
        """Location of the rendered unit file."""
        return self.provider.unit_path(WATCHDOG_UNIT)

    def render_context(self) -> dict[str, object]:
        """Template variables for the unit file."""
        return {
            "service_name": self.config.service.name,
            "exec_start": f"{self.executable} watchdog run",
            "restart_sec": int(max(1.0, self.config.watchdog.backoff_base)),
            "environment": [f"HARDENCTL_CONFIG_FILE={self.config.config_file}"],
        }

    def install(self, *, start: bool = True) -> bool:
        """Render, enable and (optionally) start the unit; return True if the file changed."""
        changed = self.provider.render_unit(WATCHDOG_UNIT, WATCHDOG_TEMPLATE, self.render_context())
        self.provider.enable(WATCHDOG_UNIT)
        if start and changed:
            self.provider.restart(WATCHDOG_UNIT)
        elif start:
            self.provider.start(WATCHDOG_UNIT)
        return changed

    def uninstall(self) -> bool:
        """Stop, disable and delete the unit; return False when it was not installed."""
        if not self.unit_path.exists():
            return False
        self.provider.stop(WATCHDOG_UNIT)
        self.provider.disable(WATCHDOG_UNIT)
        return self.provider.remove_unit(WATCHDOG_UNIT)


def monitoring_teardown(service: WatchdogService, watchdog: Watchdog) -> Callable[[], None]:
    """Return the rollback hook that removes supervision and the maintenance schedule."""

    def _teardown() -> None:
        service.uninstall()
        watchdog.clear_schedule()

    return _teardown


__all__ = [
    "ALERTS_FILE",
    "Alert",
    "AlertLog",
    "STATE_FILE",
    "TickResult",
    "WATCHDOG_UNIT",
    "Watchdog",
    "WatchdogRecord",
    "WatchdogService",
    "backoff_delay",
    "monitoring_teardown",
]
