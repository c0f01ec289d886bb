"""Typer-powered command line for ``hardenctl``.

Running ``hardenctl`` with no subcommand converges the host towards the
desired-state document. The global flags select the other top-level actions
(``--check``, ``--status``, ``--rollback LEVEL``); sub-apps manage the
configuration history, snapshots and the watchdog.

Exit codes: 0 success or nothing to do, 1 failure, 2 a rollback was
performed, 3 another run holds the lock.
"""
from __future__ import annotations

import json
import sys
import textwrap
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .appliers import ApplierContext, ApplierRegistry, default_registry
from .config import AppConfig, ConfigError, load_config
from .config_store import ConfigStore, ConfigStoreError
from .executor import (
    CancellationToken,
    FatalRunError,
    PhaseExecutor,
    RunOptions,
    RunReport,
    handle_signals,
)
from .exit_codes import ExitCode
from .health import HealthContext, HealthReport, HealthVerifier
from .locking import WATCHDOG_LOCK_NAME, LockBusyError, LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .plan import PlanError, make_validator, select_phases
from .providers import SystemdError, SystemdProvider
from .rollback import RollbackError, RollbackLevel, RollbackManager, RollbackResult
from .snapshots import SnapshotError, SnapshotStore
from .state import RunStateTracker, StateFileError
from .state.files import dump_yaml, load_yaml
from .state.runstate import ExecutorState, new_session_id
from .templates import TemplateEngine, TemplateError
from .watchdog import Watchdog, WatchdogService, monitoring_teardown

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to hardenctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Idempotent, resumable MongoDB host hardening.

        Without a subcommand hardenctl applies the desired-state document phase
        by phase, verifying service health after every step and rolling back
        when failures cross the configured thresholds.
        """
    ).strip(),
)
watchdog_app = typer.Typer(help="Supervise the database service.")
config_app = typer.Typer(help="Inspect and manage the desired-state document.")
snapshot_app = typer.Typer(help="Inspect recorded snapshots.")

app.add_typer(watchdog_app, name="watchdog")
app.add_typer(config_app, name="config")
app.add_typer(snapshot_app, name="snapshot")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd_provider: SystemdProvider
    registry: ApplierRegistry
    config_store: ConfigStore
    snapshots: SnapshotStore
    tracker: RunStateTracker
    health: HealthVerifier
    watchdog: Watchdog
    watchdog_service: WatchdogService
    rollback: RollbackManager
    context_factory: Callable[[Mapping[str, object]], ApplierContext]

    def executor(self) -> PhaseExecutor:
        """Return a phase executor wired to this runtime."""
        return PhaseExecutor(
            config=self.config,
            config_store=self.config_store,
            snapshots=self.snapshots,
            tracker=self.tracker,
            registry=self.registry,
            health=self.health,
            controller=self.systemd_provider,
            rollback=self.rollback,
            context_factory=self.context_factory,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.FAILURE)) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    systemd_provider = SystemdProvider(
        templates=templates,
        unit_dir=config.service.unit_dir,
        systemctl_bin=config.service.systemctl_bin,
    )
    registry = default_registry()
    snapshots = SnapshotStore(config.snapshots_dir, max_snapshots=config.history.max_snapshots)
    config_store = ConfigStore(
        config.desired_config,
        config.history_dir,
        max_versions=config.history.max_versions,
        validator=make_validator(registry.kinds()),
        protected_versions=snapshots.referenced_versions,
    )
    tracker = RunStateTracker(config.run_state_file)
    health = HealthVerifier(
        HealthContext(
            service=config.service,
            thresholds=config.health,
            controller=systemd_provider,
        )
    )

    def _context_factory(document: Mapping[str, object]) -> ApplierContext:
        return ApplierContext(
            document=document,
            templates=templates,
            default_timeout=config.policy.apply_timeout,
        )

    watchdog = Watchdog(
        config=config,
        health=health,
        controller=systemd_provider,
        locks=locks,
        config_store=config_store,
        registry=registry,
        context_factory=_context_factory,
    )
    watchdog_service = WatchdogService(config=config, provider=systemd_provider)
    rollback = RollbackManager(
        config_store=config_store,
        snapshots=snapshots,
        tracker=tracker,
        registry=registry,
        controller=systemd_provider,
        context_factory=_context_factory,
        teardown_monitoring=monitoring_teardown(watchdog_service, watchdog),
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        systemd_provider=systemd_provider,
        registry=registry,
        config_store=config_store,
        snapshots=snapshots,
        tracker=tracker,
        health=health,
        watchdog=watchdog,
        watchdog_service=watchdog_service,
        rollback=rollback,
        context_factory=_context_factory,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    parent = ctx.find_root()
    if isinstance(parent.obj, RuntimeContext):
        return parent.obj
    return _ensure_runtime(ctx, None, None)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.FAILURE),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _lock_busy(op: OperationScope, exc: LockBusyError) -> NoReturn:
    _command_error(op, str(exc), rc=int(ExitCode.LOCK_BUSY))


def _dump_json(data: object) -> None:
    console.print_json(data=data)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class _RunFlags:
    dry_run: bool
    recovery: bool
    allow_restart: bool
    enforce: bool
    phase: str | None
    include_phases: str | None
    exclude_phases: str | None
    json_output: bool


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the hardenctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Describe what each pending step would change."
    ),
    recovery: bool = typer.Option(
        False, "--recovery", help="Resume the interrupted session instead of starting anew."
    ),
    check: bool = typer.Option(False, "--check", help="Run health checks and exit."),
    status: bool = typer.Option(
        False, "--status", help="Show run state, lock holder, watchdog state and alerts."
    ),
    rollback: str | None = typer.Option(
        None,
        "--rollback",
        metavar="LEVEL",
        help="Roll back to a level: config, security, monitoring or full.",
    ),
    phase: str | None = typer.Option(None, "--phase", help="Run a single phase."),
    include_phases: str | None = typer.Option(
        None, "--include-phases", help="Comma-separated phases to run."
    ),
    exclude_phases: str | None = typer.Option(
        None, "--exclude-phases", help="Comma-separated phases to skip."
    ),
    allow_restart: bool = typer.Option(
        False, "--allow-restart", help="Permit service restarts without asking."
    ),
    enforce: bool = typer.Option(
        False, "--enforce", help="Re-apply steps even when already completed."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"hardenctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    if ctx.invoked_subcommand is not None:
        return

    selected = [name for name, flag in (("--check", check), ("--status", status)) if flag]
    if rollback is not None:
        selected.append("--rollback")
    if len(selected) > 1:
        console.print(f"[red]Options {', '.join(selected)} are mutually exclusive.[/red]")
        raise typer.Exit(code=int(ExitCode.FAILURE))

    if check:
        _do_check(runtime, json_output=json_output)
    elif status:
        _do_status(runtime, json_output=json_output)
    elif rollback is not None:
        _do_rollback(runtime, rollback, json_output=json_output)
    else:
        _do_run(
            runtime,
            _RunFlags(
                dry_run=dry_run,
                recovery=recovery,
                allow_restart=allow_restart,
                enforce=enforce,
                phase=phase,
                include_phases=include_phases,
                exclude_phases=exclude_phases,
                json_output=json_output,
            ),
        )


@app.command("run")
def run_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Describe what each pending step would change."
    ),
    recovery: bool = typer.Option(
        False, "--recovery", help="Resume the interrupted session instead of starting anew."
    ),
    phase: str | None = typer.Option(None, "--phase", help="Run a single phase."),
    include_phases: str | None = typer.Option(
        None, "--include-phases", help="Comma-separated phases to run."
    ),
    exclude_phases: str | None = typer.Option(
        None, "--exclude-phases", help="Comma-separated phases to skip."
    ),
    allow_restart: bool = typer.Option(
        False, "--allow-restart", help="Permit service restarts without asking."
    ),
    enforce: bool = typer.Option(
        False, "--enforce", help="Re-apply steps even when already completed."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge the host towards the desired state (the default action)."""
    runtime = _get_runtime(ctx)
    _do_run(
        runtime,
        _RunFlags(
            dry_run=dry_run,
            recovery=recovery,
            allow_restart=allow_restart,
            enforce=enforce,
            phase=phase,
            include_phases=include_phases,
            exclude_phases=exclude_phases,
            json_output=json_output,
        ),
    )


def _confirm_callback(json_output: bool) -> Callable[[str], bool] | None:
    if json_output or not sys.stdin.isatty():
        return None

    def _confirm(prompt: str) -> bool:
        return typer.confirm(prompt, default=False)

    return _confirm


def _do_run(runtime: RuntimeContext, flags: _RunFlags) -> NoReturn:
    args = {
        "dry_run": flags.dry_run,
        "recovery": flags.recovery,
        "allow_restart": flags.allow_restart,
        "enforce": flags.enforce,
        "phase": flags.phase,
        "include_phases": flags.include_phases,
        "exclude_phases": flags.exclude_phases,
    }
    target = {"kind": "service", "name": runtime.config.service.name}
    with runtime.logger.operation("run", args=args, target=target) as op:
        try:
            phases = select_phases(
                phase=flags.phase,
                include=[flags.include_phases] if flags.include_phases else None,
                exclude=[flags.exclude_phases] if flags.exclude_phases else None,
            )
        except PlanError as exc:
            _command_error(op, str(exc))

        session_id = new_session_id()
        options = RunOptions(
            dry_run=flags.dry_run,
            enforce=flags.enforce,
            recovery=flags.recovery,
            allow_restart=flags.allow_restart,
            phases=tuple(phases),
            confirm=_confirm_callback(flags.json_output),
            session_id=session_id,
        )
        executor = runtime.executor()
        try:
            if flags.dry_run:
                report = executor.run(options, op=op)
            else:
                token = CancellationToken()
                with runtime.locks.run_lock(session_id) as handle:
                    op.set_lock_wait_ms(handle.wait_ms)
                    if handle.recovered:
                        op.add_step("lock.recovered", status="warning", detail=handle.previous)
                    with handle_signals(token):
                        report = executor.run(
                            options, lock_status=handle.status, op=op, token=token
                        )
                    if report.exit_code is ExitCode.OK and report.state is ExecutorState.COMPLETED:
                        _install_watchdog(runtime, op, json_output=flags.json_output)
        except LockBusyError as exc:
            _lock_busy(op, exc)
        except FatalRunError as exc:
            _command_error(op, f"Fatal: {exc}")
        except (ConfigStoreError, SnapshotError, StateFileError, LockError) as exc:
            _command_error(op, str(exc))

        _render_report(report, json_output=flags.json_output)
        _finish_run(op, report)


def _install_watchdog(runtime: RuntimeContext, op: OperationScope, *, json_output: bool) -> None:
    """Put the converged host under supervision; failure here does not fail the run."""
    service = runtime.watchdog_service
    try:
        changed = service.install(start=True)
    except (SystemdError, TemplateError) as exc:
        op.add_step("watchdog.install", status="warning", detail=str(exc))
        if not json_output:
            console.print(f"[yellow]Watchdog not installed: {exc}[/yellow]")
        return
    op.add_step(
        "watchdog.install", detail={"unit": str(service.unit_path), "changed": changed}
    )


def _finish_run(op: OperationScope, report: RunReport) -> NoReturn:
    context = {"session_id": report.session_id, "state": report.state.value}
    code = int(report.exit_code)
    if report.exit_code is ExitCode.OK:
        op.success(report.message, changed=len(report.changed), context=context)
    elif report.exit_code is ExitCode.ROLLBACK and report.rollback is not None:
        op.warning(
            report.message,
            errors=list(report.rollback.errors) or None,
            changed=len(report.rollback.undone_steps),
            context={**context, "rollback": report.rollback.to_dict()},
        )
    else:
        op.error(report.message, errors=report.failed or None, rc=code, context=context)
    raise typer.Exit(code=code)


def _render_report(report: RunReport, *, json_output: bool) -> None:
    if json_output:
        _dump_json(report.to_dict())
        return

    if report.plans:
        table = Table(title="Planned changes", show_header=True, header_style="bold magenta")
        table.add_column("Step", style="bold")
        table.add_column("Summary")
        table.add_column("Changes")
        table.add_column("Restart")
        for plan in report.plans:
            expected = {True: "yes", False: "no", None: "unknown"}[plan.changes_expected]
            table.add_row(
                plan.step, plan.summary, expected, "yes" if plan.requires_restart else "no"
            )
        console.print(table)
    if report.skipped:
        console.print(f"[dim]Already converged: {', '.join(report.skipped)}[/dim]")
    if report.changed:
        console.print(f"[green]Changed: {', '.join(report.changed)}[/green]")
    if report.failed:
        console.print(f"[red]Failed: {', '.join(report.failed)}[/red]")
    if report.rollback is not None:
        _render_rollback(report.rollback)
    colour = {
        ExitCode.OK: "green",
        ExitCode.FAILURE: "red",
        ExitCode.ROLLBACK: "yellow",
    }.get(report.exit_code, "red")
    console.print(f"[{colour}]{report.message}[/{colour}]")


def _render_rollback(result: RollbackResult) -> None:
    colour = "green" if result.success else "red"
    console.print(
        f"[{colour}]Rollback ({result.level.value}) {result.status}[/{colour}]: {result.reason}"
    )
    if result.undone_steps:
        console.print(f"  undone: {', '.join(result.undone_steps)}")
    if result.config_version is not None:
        console.print(f"  configuration version: v{result.config_version}")
    for error in result.errors:
        console.print(f"  [red]{error}[/red]")


# ---------------------------------------------------------------------------
# --check / --status / --rollback
# ---------------------------------------------------------------------------
def _render_health(report: HealthReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Message")
    styles = {"green": "green", "yellow": "yellow", "red": "red"}
    for result in report.results:
        style = styles.get(result.status.value, "white")
        table.add_row(result.id, f"[{style}]{result.status.value}[/{style}]", result.message)
    console.print(table)


def _do_check(runtime: RuntimeContext, *, json_output: bool) -> NoReturn:
    with runtime.logger.operation(
        "check",
        args={"json": json_output},
        target={"kind": "service", "name": runtime.config.service.name},
    ) as op:
        report = runtime.health.check()
        if json_output:
            _dump_json(report.to_dict())
        else:
            _render_health(report)
        if report.healthy:
            op.success(f"Health {report.status.value}.", context=report.to_dict())
            raise typer.Exit(code=int(ExitCode.OK))
        _command_error(op, f"Service unhealthy: {report.summary()}", rc=int(ExitCode.FAILURE))


def _status_payload(runtime: RuntimeContext) -> dict[str, object]:
    state = runtime.tracker.peek()
    current = runtime.config_store.current_version()
    lkg = runtime.config_store.last_known_good()
    return {
        "run_state": state.to_dict() if state is not None else None,
        "lock": {
            "held": runtime.locks.is_held(),
            "holder": runtime.locks.holder(),
        },
        "config": {
            "current": current.sequence if current is not None else None,
            "last_known_good": lkg.sequence if lkg is not None else None,
        },
        "watchdog": {
            "running": runtime.locks.is_held(WATCHDOG_LOCK_NAME),
            "record": runtime.watchdog.load_record().to_dict(),
        },
        "alerts": [
            alert.to_dict() for alert in runtime.watchdog.alerts.entries(include_acknowledged=False)
        ],
    }


def _do_status(runtime: RuntimeContext, *, json_output: bool) -> NoReturn:
    with runtime.logger.operation("status", args={"json": json_output}, target=None) as op:
        try:
            payload = _status_payload(runtime)
        except (ConfigStoreError, StateFileError) as exc:
            _command_error(op, str(exc))
        if json_output:
            _dump_json(payload)
            op.success("Rendered status as JSON.")
            raise typer.Exit(code=0)

        run_state = payload["run_state"]
        table = Table(show_header=False)
        table.add_column("Key", style="bold")
        table.add_column("Value")
        if isinstance(run_state, Mapping):
            table.add_row("Session", str(run_state.get("session_id")))
            table.add_row("State", str(run_state.get("state")))
            position = run_state.get("current_step") or "-"
            table.add_row("Current step", f"{run_state.get('current_phase') or '-'} / {position}")
            for label, key in (("Completed steps", "completed_steps"), ("Failed", "failed_steps")):
                entries = run_state.get(key)
                table.add_row(label, str(len(entries) if isinstance(entries, list) else 0))
            pending = run_state.get("pending_restart")
            if isinstance(pending, Mapping):
                table.add_row(
                    "Pending restart", f"{pending.get('service')} ({pending.get('step')})"
                )
        else:
            table.add_row("State", "never run")
        lock = payload["lock"]
        assert isinstance(lock, Mapping)
        holder = lock.get("holder")
        lock_text = "free"
        if lock.get("held") and isinstance(holder, Mapping):
            lock_text = f"held by pid {holder.get('pid')} (session {holder.get('session_id')})"
        elif lock.get("held"):
            lock_text = "held"
        table.add_row("Run lock", lock_text)
        config_info = payload["config"]
        assert isinstance(config_info, Mapping)
        table.add_row(
            "Config version",
            f"v{config_info.get('current')} (LKG v{config_info.get('last_known_good')})",
        )
        watchdog_info = payload["watchdog"]
        assert isinstance(watchdog_info, Mapping)
        record = watchdog_info.get("record")
        restarts = record.get("restart_attempts") if isinstance(record, Mapping) else 0
        table.add_row(
            "Watchdog",
            f"{'running' if watchdog_info.get('running') else 'stopped'}, restarts {restarts}",
        )
        console.print(table)

        alerts = payload["alerts"]
        if isinstance(alerts, list) and alerts:
            console.print(f"[red]{len(alerts)} open alert(s):[/red]")
            for alert in alerts:
                if isinstance(alert, Mapping):
                    console.print(f"  {alert.get('raised_at')} {alert.get('message')}")
        op.success("Rendered status.")
        raise typer.Exit(code=0)


def _do_rollback(runtime: RuntimeContext, raw_level: str, *, json_output: bool) -> NoReturn:
    with runtime.logger.operation(
        "rollback",
        args={"level": raw_level},
        target={"kind": "service", "name": runtime.config.service.name},
    ) as op:
        try:
            level = RollbackLevel.parse(raw_level)
        except RollbackError as exc:
            _command_error(op, str(exc))
        try:
            with runtime.locks.run_lock(new_session_id()) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                result = runtime.rollback.rollback(level, "operator request", op=op)
        except LockBusyError as exc:
            _lock_busy(op, exc)
        except (ConfigStoreError, SnapshotError, StateFileError) as exc:
            _command_error(op, str(exc))

        if json_output:
            _dump_json(result.to_dict())
        else:
            _render_rollback(result)
        if not result.success:
            _command_error(
                op,
                f"Rollback to {level.value} finished with errors.",
                errors=list(result.errors),
            )
        op.success(
            f"Rolled back to {level.value}.",
            changed=len(result.undone_steps),
            context=result.to_dict(),
        )
        raise typer.Exit(code=int(ExitCode.ROLLBACK))


# ---------------------------------------------------------------------------
# watchdog
# ---------------------------------------------------------------------------
@watchdog_app.command("run")
def watchdog_run(ctx: typer.Context) -> None:
    """Supervise the service until interrupted (used by the systemd unit)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "watchdog run",
        args={"interval": runtime.config.watchdog.interval},
        target={"kind": "service", "name": runtime.config.service.name},
    ) as op:
        stop = threading.Event()
        token = CancellationToken()
        try:
            with handle_signals(token):
                waiter = threading.Thread(
                    target=_stop_on_cancel, args=(token, stop), daemon=True
                )
                waiter.start()
                ticks = runtime.watchdog.run_forever(stop)
        except LockBusyError as exc:
            _lock_busy(op, exc)
        op.success("Watchdog stopped.", context={"ticks": ticks, "signal": token.reason})


def _stop_on_cancel(token: CancellationToken, stop: threading.Event) -> None:
    while not stop.is_set():
        if token.cancelled:
            stop.set()
            return
        stop.wait(0.5)


@watchdog_app.command("tick")
def watchdog_tick(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run a single supervision pass."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "watchdog tick",
        args={"json": json_output},
        target={"kind": "service", "name": runtime.config.service.name},
    ) as op:
        try:
            with runtime.locks.watchdog_lock(new_session_id()):
                result = runtime.watchdog.tick(op=op)
        except LockBusyError as exc:
            _lock_busy(op, exc)
        if json_output:
            _dump_json(result.to_dict())
        else:
            colour = "green" if result.healthy else "red"
            console.print(f"[{colour}]{result.summary}[/{colour}] (action: {result.action})")
            for name, outcome in result.maintenance.items():
                console.print(f"  maintenance {name}: {outcome}")
        if result.action == "exhausted":
            _command_error(op, "Restart budget exhausted; alert raised.")
        op.success(f"Watchdog tick: {result.action}.", context=result.to_dict())


@watchdog_app.command("install")
def watchdog_install(
    ctx: typer.Context,
    start: bool = typer.Option(True, "--start/--no-start", help="Start the unit after install."),
) -> None:
    """Install the watchdog systemd unit."""
    runtime = _get_runtime(ctx)
    service = runtime.watchdog_service
    with runtime.logger.operation(
        "watchdog install",
        args={"start": start},
        target={"kind": "unit", "path": str(service.unit_path)},
    ) as op:
        try:
            changed = service.install(start=start)
        except (SystemdError, TemplateError) as exc:
            _command_error(op, f"Watchdog install failed: {exc}")
        verb = "Installed" if changed else "Unit already current"
        console.print(f"[green]{verb}: {service.unit_path}[/green]")
        op.success(f"{verb}.", changed=int(changed))


@watchdog_app.command("uninstall")
def watchdog_uninstall(ctx: typer.Context) -> None:
    """Stop and remove the watchdog systemd unit."""
    runtime = _get_runtime(ctx)
    service = runtime.watchdog_service
    with runtime.logger.operation(
        "watchdog uninstall",
        args={},
        target={"kind": "unit", "path": str(service.unit_path)},
    ) as op:
        try:
            removed = service.uninstall()
        except SystemdError as exc:
            _command_error(op, f"Watchdog uninstall failed: {exc}")
        if removed:
            console.print(f"[green]Removed {service.unit_path}[/green]")
            op.success("Watchdog unit removed.", changed=1)
        else:
            console.print("[yellow]Watchdog unit not installed.[/yellow]")
            op.success("Watchdog unit not installed.", changed=0)


@watchdog_app.command("alerts")
def watchdog_alerts(
    ctx: typer.Context,
    acknowledge: bool = typer.Option(False, "--ack", help="Acknowledge all open alerts."),
    show_all: bool = typer.Option(False, "--all", help="Include acknowledged alerts."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List watchdog alerts."""
    runtime = _get_runtime(ctx)
    log = runtime.watchdog.alerts
    with runtime.logger.operation(
        "watchdog alerts",
        args={"ack": acknowledge, "all": show_all, "json": json_output},
        target={"kind": "alerts", "path": str(log.path)},
    ) as op:
        if acknowledge:
            count = log.acknowledge_all()
            console.print(f"Acknowledged {count} alert(s).")
            op.success("Acknowledged alerts.", changed=count)
            return
        alerts = log.entries(include_acknowledged=show_all)
        if json_output:
            _dump_json([alert.to_dict() for alert in alerts])
        elif not alerts:
            console.print("[green]No open alerts.[/green]")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Raised", style="bold")
            table.add_column("Kind")
            table.add_column("Attempts")
            table.add_column("Message")
            table.add_column("Ack")
            for alert in alerts:
                table.add_row(
                    alert.raised_at,
                    alert.kind,
                    str(alert.attempts),
                    alert.message,
                    "yes" if alert.acknowledged else "no",
                )
            console.print(table)
        op.success("Listed alerts.", context={"count": len(alerts)})


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    desired: bool = typer.Option(
        False, "--desired", help="Show the desired-state document instead of tool settings."
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "config show",
        args={"json": json_output, "desired": desired},
        target={"kind": "config"},
    ) as op:
        if desired:
            try:
                document = runtime.config_store.peek()
            except ConfigStoreError as exc:
                _command_error(op, str(exc))
            if json_output:
                _dump_json(document)
            else:
                console.print(dump_yaml(document), end="")
            op.success("Rendered desired state.", changed=0)
            return

        data = runtime.config.to_dict()
        if json_output:
            _dump_json(data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("apply")
def config_apply(
    ctx: typer.Context,
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML document."),
    message: str | None = typer.Option(None, "--message", "-m", help="History note."),
) -> None:
    """Validate a desired-state document and make it the current version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config apply",
        args={"source": str(source), "message": message},
        target={"kind": "config", "path": str(runtime.config.desired_config)},
    ) as op:
        try:
            document = load_yaml(source.read_text(encoding="utf-8"), source=str(source))
        except (OSError, UnicodeDecodeError, StateFileError) as exc:
            _command_error(op, f"Unable to read {source}: {exc}")
        if not isinstance(document, Mapping):
            _command_error(op, f"{source} must contain a YAML mapping.")
        previous = runtime.config_store.current_version()
        try:
            with runtime.locks.run_lock(new_session_id()) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                version = runtime.config_store.write(document, message=message or f"apply {source}")
        except LockBusyError as exc:
            _lock_busy(op, exc)
        except ConfigStoreError as exc:
            _command_error(op, f"Rejected: {exc}")
        changed = previous is None or previous.sequence != version.sequence
        if changed:
            console.print(f"[green]Stored desired state as v{version.sequence}.[/green]")
        else:
            console.print(f"[dim]Unchanged; current version is v{version.sequence}.[/dim]")
        op.success("Desired state applied.", changed=int(changed))


@config_app.command("history")
def config_history(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List archived desired-state versions."""
    runtime = _get_runtime(ctx)
    store = runtime.config_store
    with runtime.logger.operation(
        "config history", args={"json": json_output}, target={"kind": "config"}
    ) as op:
        versions = store.history()
        current = store.current_version()
        lkg = store.last_known_good()
        if json_output:
            _dump_json(
                {
                    "current": current.sequence if current is not None else None,
                    "last_known_good": lkg.sequence if lkg is not None else None,
                    "versions": [version.to_dict() for version in versions],
                }
            )
            op.success("Rendered history as JSON.")
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Created")
        table.add_column("Checksum")
        table.add_column("Flags")
        table.add_column("Message")
        for version in versions:
            flags = []
            if current is not None and version.sequence == current.sequence:
                flags.append("current")
            if lkg is not None and version.sequence == lkg.sequence:
                flags.append("lkg")
            table.add_row(
                f"v{version.sequence}",
                version.created_at,
                version.checksum[:12],
                ",".join(flags),
                version.message or "",
            )
        console.print(table)
        op.success("Rendered history.", context={"count": len(versions)})


@config_app.command("restore")
def config_restore(
    ctx: typer.Context,
    sequence: int = typer.Argument(..., min=1, help="Version number to restore."),
) -> None:
    """Make an archived version current again (recorded as a new version)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config restore",
        args={"version": sequence},
        target={"kind": "config", "path": str(runtime.config.desired_config)},
    ) as op:
        try:
            with runtime.locks.run_lock(new_session_id()) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                version = runtime.config_store.restore(sequence, message=f"restore v{sequence}")
        except LockBusyError as exc:
            _lock_busy(op, exc)
        except ConfigStoreError as exc:
            _command_error(op, str(exc))
        console.print(
            f"[green]Restored v{sequence}; current version is v{version.sequence}.[/green]"
        )
        op.success("Configuration restored.", changed=1)


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------
@snapshot_app.command("list")
def snapshot_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List snapshots, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshot list", args={"json": json_output}, target={"kind": "snapshots"}
    ) as op:
        try:
            snapshots = runtime.snapshots.list_snapshots()
        except SnapshotError as exc:
            _command_error(op, str(exc))
        if json_output:
            _dump_json([snapshot.to_dict() for snapshot in snapshots])
            op.success("Rendered snapshots as JSON.")
            return
        if not snapshots:
            console.print("No snapshots recorded.")
            op.success("No snapshots.")
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Kind")
        table.add_column("Phase/Step")
        table.add_column("Categories")
        table.add_column("Config")
        table.add_column("Created")
        for snapshot in snapshots:
            table.add_row(
                snapshot.id,
                snapshot.kind.value,
                snapshot.step or snapshot.phase or "-",
                ",".join(snapshot.categories),
                f"v{snapshot.config_version}" if snapshot.config_version is not None else "-",
                snapshot.created_at,
            )
        console.print(table)
        op.success("Rendered snapshots.", context={"count": len(snapshots)})


__all__ = ["RuntimeContext", "app"]


def main() -> None:  # pragma: no cover - console entry point
    """Invoke the Typer application."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
