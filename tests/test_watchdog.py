"""Tests for the watchdog supervisor."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest
from fakes import Harness, SystemctlRecorder, build_harness

from hardenctl.config import WatchdogConfig
from hardenctl.locking import LockBusyError
from hardenctl.providers.systemd import SystemdProvider
from hardenctl.templates import TemplateEngine
from hardenctl.watchdog import (
    STATE_FILE,
    WATCHDOG_UNIT,
    AlertLog,
    WatchdogService,
    backoff_delay,
    monitoring_teardown,
)


def _maintenance_harness(tmp_path: Path, **overrides: object) -> Harness:
    document = {
        "steps": [],
        "maintenance": [{"name": "rotate-logs", "applier": "fake", "interval": 3600}],
    }
    return build_harness(tmp_path, document=document, overrides=overrides or None)


def test_exponential_backoff_is_capped() -> None:
    """Delays double from the base and stop at the maximum."""
    settings = WatchdogConfig()

    delays = [backoff_delay(settings, attempt) for attempt in range(0, 9)]

    assert delays == [0.0, 5.0, 10.0, 20.0, 40.0, 80.0, 160.0, 300.0, 300.0]


def test_fixed_backoff() -> None:
    """The fixed strategy always waits the base delay."""
    settings = WatchdogConfig(backoff="fixed", backoff_base=30.0)

    assert [backoff_delay(settings, attempt) for attempt in (1, 2, 7)] == [30.0, 30.0, 30.0]


def test_healthy_tick_does_nothing(tmp_path: Path) -> None:
    """A healthy service is left alone."""
    harness = build_harness(tmp_path)
    watchdog = harness.watchdog()

    result = watchdog.tick()

    assert result.healthy is True
    assert result.action == "none"
    assert harness.controller.calls == []
    assert watchdog.load_record().last_status == "healthy"


def test_restart_budget_and_backoff(tmp_path: Path) -> None:
    """Restarts are spaced by backoff and stop with a single alert once exhausted."""
    harness = build_harness(tmp_path, overrides={"watchdog": {"max_restarts": 2}})
    harness.world.healthy = False
    watchdog = harness.watchdog()

    first = watchdog.tick()
    waiting = watchdog.tick()
    harness.clock.advance(5)
    second = watchdog.tick()
    harness.clock.advance(10)
    exhausted = watchdog.tick()
    still_exhausted = watchdog.tick()

    assert (first.action, first.attempts, first.delay) == ("restarted", 1, 5.0)
    assert (waiting.action, waiting.delay) == ("backoff", 5.0)
    assert (second.action, second.attempts, second.delay) == ("restarted", 2, 10.0)
    assert exhausted.action == "exhausted"
    assert still_exhausted.action == "exhausted"
    assert harness.controller.actions("restart") == ["mongod", "mongod"]
    alerts = watchdog.alerts.entries()
    assert len(alerts) == 1
    assert alerts[0].kind == "restart-budget-exhausted"
    assert alerts[0].attempts == 2
    assert watchdog.load_record().exhausted is True


def test_recovery_clears_backoff(tmp_path: Path) -> None:
    """Once healthy again, the next failure restarts without waiting."""
    harness = build_harness(tmp_path)
    harness.world.healthy = False
    harness.controller.on_restart = lambda _service: setattr(harness.world, "healthy", True)
    watchdog = harness.watchdog()

    watchdog.tick()
    healthy = watchdog.tick()

    assert healthy.action == "none"
    assert healthy.attempts == 1
    assert watchdog.load_record().next_attempt_at is None


def test_failed_restart_counts_against_budget(tmp_path: Path) -> None:
    """A systemctl error is reported and still consumes an attempt."""
    harness = build_harness(tmp_path)
    harness.world.healthy = False
    harness.controller.failing.add("restart")

    result = harness.watchdog().tick()

    assert result.action == "restart-failed"
    assert result.attempts == 1


def test_record_persists_and_session_reset(tmp_path: Path) -> None:
    """Attempts survive a restart of the watchdog; a new session resets them."""
    harness = _maintenance_harness(tmp_path)
    harness.world.healthy = False
    harness.watchdog().tick()

    reloaded = harness.watchdog()
    record = reloaded.load_record()
    assert record.restart_attempts == 1
    assert "rotate-logs" in record.maintenance

    fresh = reloaded.start_session("session-2")
    assert fresh.restart_attempts == 0
    assert fresh.session_id == "session-2"
    assert fresh.maintenance == record.maintenance


def test_corrupt_state_file_starts_fresh(tmp_path: Path) -> None:
    """An unreadable record is replaced instead of crashing the supervisor."""
    harness = build_harness(tmp_path)
    harness.config.state_dir.mkdir(parents=True, exist_ok=True)
    (harness.config.state_dir / STATE_FILE).write_text("{broken", encoding="utf-8")

    record = harness.watchdog().load_record()

    assert record.restart_attempts == 0


def test_maintenance_runs_when_due(tmp_path: Path) -> None:
    """Triggers run on their interval and never change the desired state."""
    harness = _maintenance_harness(tmp_path)
    watchdog = harness.watchdog()
    history_before = len(harness.store.history())

    first = watchdog.tick()
    not_due = watchdog.tick()
    harness.clock.advance(3600)
    due_again = watchdog.tick()

    assert first.maintenance == {"rotate-logs": "ok"}
    assert not_due.maintenance == {}
    assert due_again.maintenance == {"rotate-logs": "ok"}
    assert harness.world.applied == ["rotate-logs", "rotate-logs"]
    assert len(harness.store.history()) == history_before


def test_maintenance_skipped_while_run_lock_held(tmp_path: Path) -> None:
    """The watchdog never interleaves with an executor run."""
    harness = _maintenance_harness(tmp_path)
    watchdog = harness.watchdog()

    with harness.locks.run_lock("executor-session"):
        result = watchdog.tick()

    assert result.maintenance == {"rotate-logs": "skipped"}
    assert harness.world.applied == []
    assert "rotate-logs" not in watchdog.load_record().maintenance


def test_failed_maintenance_is_undone(tmp_path: Path) -> None:
    """A trigger failing verification is undone through its applier."""
    harness = _maintenance_harness(tmp_path)
    harness.world.behaviour["rotate-logs"] = {"verify": "fail"}

    result = harness.watchdog().tick()

    assert result.maintenance == {"rotate-logs": "undone"}
    assert harness.world.undone == ["rotate-logs"]


@pytest.mark.mutation_timeout
def test_hanging_maintenance_times_out_and_is_undone(tmp_path: Path) -> None:
    """Maintenance calls share the step timeout, so a hung trigger cannot stall supervision."""
    document = {
        "steps": [],
        "maintenance": [
            {"name": "rotate-logs", "applier": "fake", "interval": 3600, "timeout": 0.05}
        ],
    }
    harness = build_harness(tmp_path, document=document)
    harness.world.behaviour["rotate-logs"] = {"hang": 0.5}

    result = harness.watchdog().tick()

    assert result.maintenance == {"rotate-logs": "undone"}
    assert harness.world.undone == ["rotate-logs"]


def test_maintenance_undo_failure_reported(tmp_path: Path) -> None:
    """When undo fails too the trigger outcome is failed."""
    harness = _maintenance_harness(tmp_path)
    harness.world.behaviour["rotate-logs"] = {"apply": "fail", "undo": "fail"}

    result = harness.watchdog().tick()

    assert result.maintenance == {"rotate-logs": "failed"}


def test_run_forever_stops_on_event(tmp_path: Path) -> None:
    """The loop holds the watchdog lock and exits when asked."""
    harness = build_harness(tmp_path)
    stop = threading.Event()
    held: list[bool] = []

    def _on_check() -> None:
        held.append(harness.locks.is_held("watchdog"))
        stop.set()

    harness.world.on_check = _on_check

    ticks = harness.watchdog().run_forever(stop, session_id="wd-1")

    assert ticks == 1
    assert held == [True]
    assert not harness.locks.is_held("watchdog")


def test_run_forever_survives_a_failing_tick(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An exception inside a tick is alerted and does not end the loop."""
    harness = build_harness(tmp_path)
    watchdog = harness.watchdog()
    stop = threading.Event()

    def _tick(**_kwargs: object) -> None:
        stop.set()
        raise OSError("state directory vanished")

    monkeypatch.setattr(watchdog, "tick", _tick)

    ticks = watchdog.run_forever(stop, session_id="wd-2")

    assert ticks == 1
    alerts = watchdog.alerts.entries()
    assert [alert.kind for alert in alerts] == ["watchdog-tick-failed"]
    assert alerts[0].message == "OSError: state directory vanished"
    assert not harness.locks.is_held("watchdog")


def test_second_watchdog_is_refused(tmp_path: Path) -> None:
    """Only one supervisor may run at a time."""
    harness = build_harness(tmp_path)

    with harness.locks.watchdog_lock("first"), pytest.raises(LockBusyError):
        harness.watchdog().run_forever(threading.Event())


def test_alert_acknowledgement(tmp_path: Path) -> None:
    """Acknowledging marks open alerts and leaves them in the log."""
    log = AlertLog(tmp_path / "alerts.json")
    log.raise_alert(service="mongod", kind="restart-budget-exhausted", message="down")
    log.raise_alert(service="mongod", kind="restart-budget-exhausted", message="still down")

    assert log.acknowledge_all() == 2
    assert log.acknowledge_all() == 0
    assert log.entries(include_acknowledged=False) == []
    assert len(log.entries()) == 2


def _service(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, harness: Harness
) -> tuple[WatchdogService, SystemctlRecorder]:
    systemctl = SystemctlRecorder()
    monkeypatch.setattr("hardenctl.providers.systemd.subprocess.run", systemctl)
    provider = SystemdProvider(
        templates=TemplateEngine.with_overrides(None), unit_dir=tmp_path / "units"
    )
    service = WatchdogService(
        config=harness.config, provider=provider, executable="/usr/bin/hardenctl"
    )
    return service, systemctl


def test_watchdog_unit_install_and_uninstall(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The unit is rendered, enabled and started, then removed again."""
    harness = build_harness(tmp_path)
    service, systemctl = _service(tmp_path, monkeypatch, harness)
    unit = f"{WATCHDOG_UNIT}.service"

    assert service.install() is True
    content = service.unit_path.read_text(encoding="utf-8")
    assert "ExecStart=/usr/bin/hardenctl watchdog run" in content
    assert f"Environment=HARDENCTL_CONFIG_FILE={harness.config.config_file}" in content
    assert "After=network-online.target mongod.service" in content
    assert systemctl.calls == [["daemon-reload"], ["enable", unit], ["restart", unit]]

    systemctl.calls.clear()
    assert service.install() is False
    assert systemctl.calls == [["enable", unit], ["start", unit]]

    systemctl.calls.clear()
    assert service.uninstall() is True
    assert not service.unit_path.exists()
    assert systemctl.calls == [["stop", unit], ["disable", unit], ["daemon-reload"]]
    assert service.uninstall() is False


def test_monitoring_teardown_removes_unit_and_schedule(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The rollback hook uninstalls supervision and forgets maintenance runs."""
    harness = _maintenance_harness(tmp_path)
    service, _systemctl = _service(tmp_path, monkeypatch, harness)
    watchdog = harness.watchdog()
    watchdog.tick()
    service.install()

    teardown = monitoring_teardown(service, watchdog)
    teardown()

    assert not service.unit_path.exists()
    assert harness.watchdog().load_record().maintenance == {}
