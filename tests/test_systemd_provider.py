"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from hardenctl.providers.systemd import SystemdError, SystemdProvider
from hardenctl.templates import TemplateEngine


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider instance scoped to the temporary path."""
    unit_dir = tmp_path / "systemd"
    unit_dir.mkdir(parents=True, exist_ok=True)
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        unit_dir=unit_dir,
        systemctl_bin="systemctl",  # Not invoked; monkeypatched in tests.
    )


def _fake_systemctl(
    calls: list[tuple[Any, ...]], result: DummyResult | None = None
) -> Any:
    def fake(
        self: SystemdProvider,
        command: str,
        *args: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> DummyResult:
        calls.append((command, *args, check, dry_run))
        return result or DummyResult()

    return fake


def _unit_context() -> dict[str, Any]:
    return {
        "service_name": "mongod",
        "exec_start": "/usr/bin/hardenctl watchdog run",
        "restart_sec": 10,
        "environment": ["HARDENCTL_CONFIG_FILE=/etc/hardenctl/config.yml"],
    }


def test_unit_names() -> None:
    """Bare service names gain the .service suffix."""
    assert SystemdProvider.unit_name("mongod") == "mongod.service"
    assert SystemdProvider.unit_name("backup.timer") == "backup.timer"


def test_render_unit_writes_file_and_reload(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Rendering writes the unit file and triggers a daemon reload once."""
    calls: list[tuple[Any, ...]] = []
    monkeypatch.setattr(SystemdProvider, "_systemctl", _fake_systemctl(calls))

    changed = provider.render_unit(
        "hardenctl-watchdog", "systemd/watchdog.service.j2", _unit_context()
    )

    unit_path = provider.unit_path("hardenctl-watchdog")
    assert changed is True
    contents = unit_path.read_text(encoding="utf-8")
    assert "Description=hardenctl watchdog for mongod" in contents
    assert "ExecStart=/usr/bin/hardenctl watchdog run" in contents
    assert "Environment=HARDENCTL_CONFIG_FILE=/etc/hardenctl/config.yml" in contents
    assert calls == [("daemon-reload", True, False)]

    # Second render with identical context should remain a no-op.
    calls.clear()
    changed_again = provider.render_unit(
        "hardenctl-watchdog", "systemd/watchdog.service.j2", _unit_context()
    )
    assert changed_again is False
    assert calls == []


@pytest.mark.parametrize(
    "command", ["enable", "disable", "start", "stop", "restart", "reload"]
)
def test_unit_management_calls_systemctl(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    command: str,
) -> None:
    """Unit actions delegate to systemctl with the unit name."""
    calls: list[tuple[Any, ...]] = []
    monkeypatch.setattr(SystemdProvider, "_systemctl", _fake_systemctl(calls))

    getattr(provider, command)("mongod")

    assert calls == [(command, "mongod.service", True, False)]


def test_queries_use_exit_status(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Activity and enablement are read from systemctl's exit code."""
    results = {"is-active": DummyResult(0), "is-enabled": DummyResult(1)}

    def fake_run(args: Sequence[str], **_kwargs: object) -> DummyResult:
        return results.get(args[1], DummyResult(0, stdout="yes\n"))

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert provider.is_active("mongod") is True
    assert provider.is_enabled("mongod") is False
    assert provider.capture("mongod") == {"enabled": False, "active": True}
    assert provider.can_reload("mongod") is True


def test_failure_raises_with_stderr(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """A failing action surfaces systemctl's stderr."""

    def fake_run(args: Sequence[str], **_kwargs: object) -> DummyResult:
        return DummyResult(5, stderr="Unit mongod.service not loaded.\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(SystemdError, match=r"systemctl restart failed \(exit 5\): Unit mongod"):
        provider.restart("mongod")


def test_missing_binary_and_timeout(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Missing binaries and hung commands become SystemdError."""

    def missing(args: Sequence[str], **_kwargs: object) -> DummyResult:
        raise FileNotFoundError(args[0])

    def hung(args: Sequence[str], **kwargs: object) -> DummyResult:
        timeout = kwargs["timeout"]
        assert isinstance(timeout, float)
        raise subprocess.TimeoutExpired(list(args), timeout)

    monkeypatch.setattr(subprocess, "run", missing)
    with pytest.raises(SystemdError, match="not found"):
        provider.start("mongod")

    monkeypatch.setattr(subprocess, "run", hung)
    with pytest.raises(SystemdError, match="timed out after 90s"):
        provider.start("mongod")


def test_dry_run_skips_systemctl(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Dry-run requests avoid executing systemctl and still report success."""

    def fail_run(*_args: object, **_kwargs: object) -> DummyResult:
        raise AssertionError("systemctl must not run")

    monkeypatch.setattr(subprocess, "run", fail_run)

    result = provider.enable("mongod", dry_run=True)

    assert result.returncode == 0
    assert result.args == ["systemctl", "enable", "mongod.service"]


def test_remove_unit_unlinks_and_reload(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Removing a unit file triggers daemon-reload once."""
    unit_path = provider.unit_path("hardenctl-watchdog")
    unit_path.write_text("content", encoding="utf-8")
    calls: list[tuple[Any, ...]] = []
    monkeypatch.setattr(SystemdProvider, "_systemctl", _fake_systemctl(calls))

    assert provider.remove_unit("hardenctl-watchdog") is True
    assert not unit_path.exists()
    assert calls == [("daemon-reload", True, False)]

    # Removing again should be a no-op.
    calls.clear()
    assert provider.remove_unit("hardenctl-watchdog") is False
    assert calls == []


def test_daemon_reload_tolerates_missing_systemctl(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Hosts without systemctl still get the unit file written."""

    def missing(args: Sequence[str], **_kwargs: object) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(subprocess, "run", missing)

    changed = provider.render_unit(
        "hardenctl-watchdog", "systemd/watchdog.service.j2", _unit_context()
    )

    assert changed is True
