"""Tests for the health checks and verifier."""
from __future__ import annotations

import socket
from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import FakeClock, FakeController

from hardenctl.config import HealthConfig, ServiceConfig
from hardenctl.health import (
    CheckDefinition,
    CheckResult,
    CheckStatus,
    HealthContext,
    HealthVerifier,
    default_checks,
    run_checks,
)
from hardenctl.health.checks import (
    check_disk_usage,
    check_memory_usage,
    check_port_reachable,
    check_service_active,
    read_meminfo,
)
from hardenctl.health.models import aggregate_status, build_report

MEMINFO = """\
MemTotal:       16000000 kB
MemFree:         1000000 kB
MemAvailable:    {available} kB
Buffers:          200000 kB
"""


@pytest.fixture
def listener() -> Iterator[int]:
    """A local TCP port that accepts connections."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    try:
        yield server.getsockname()[1]
    finally:
        server.close()


def _closed_port() -> int:
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


def _context(
    tmp_path: Path,
    *,
    controller: FakeController | None = None,
    port: int = 27017,
    available_kb: int = 8_000_000,
    **thresholds: int,
) -> HealthContext:
    meminfo = tmp_path / "meminfo"
    meminfo.write_text(MEMINFO.format(available=available_kb), encoding="utf-8")
    return HealthContext(
        service=ServiceConfig(port=port, data_path=tmp_path),
        thresholds=HealthConfig(connect_timeout=1.0, **thresholds),
        controller=controller or FakeController(),  # type: ignore[arg-type]
        meminfo_path=str(meminfo),
    )


def _static(check_id: str, status: CheckStatus, *, liveness: bool = False) -> CheckDefinition:
    return CheckDefinition(
        id=check_id,
        run=lambda _context: CheckResult(id=check_id, status=status, message=status.value),
        liveness=liveness,
    )


def test_service_active(tmp_path: Path) -> None:
    """The unit state maps straight to green or red."""
    controller = FakeController()
    context = _context(tmp_path, controller=controller)

    assert check_service_active(context).status is CheckStatus.GREEN
    controller.active["mongod"] = False
    result = check_service_active(context)
    assert result.status is CheckStatus.RED
    assert result.message == "mongod is not active"


def test_port_reachable(tmp_path: Path, listener: int) -> None:
    """A listening port is green, a closed one red."""
    assert check_port_reachable(_context(tmp_path, port=listener)).status is CheckStatus.GREEN

    closed = check_port_reachable(_context(tmp_path, port=_closed_port()))
    assert closed.status is CheckStatus.RED
    assert "not reachable" in closed.message


def test_memory_thresholds(tmp_path: Path) -> None:
    """Usage above the warn and fail percentages degrades the status."""
    assert check_memory_usage(_context(tmp_path)).status is CheckStatus.GREEN
    warning = check_memory_usage(_context(tmp_path, available_kb=1_200_000))
    assert warning.status is CheckStatus.YELLOW
    failing = check_memory_usage(_context(tmp_path, available_kb=400_000))
    assert failing.status is CheckStatus.RED
    assert failing.data is not None
    assert failing.data["percent_used"] == 97.5


def test_memory_unreadable(tmp_path: Path) -> None:
    """Missing statistics produce a warning, not a failure."""
    context = _context(tmp_path)
    broken = HealthContext(
        service=context.service,
        thresholds=context.thresholds,
        controller=context.controller,
        meminfo_path=str(tmp_path / "missing"),
    )

    assert check_memory_usage(broken).status is CheckStatus.YELLOW


def test_read_meminfo(tmp_path: Path) -> None:
    """Only numeric fields are parsed."""
    path = tmp_path / "meminfo"
    path.write_text("MemTotal: 100 kB\nHugePages: n/a\n", encoding="utf-8")

    assert read_meminfo(str(path)) == {"MemTotal": 100}


def test_disk_thresholds(tmp_path: Path) -> None:
    """Disk usage is measured on the data path."""
    relaxed = check_disk_usage(_context(tmp_path, disk_warn_percent=100, disk_fail_percent=100))
    strict = check_disk_usage(_context(tmp_path, disk_warn_percent=-1, disk_fail_percent=-1))

    assert relaxed.status is CheckStatus.GREEN
    assert strict.status is CheckStatus.RED
    assert strict.data is not None
    assert strict.data["path"] == str(tmp_path)


def test_default_checks_flag_liveness() -> None:
    """Only service and port checks gate the executor and watchdog."""
    checks = default_checks()

    assert [check.id for check in checks] == [
        "service-active",
        "port-reachable",
        "disk-usage",
        "memory-usage",
    ]
    assert [check.id for check in checks if check.liveness] == ["service-active", "port-reachable"]


def test_run_checks_preserves_order_and_catches_errors(tmp_path: Path) -> None:
    """Raising checks become red results and order is kept under concurrency."""

    def _explode(_context: HealthContext) -> CheckResult:
        raise ValueError("kaboom")

    checks = [
        _static("a", CheckStatus.GREEN),
        CheckDefinition(id="b", run=_explode),
        _static("c", CheckStatus.YELLOW),
    ]

    results = run_checks(_context(tmp_path), checks)

    assert [result.id for result in results] == ["a", "b", "c"]
    assert results[1].status is CheckStatus.RED
    assert "kaboom" in results[1].message
    assert all(result.duration_ms is not None for result in results)


def test_report_aggregation() -> None:
    """The worst status wins and failures are summarised."""
    results = [
        CheckResult(id="a", status=CheckStatus.GREEN, message="ok"),
        CheckResult(id="b", status=CheckStatus.YELLOW, message="meh"),
    ]
    report = build_report(results)

    assert aggregate_status([]) is CheckStatus.GREEN
    assert report.status is CheckStatus.YELLOW
    assert report.healthy
    assert report.summary() == "healthy"

    red = build_report([*results, CheckResult(id="c", status=CheckStatus.RED, message="down")])
    assert not red.healthy
    assert red.summary() == "c: down"
    assert red.to_dict()["status"] == "red"


def test_verifier_scopes(tmp_path: Path) -> None:
    """Liveness runs only the liveness checks."""
    verifier = HealthVerifier(
        _context(tmp_path),
        [_static("live", CheckStatus.GREEN, liveness=True), _static("disk", CheckStatus.RED)],
    )

    assert verifier.liveness().healthy
    full = verifier.check()
    assert not full.healthy
    assert full.metadata["scope"] == "full"
    assert full.metadata["checks"] == 2


def test_wait_until_healthy_polls(tmp_path: Path) -> None:
    """The verifier keeps polling until the service comes back."""
    clock = FakeClock()
    controller = FakeController()
    controller.active["mongod"] = False
    context = _context(tmp_path, controller=controller)
    liveness = [CheckDefinition(id="service-active", run=check_service_active, liveness=True)]

    def _sleep(seconds: float) -> None:
        clock.sleep(seconds)
        if len(clock.sleeps) == 3:
            controller.active["mongod"] = True

    verifier = HealthVerifier(context, liveness, clock=clock, sleep=_sleep)

    assert verifier.wait_until_healthy(30, interval=2).healthy
    assert clock.sleeps == [2, 2, 2]


def test_wait_until_healthy_gives_up(tmp_path: Path) -> None:
    """Past the deadline the last unhealthy report is returned."""
    clock = FakeClock()
    controller = FakeController()
    controller.active["mongod"] = False
    liveness = [CheckDefinition(id="service-active", run=check_service_active, liveness=True)]
    verifier = HealthVerifier(
        _context(tmp_path, controller=controller), liveness, clock=clock, sleep=clock.sleep
    )

    report = verifier.wait_until_healthy(5, interval=2)

    assert not report.healthy
    assert clock.sleeps == [2, 2, 1]
