"""Built-in health checks.

Thresholds mirror the long-standing MongoDB host checks: the service must be
active and accept connections; disk usage above ``disk_fail_percent`` (90%) or
memory usage above ``memory_fail_percent`` (95%) is unhealthy, with warnings
from 85% and 90% respectively.
"""

from __future__ import annotations

import shutil
import socket
from collections.abc import Callable, Sequence
from pathlib import Path

from ..providers.systemd import SystemdError
from .models import CheckDefinition, CheckResult, CheckStatus, HealthContext


def _make_check(
    check_id: str,
    handler: Callable[[HealthContext], CheckResult],
    *,
    liveness: bool = False,
) -> CheckDefinition:
    def _runner(context: HealthContext) -> CheckResult:
        return handler(context)

    return CheckDefinition(id=check_id, run=_runner, liveness=liveness)


def default_checks() -> Sequence[CheckDefinition]:
    """Return the built-in checks in display order."""
    return (
        _make_check("service-active", check_service_active, liveness=True),
        _make_check("port-reachable", check_port_reachable, liveness=True),
        _make_check("disk-usage", check_disk_usage),
        _make_check("memory-usage", check_memory_usage),
    )


def check_service_active(context: HealthContext) -> CheckResult:
    """The managed unit is active."""
    name = context.service.name
    try:
        active = context.controller.is_active(name)
    except SystemdError as exc:
        return CheckResult(
            id="service-active",
            status=CheckStatus.RED,
            message=f"Unable to query {name}: {exc}",
        )
    if active:
        return CheckResult(id="service-active", status=CheckStatus.GREEN, message=f"{name} active")
    return CheckResult(id="service-active", status=CheckStatus.RED, message=f"{name} is not active")


def check_port_reachable(context: HealthContext) -> CheckResult:
    """The service accepts TCP connections on its port."""
    host = context.service.host
    port = context.service.port
    data = {"host": host, "port": port}
    try:
        with socket.create_connection((host, port), timeout=context.thresholds.connect_timeout):
            pass
    except OSError as exc:
        return CheckResult(
            id="port-reachable",
            status=CheckStatus.RED,
            message=f"{host}:{port} not reachable: {exc}",
            data=data,
        )
    return CheckResult(
        id="port-reachable",
        status=CheckStatus.GREEN,
        message=f"{host}:{port} accepting connections",
        data=data,
    )


def _threshold_status(percent: float, warn: int, fail: int) -> CheckStatus:
    if percent > fail:
        return CheckStatus.RED
    if percent > warn:
        return CheckStatus.YELLOW
    return CheckStatus.GREEN


def check_disk_usage(context: HealthContext) -> CheckResult:
    """Disk usage of the data directory stays below the thresholds."""
    path = context.service.data_path
    probe_path = path if path.exists() else Path("/")
    try:
        usage = shutil.disk_usage(probe_path)
    except OSError as exc:
        return CheckResult(
            id="disk-usage",
            status=CheckStatus.YELLOW,
            message=f"Unable to determine disk usage for {path}: {exc}",
        )
    total = usage.total or 1
    percent_used = round((usage.used / total) * 100, 2)
    status = _threshold_status(
        percent_used,
        context.thresholds.disk_warn_percent,
        context.thresholds.disk_fail_percent,
    )
    return CheckResult(
        id="disk-usage",
        status=status,
        message=f"Disk usage {percent_used}% on {probe_path}",
        data={"path": str(probe_path), "percent_used": percent_used, "total_bytes": total},
    )


def read_meminfo(path: str) -> dict[str, int]:
    """Parse ``/proc/meminfo`` into kB values."""
    values: dict[str, int] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            key, _, rest = line.partition(":")
            parts = rest.split()
            if parts and parts[0].isdigit():
                values[key.strip()] = int(parts[0])
    return values


def check_memory_usage(context: HealthContext) -> CheckResult:
    """Memory usage stays below the thresholds."""
    try:
        info = read_meminfo(context.meminfo_path)
    except OSError as exc:
        return CheckResult(
            id="memory-usage",
            status=CheckStatus.YELLOW,
            message=f"Unable to read memory statistics: {exc}",
        )
    total = info.get("MemTotal", 0)
    available = info.get("MemAvailable", info.get("MemFree", 0))
    if total <= 0:
        return CheckResult(
            id="memory-usage",
            status=CheckStatus.YELLOW,
            message="Memory statistics missing MemTotal.",
        )
    percent_used = round(((total - available) / total) * 100, 2)
    status = _threshold_status(
        percent_used,
        context.thresholds.memory_warn_percent,
        context.thresholds.memory_fail_percent,
    )
    return CheckResult(
        id="memory-usage",
        status=status,
        message=f"Memory usage {percent_used}%",
        data={"percent_used": percent_used, "total_kb": total},
    )


__all__ = [
    "check_disk_usage",
    "check_memory_usage",
    "check_port_reachable",
    "check_service_active",
    "default_checks",
    "read_meminfo",
]
