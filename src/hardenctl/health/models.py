"""Data models and helpers for health checks."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..config import HealthConfig, ServiceConfig
    from ..providers.systemd import ServiceController


class CheckStatus(str, Enum):
    """High-level outcome for a health check."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is CheckStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is CheckStatus.YELLOW


@dataclass(slots=True, frozen=True)
class HealthContext:
    """Execution context provided to health checks."""

    service: ServiceConfig
    thresholds: HealthConfig
    controller: ServiceController
    meminfo_path: str = "/proc/meminfo"


@dataclass(slots=True, frozen=True)
class CheckResult:
    """Outcome of running a check."""

    id: str
    status: CheckStatus
    message: str
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the check result represents a failure."""
        return self.status.is_failure

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "status": self.status.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "data": dict(self.data or {}),
        }


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Metadata + callable for a check.

    Liveness checks (service active, port reachable) gate restarts and drive
    the watchdog. The executor compares every check before and after a step.
    """

    id: str
    run: Callable[[HealthContext], CheckResult]
    liveness: bool = False


STATUS_ORDER: Mapping[CheckStatus, int] = {
    CheckStatus.GREEN: 0,
    CheckStatus.YELLOW: 1,
    CheckStatus.RED: 2,
}


def aggregate_status(results: Iterable[CheckResult]) -> CheckStatus:
    """Return the worst status among *results* (green when empty)."""
    worst = CheckStatus.GREEN
    for result in results:
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst]:
            worst = result.status
    return worst


@dataclass(slots=True, frozen=True)
class HealthReport:
    """Results of one health evaluation."""

    results: Sequence[CheckResult]
    status: CheckStatus
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        """True when no check is red."""
        return not self.status.is_failure

    def failures(self) -> list[CheckResult]:
        """Red results."""
        return [result for result in self.results if result.is_failure]

    def regressions(self, before: HealthReport | None) -> list[CheckResult]:
        """Red results whose check was not already red in *before*."""
        if before is None:
            return self.failures()
        already_red = {result.id for result in before.failures()}
        return [result for result in self.failures() if result.id not in already_red]

    def summary(self) -> str:
        """One line describing the failures, or ``healthy``."""
        failures = self.failures()
        if not failures:
            return "healthy"
        return "; ".join(f"{result.id}: {result.message}" for result in failures)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "healthy": self.healthy,
            "results": [result.to_dict() for result in self.results],
            "metadata": dict(self.metadata),
        }


def build_report(
    results: Sequence[CheckResult],
    metadata: Mapping[str, Any] | None = None,
) -> HealthReport:
    """Create a HealthReport from check results."""
    return HealthReport(
        results=tuple(results),
        status=aggregate_status(results),
        metadata=dict(metadata or {}),
    )
