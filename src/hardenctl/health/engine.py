"""Check execution harness and the health verifier."""

from __future__ import annotations

import concurrent.futures
import time
import traceback
from collections.abc import Callable, Sequence

from .checks import default_checks
from .models import (
    CheckDefinition,
    CheckResult,
    CheckStatus,
    HealthContext,
    HealthReport,
    build_report,
)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _unexpected_failure(check: CheckDefinition, exc: Exception, duration_ms: int) -> CheckResult:
    return CheckResult(
        id=check.id,
        status=CheckStatus.RED,
        message=f"Check '{check.id}' raised an unexpected error: {exc}",
        duration_ms=duration_ms,
        data={"exception": repr(exc), "traceback": traceback.format_exc()},
    )


def _run_single_check(check: CheckDefinition, context: HealthContext) -> CheckResult:
    start = time.perf_counter()
    try:
        result = check.run(context)
    except Exception as exc:  # pragma: no cover - reported as a red result
        return _unexpected_failure(check, exc, _duration_ms(start))
    if result.duration_ms is None:
        return CheckResult(
            id=check.id,
            status=result.status,
            message=result.message,
            duration_ms=_duration_ms(start),
            data=result.data,
        )
    return result


def run_checks(
    context: HealthContext,
    checks: Sequence[CheckDefinition],
    *,
    max_concurrency: int = 4,
) -> list[CheckResult]:
    """Execute checks with bounded concurrency, preserving order."""
    if not checks:
        return []

    max_workers = max(1, min(max_concurrency, len(checks)))
    if max_workers == 1:
        return [_run_single_check(check, context) for check in checks]

    results: list[CheckResult | None] = [None] * len(checks)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index: dict[concurrent.futures.Future[CheckResult], int] = {}
        for index, check in enumerate(checks):
            future = executor.submit(_run_single_check, check, context)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            index = future_to_index[future]
            results[index] = future.result()

    return [result for result in results if result is not None]


class HealthVerifier:
    """Evaluate service health for the executor, watchdog and ``--check``."""

    def __init__(
        self,
        context: HealthContext,
        checks: Sequence[CheckDefinition] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store the check context and the time sources used for waiting."""
        self._context = context
        self._checks = tuple(checks if checks is not None else default_checks())
        self._clock = clock
        self._sleep = sleep

    @property
    def context(self) -> HealthContext:
        """Return the context checks run against."""
        return self._context

    def check(self) -> HealthReport:
        """Run every check."""
        return self._run(self._checks, scope="full")

    def liveness(self) -> HealthReport:
        """Run only the liveness checks (service active, port reachable)."""
        return self._run([check for check in self._checks if check.liveness], scope="liveness")

    def wait_until_healthy(self, timeout: float, interval: float = 2.0) -> HealthReport:
        """Poll liveness until healthy or *timeout* seconds elapse."""
        deadline = self._clock() + timeout
        report = self.liveness()
        while not report.healthy and self._clock() < deadline:
            self._sleep(min(interval, max(0.0, deadline - self._clock())))
            report = self.liveness()
        return report

    def _run(self, checks: Sequence[CheckDefinition], *, scope: str) -> HealthReport:
        start = time.perf_counter()
        results = run_checks(self._context, checks)
        return build_report(
            results,
            metadata={"scope": scope, "duration_ms": _duration_ms(start), "checks": len(results)},
        )


__all__ = ["HealthVerifier", "run_checks"]
