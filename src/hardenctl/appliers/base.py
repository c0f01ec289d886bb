"""Change applier contract.

Every step of a run is carried out by exactly one applier. Appliers are
idempotent: ``apply()`` on an already converged system reports
``changed=False`` and performs no mutation. The executor drives the protocol
``describe`` (dry-run) or ``apply`` → ``verify`` → ``undo`` on failure, and
calls ``capture_state`` before risky steps so ``undo`` can put things back.
"""
from __future__ import annotations

import concurrent.futures
import os
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, TypeVar

from ..logging import get_logger

if TYPE_CHECKING:
    from ..plan import Step
    from ..snapshots import Snapshot
    from ..templates import TemplateEngine

_log = get_logger("appliers")

T = TypeVar("T")


class ApplierError(RuntimeError):
    """Raised when an applier cannot carry out an operation."""


class ApplierTimeoutError(ApplierError):
    """Raised when an applier call exceeds its timeout."""


class PreconditionError(ApplierError):
    """Raised when the environment does not meet a step's requirements.

    The executor halts the run without undoing anything.
    """


class ApplyStatus(str, Enum):
    """Outcome of :meth:`Applier.apply`."""

    SUCCESS = "success"
    NEEDS_RESTART = "needs_restart"
    FAILURE = "failure"


class VerifyStatus(str, Enum):
    """Outcome of :meth:`Applier.verify`."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ChangePlan:
    """What a step would do, reported without mutating anything."""

    step: str
    summary: str
    actions: tuple[str, ...] = ()
    changes_expected: bool | None = None
    requires_restart: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "step": self.step,
            "summary": self.summary,
            "actions": list(self.actions),
            "changes_expected": self.changes_expected,
            "requires_restart": self.requires_restart,
        }


@dataclass(frozen=True)
class ApplyResult:
    """Result of applying a step."""

    status: ApplyStatus
    changed: bool
    message: str = ""
    details: Mapping[str, object] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        """True when the apply failed."""
        return self.status is ApplyStatus.FAILURE

    @property
    def needs_restart(self) -> bool:
        """True when the change only takes effect after a reload/restart."""
        return self.status is ApplyStatus.NEEDS_RESTART

    @classmethod
    def success(cls, *, changed: bool, message: str = "") -> ApplyResult:
        """Build a successful result."""
        return cls(status=ApplyStatus.SUCCESS, changed=changed, message=message)

    @classmethod
    def restart_required(cls, message: str = "") -> ApplyResult:
        """Build a result for a change that needs a service reload/restart."""
        return cls(status=ApplyStatus.NEEDS_RESTART, changed=True, message=message)

    @classmethod
    def failure(cls, message: str, *, changed: bool = False) -> ApplyResult:
        """Build a failed result."""
        return cls(status=ApplyStatus.FAILURE, changed=changed, message=message)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "changed": self.changed,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class VerifyResult:
    """Result of verifying a step."""

    status: VerifyStatus
    message: str = ""

    @property
    def healthy(self) -> bool:
        """True when verification passed."""
        return self.status is VerifyStatus.HEALTHY

    @classmethod
    def ok(cls, message: str = "") -> VerifyResult:
        """Build a healthy result."""
        return cls(status=VerifyStatus.HEALTHY, message=message)

    @classmethod
    def failed(cls, message: str) -> VerifyResult:
        """Build an unhealthy result."""
        return cls(status=VerifyStatus.UNHEALTHY, message=message)


@dataclass(frozen=True)
class CommandOutcome:
    """Captured result of a shell command."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True for a zero exit status."""
        return self.returncode == 0

    def describe(self) -> str:
        """Return a single-line summary for logs and error messages."""
        detail = f"command={self.command!r} rc={self.returncode}"
        stderr = self.stderr.strip()
        stdout = self.stdout.strip()
        if stderr:
            detail += f" stderr={stderr}"
        elif stdout:
            detail += f" stdout={stdout}"
        return detail


CommandRunner = Callable[[str, float, Mapping[str, str]], CommandOutcome]


def run_shell(command: str, timeout: float, env: Mapping[str, str]) -> CommandOutcome:
    """Run *command* through ``/bin/sh`` with a hard timeout."""
    merged_env = dict(os.environ)
    merged_env.update(env)
    try:
        result = subprocess.run(  # noqa: S602 - commands come from the operator's config
            command,
            shell=True,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            env=merged_env,
        )
    except subprocess.TimeoutExpired as exc:
        raise ApplierError(f"Command timed out after {timeout:g}s: {command}") from exc
    except OSError as exc:
        raise ApplierError(f"Unable to execute {command!r}: {exc}") from exc
    return CommandOutcome(
        command=command,
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


def call_with_timeout(func: Callable[[], T], timeout: float, label: str) -> T:
    """Return ``func()`` or raise :class:`ApplierTimeoutError` after *timeout* seconds.

    Python cannot kill a thread, so a call that overruns keeps running in its
    abandoned worker until it returns on its own. The caller treats the step as
    failed and undoes it; whatever the worker does afterwards is not observed.
    """
    pool = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="hardenctl-step"
    )
    try:
        future = pool.submit(func)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            _log.warning("%s exceeded %gs; abandoning its worker thread.", label, timeout)
            raise ApplierTimeoutError(f"{label} timed out after {timeout:g}s") from exc
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


@dataclass(frozen=True)
class ApplierContext:
    """Shared collaborators handed to every applier."""

    document: Mapping[str, object] = field(default_factory=dict)
    runner: CommandRunner = run_shell
    templates: TemplateEngine | None = None
    default_timeout: float = 300.0


class Applier(ABC):
    """Base class for step appliers."""

    kind: ClassVar[str] = ""

    def __init__(self, step: Step, context: ApplierContext) -> None:
        self.step = step
        self.context = context

    @property
    def options(self) -> Mapping[str, object]:
        """Applier-specific keys of the step declaration."""
        return self.step.options

    @property
    def timeout(self) -> float:
        """Per-step timeout, falling back to the policy default."""
        return self.step.timeout or self.context.default_timeout

    def option_str(self, key: str, default: str | None = None) -> str | None:
        """Return option *key* as a string, or *default*."""
        value = self.options.get(key)
        if value is None:
            return default
        return str(value)

    def run(self, command: str, *, extra_env: Mapping[str, str] | None = None) -> CommandOutcome:
        """Run *command* with the step environment exported."""
        env = {
            "HARDENCTL_STEP": self.step.name,
            "HARDENCTL_PHASE": self.step.phase,
            "HARDENCTL_CATEGORY": self.step.category,
        }
        if extra_env:
            env.update(extra_env)
        return self.context.runner(command, self.timeout, env)

    @abstractmethod
    def describe(self) -> ChangePlan:
        """Report what :meth:`apply` would do without changing anything."""

    @abstractmethod
    def apply(self) -> ApplyResult:
        """Converge the system; must be idempotent."""

    @abstractmethod
    def verify(self) -> VerifyResult:
        """Check that the applied change is in effect."""

    @abstractmethod
    def undo(self, snapshot: Snapshot | None) -> bool:
        """Revert the change using state captured in *snapshot*."""

    def capture_state(self) -> Mapping[str, object] | None:
        """Return state needed by :meth:`undo`; None when nothing is needed."""
        return None


def require_options(step: Step, keys: Sequence[str]) -> None:
    """Raise :class:`ApplierError` when any of *keys* is missing from *step*."""
    missing = [key for key in keys if step.options.get(key) in (None, "")]
    if missing:
        joined = ", ".join(missing)
        raise ApplierError(f"Step '{step.name}' is missing required option(s): {joined}.")


__all__ = [
    "Applier",
    "ApplierContext",
    "ApplierError",
    "ApplierTimeoutError",
    "ApplyResult",
    "ApplyStatus",
    "ChangePlan",
    "CommandOutcome",
    "CommandRunner",
    "PreconditionError",
    "VerifyResult",
    "VerifyStatus",
    "require_options",
    "call_with_timeout",
    "run_shell",
]
