"""Shell command applier.

Step keys understood::

    applier: command
    check: "grep -q '^  authorization: enabled' /etc/mongod.conf"
    apply: "/usr/local/sbin/enable-auth"
    verify: "mongosh --quiet --eval 'db.runCommand({ping: 1}).ok'"
    undo: "/usr/local/sbin/disable-auth"
    precondition: "command -v mongosh"
    requires_restart: true

``check`` exiting 0 means the system is already converged and ``apply`` is
skipped. Without ``verify`` the ``check`` command doubles as verification.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from ..logging import get_logger
from .base import (
    Applier,
    ApplierContext,
    ApplyResult,
    ChangePlan,
    PreconditionError,
    VerifyResult,
    require_options,
)

if TYPE_CHECKING:
    from ..plan import Step
    from ..snapshots import Snapshot

_log = get_logger("appliers.command")


class CommandApplier(Applier):
    """Run operator-supplied commands for check/apply/verify/undo."""

    kind = "command"

    def __init__(self, step: Step, context: ApplierContext) -> None:
        require_options(step, ["apply"])
        super().__init__(step, context)

    @property
    def requires_restart(self) -> bool:
        return bool(self.options.get("requires_restart", False))

    def _converged(self) -> bool | None:
        check = self.option_str("check")
        if check is None:
            return None
        return self.run(check).ok

    def _check_precondition(self) -> None:
        precondition = self.option_str("precondition")
        if precondition is None:
            return
        outcome = self.run(precondition)
        if not outcome.ok:
            raise PreconditionError(
                f"Precondition for step '{self.step.name}' not met: {outcome.describe()}"
            )

    def describe(self) -> ChangePlan:
        converged = self._converged()
        actions: list[str] = []
        if converged is not True:
            actions.append(f"run: {self.option_str('apply')}")
        return ChangePlan(
            step=self.step.name,
            summary="already converged" if converged else "apply command",
            actions=tuple(actions),
            changes_expected=None if converged is None else not converged,
            requires_restart=self.requires_restart and converged is not True,
        )

    def apply(self) -> ApplyResult:
        self._check_precondition()
        if self._converged():
            return ApplyResult.success(changed=False, message="already converged")
        outcome = self.run(str(self.option_str("apply")))
        if not outcome.ok:
            return ApplyResult.failure(outcome.describe())
        if self.requires_restart:
            return ApplyResult.restart_required("applied; service restart required")
        return ApplyResult.success(changed=True, message="applied")

    def verify(self) -> VerifyResult:
        command = self.option_str("verify") or self.option_str("check")
        if command is None:
            return VerifyResult.ok("no verification declared")
        outcome = self.run(command)
        if outcome.ok:
            return VerifyResult.ok()
        return VerifyResult.failed(outcome.describe())

    def undo(self, snapshot: Snapshot | None) -> bool:
        command = self.option_str("undo")
        if command is None:
            _log.warning("Step %s declares no undo command; nothing to revert.", self.step.name)
            return True
        extra = {"HARDENCTL_SNAPSHOT_ID": snapshot.id} if snapshot is not None else {}
        outcome = self.run(command, extra_env=extra)
        if not outcome.ok:
            _log.error("Undo of step %s failed: %s", self.step.name, outcome.describe())
        return outcome.ok


__all__ = ["CommandApplier"]
