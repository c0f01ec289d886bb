"""Version precondition applier.

Guards later steps with a minimum (and optionally maximum) version of an
installed tool, e.g. requiring ``mongod >= 4.4`` before relying on
zero-downtime TLS certificate rotation::

    applier: version
    command: "mongod --version"
    minimum: "4.4"
    maximum: "9"            # optional, exclusive

The first dotted version number in the command output is compared with
:mod:`packaging.version`. Anything short of the requirement raises
:class:`~hardenctl.appliers.base.PreconditionError`, which halts the run.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING

from packaging.version import InvalidVersion, Version

from .base import (
    Applier,
    ApplierContext,
    ApplierError,
    ApplyResult,
    ChangePlan,
    PreconditionError,
    VerifyResult,
    require_options,
)

if TYPE_CHECKING:
    from ..plan import Step
    from ..snapshots import Snapshot

_DEFAULT_PATTERN = r"(\d+(?:\.\d+)+)"


def _parse_version(raw: object, label: str) -> Version:
    try:
        return Version(str(raw))
    except InvalidVersion as exc:
        raise ApplierError(f"Invalid {label} version {raw!r}: {exc}") from exc


class VersionPrecondition(Applier):
    """Fail fast when an installed tool is older than required."""

    kind = "version"

    def __init__(self, step: Step, context: ApplierContext) -> None:
        require_options(step, ["command", "minimum"])
        super().__init__(step, context)
        self.minimum = _parse_version(step.options["minimum"], "minimum")
        maximum = step.options.get("maximum")
        self.maximum = _parse_version(maximum, "maximum") if maximum is not None else None
        self.pattern = re.compile(str(step.options.get("pattern", _DEFAULT_PATTERN)))

    def installed_version(self) -> Version:
        """Run the version command and parse its output."""
        outcome = self.run(str(self.options["command"]))
        if not outcome.ok:
            raise PreconditionError(
                f"Step '{self.step.name}': version command failed ({outcome.describe()})."
            )
        match = self.pattern.search(outcome.stdout) or self.pattern.search(outcome.stderr)
        if match is None:
            raise PreconditionError(
                f"Step '{self.step.name}': no version found in output of {outcome.command!r}."
            )
        try:
            return Version(match.group(1))
        except InvalidVersion as exc:
            raise PreconditionError(
                f"Step '{self.step.name}': unparseable version {match.group(1)!r}."
            ) from exc

    def _check(self) -> Version:
        installed = self.installed_version()
        if installed < self.minimum:
            raise PreconditionError(
                f"Step '{self.step.name}': version {installed} is older than required "
                f"{self.minimum}."
            )
        if self.maximum is not None and installed >= self.maximum:
            raise PreconditionError(
                f"Step '{self.step.name}': version {installed} is not below {self.maximum}."
            )
        return installed

    def describe(self) -> ChangePlan:
        bound = f">= {self.minimum}"
        if self.maximum is not None:
            bound += f", < {self.maximum}"
        return ChangePlan(
            step=self.step.name,
            summary=f"require {self.options['command']} {bound}",
            changes_expected=False,
        )

    def apply(self) -> ApplyResult:
        installed = self._check()
        return ApplyResult.success(
            changed=False, message=f"version {installed} satisfies {self.minimum}"
        )

    def verify(self) -> VerifyResult:
        return VerifyResult.ok()

    def undo(self, snapshot: Snapshot | None) -> bool:
        return True


__all__ = ["VersionPrecondition"]
