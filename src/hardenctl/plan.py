"""Phases, step declarations and the ordered execution plan.

The desired-state document declares its work under two reserved keys::

    steps:
      - name: mongod-config
        phase: database
        applier: file
        category: config
        risky: true
        restart: mongod
        path: /etc/mongod.conf
        content_from: mongodb
        requires_restart: true
    maintenance:
      - name: rotate-logs
        interval: 86400
        apply: "mongosh --quiet --eval 'db.adminCommand({logRotate: 1})'"

Everything else in the document is data that appliers read.
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field

from .config_store import ValidationError

PHASES: tuple[str, ...] = (
    "preflight",
    "bootstrap",
    "tls",
    "database",
    "provisioning",
    "firewall",
    "backups",
    "verification",
)
CATEGORIES: tuple[str, ...] = ("config", "security", "monitoring", "service")
MAINTENANCE_PHASE = "maintenance"
DEFAULT_APPLIER = "command"

_STEP_FIELDS = {"name", "phase", "applier", "category", "risky", "restart", "timeout"}
_TRIGGER_FIELDS = _STEP_FIELDS | {"interval"}


class PlanError(ValidationError):
    """Raised when step declarations or phase selections are invalid."""


def fingerprint_declaration(declaration: Mapping[str, object]) -> str:
    """Return a stable hash of a step declaration."""
    canonical = json.dumps(dict(declaration), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Step:
    """One declared applier invocation."""

    name: str
    phase: str
    applier: str = DEFAULT_APPLIER
    category: str = "config"
    risky: bool = False
    restart: str | None = None
    timeout: float | None = None
    options: Mapping[str, object] = field(default_factory=dict)
    fingerprint: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "phase": self.phase,
            "applier": self.applier,
            "category": self.category,
            "risky": self.risky,
            "restart": self.restart,
            "timeout": self.timeout,
            "fingerprint": self.fingerprint,
        }


@dataclass(frozen=True)
class MaintenanceTrigger:
    """Periodic work run by the watchdog through the applier contract."""

    name: str
    interval: float
    step: Step


def _parse_declaration(
    raw: object,
    *,
    position: str,
    phase_required: bool,
    known_kinds: Iterable[str] | None,
) -> Step:
    if not isinstance(raw, Mapping):
        raise PlanError(f"{position} must be a mapping.")
    declaration = {str(key): value for key, value in raw.items()}
    name = declaration.get("name")
    if not isinstance(name, str) or not name.strip():
        raise PlanError(f"{position} needs a non-empty 'name'.")
    name = name.strip()

    if phase_required:
        phase = declaration.get("phase")
        if phase not in PHASES:
            allowed = ", ".join(PHASES)
            raise PlanError(f"Step '{name}' has unknown phase {phase!r}. Allowed: {allowed}.")
        default_category = "config"
    else:
        phase = MAINTENANCE_PHASE
        default_category = "monitoring"

    applier = str(declaration.get("applier", DEFAULT_APPLIER)).strip().lower()
    if known_kinds is not None and applier not in set(known_kinds):
        raise PlanError(f"Step '{name}' uses unknown applier '{applier}'.")

    category = str(declaration.get("category", default_category)).strip().lower()
    if category not in CATEGORIES:
        allowed = ", ".join(CATEGORIES)
        raise PlanError(f"Step '{name}' has unknown category {category!r}. Allowed: {allowed}.")

    risky = declaration.get("risky", False)
    if not isinstance(risky, bool):
        raise PlanError(f"Step '{name}': 'risky' must be a boolean.")

    restart = declaration.get("restart")
    if restart is not None and (not isinstance(restart, str) or not restart.strip()):
        raise PlanError(f"Step '{name}': 'restart' must name a service.")

    timeout = declaration.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise PlanError(f"Step '{name}': 'timeout' must be a positive number of seconds.")
        timeout = float(timeout)

    reserved = _STEP_FIELDS if phase_required else _TRIGGER_FIELDS
    options = {key: value for key, value in declaration.items() if key not in reserved}
    return Step(
        name=name,
        phase=str(phase),
        applier=applier,
        category=category,
        risky=risky,
        restart=restart.strip() if isinstance(restart, str) else None,
        timeout=timeout,
        options=options,
        fingerprint=fingerprint_declaration(declaration),
    )


def parse_steps(
    document: Mapping[str, object],
    *,
    known_kinds: Iterable[str] | None = None,
) -> list[Step]:
    """Parse the ``steps`` list of *document* in declaration order."""
    raw_steps = document.get("steps", [])
    if raw_steps is None:
        return []
    if not isinstance(raw_steps, list):
        raise PlanError("'steps' must be a list of step declarations.")
    kinds = list(known_kinds) if known_kinds is not None else None
    steps: list[Step] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_steps):
        step = _parse_declaration(
            raw, position=f"steps[{index}]", phase_required=True, known_kinds=kinds
        )
        if step.name in seen:
            raise PlanError(f"Duplicate step name '{step.name}'.")
        seen.add(step.name)
        steps.append(step)
    return steps


def parse_maintenance(
    document: Mapping[str, object],
    *,
    known_kinds: Iterable[str] | None = None,
) -> list[MaintenanceTrigger]:
    """Parse the ``maintenance`` list of *document*."""
    raw_triggers = document.get("maintenance", [])
    if raw_triggers is None:
        return []
    if not isinstance(raw_triggers, list):
        raise PlanError("'maintenance' must be a list of trigger declarations.")
    kinds = list(known_kinds) if known_kinds is not None else None
    triggers: list[MaintenanceTrigger] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_triggers):
        step = _parse_declaration(
            raw, position=f"maintenance[{index}]", phase_required=False, known_kinds=kinds
        )
        assert isinstance(raw, Mapping)
        interval = raw.get("interval")
        if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
            raise PlanError(f"Maintenance '{step.name}' needs a positive 'interval' in seconds.")
        if step.name in seen:
            raise PlanError(f"Duplicate maintenance trigger '{step.name}'.")
        seen.add(step.name)
        triggers.append(MaintenanceTrigger(name=step.name, interval=float(interval), step=step))
    return triggers


def make_validator(
    known_kinds: Iterable[str] | None = None,
) -> Callable[[Mapping[str, object]], None]:
    """Return a config-store validator that checks steps and maintenance."""
    kinds = list(known_kinds) if known_kinds is not None else None

    def _validate(document: Mapping[str, object]) -> None:
        parse_steps(document, known_kinds=kinds)
        parse_maintenance(document, known_kinds=kinds)

    return _validate


def _split(values: Iterable[str] | None) -> list[str]:
    names: list[str] = []
    for value in values or []:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names


def select_phases(
    *,
    phase: str | None = None,
    include: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
) -> tuple[str, ...]:
    """Resolve CLI phase filters into an ordered phase tuple.

    ``include`` and ``exclude`` accept comma separated values.
    """
    requested = _split([phase] if phase else []) + _split(include)
    excluded = _split(exclude)
    for name in [*requested, *excluded]:
        if name not in PHASES:
            allowed = ", ".join(PHASES)
            raise PlanError(f"Unknown phase '{name}'. Allowed: {allowed}.")
    selected = [name for name in PHASES if not requested or name in requested]
    selected = [name for name in selected if name not in excluded]
    if not selected:
        raise PlanError("Phase selection leaves nothing to run.")
    return tuple(selected)


@dataclass(frozen=True)
class ExecutionPlan:
    """Steps to execute, ordered by phase then declaration order."""

    steps: tuple[Step, ...]
    phases: tuple[str, ...] = PHASES

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def step(self, name: str) -> Step | None:
        """Return the step called *name*."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def phase_steps(self, phase: str) -> list[Step]:
        """Steps of *phase* in execution order."""
        return [step for step in self.steps if step.phase == phase]

    def is_last_in_phase(self, step: Step) -> bool:
        """True when *step* is the final step of its phase in this plan."""
        steps = self.phase_steps(step.phase)
        return bool(steps) and steps[-1].name == step.name

    def categories(self) -> set[str]:
        """Categories touched by the plan."""
        return {step.category for step in self.steps}

    def position(self, name: str) -> int:
        """Index of step *name* in execution order."""
        for index, step in enumerate(self.steps):
            if step.name == name:
                return index
        raise KeyError(name)


def build_plan(steps: Sequence[Step], phases: Sequence[str] = PHASES) -> ExecutionPlan:
    """Order *steps* by phase, keeping only the selected *phases*."""
    selected = tuple(phase for phase in PHASES if phase in set(phases))
    ordered: list[Step] = []
    for phase in selected:
        ordered.extend(step for step in steps if step.phase == phase)
    return ExecutionPlan(steps=tuple(ordered), phases=selected)


__all__ = [
    "CATEGORIES",
    "ExecutionPlan",
    "MaintenanceTrigger",
    "PHASES",
    "PlanError",
    "Step",
    "build_plan",
    "fingerprint_declaration",
    "make_validator",
    "parse_maintenance",
    "parse_steps",
    "select_phases",
]
