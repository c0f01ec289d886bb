"""Applier factories keyed by the ``applier`` field of a step declaration."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from .base import Applier, ApplierContext, ApplierError
from .command import CommandApplier
from .files import FileApplier
from .preconditions import VersionPrecondition

if TYPE_CHECKING:
    from ..plan import Step

ApplierFactory = Callable[["Step", ApplierContext], Applier]


class ApplierRegistry:
    """Map applier kinds to factories."""

    def __init__(self, factories: dict[str, ApplierFactory] | None = None) -> None:
        self._factories: dict[str, ApplierFactory] = dict(factories or {})

    def register(self, kind: str, factory: ApplierFactory, *, replace: bool = False) -> None:
        """Register *factory* for *kind*."""
        key = kind.strip().lower()
        if not key:
            raise ApplierError("Applier kind must be a non-empty string.")
        if key in self._factories and not replace:
            raise ApplierError(f"Applier kind '{key}' is already registered.")
        self._factories[key] = factory

    def kinds(self) -> list[str]:
        """Registered kinds, sorted."""
        return sorted(self._factories)

    def __contains__(self, kind: object) -> bool:
        return isinstance(kind, str) and kind.lower() in self._factories

    def create(self, step: Step, context: ApplierContext) -> Applier:
        """Instantiate the applier for *step*."""
        factory = self._factories.get(step.applier)
        if factory is None:
            known = ", ".join(self.kinds()) or "none"
            raise ApplierError(
                f"Step '{step.name}' uses unknown applier '{step.applier}'. Known: {known}."
            )
        return factory(step, context)

    def create_all(self, steps: Iterable[Step], context: ApplierContext) -> dict[str, Applier]:
        """Instantiate appliers for every step, keyed by step name."""
        return {step.name: self.create(step, context) for step in steps}


def default_registry() -> ApplierRegistry:
    """Return a registry with the built-in appliers."""
    registry = ApplierRegistry()
    for applier_cls in (CommandApplier, FileApplier, VersionPrecondition):
        registry.register(applier_cls.kind, applier_cls)
    return registry


__all__ = ["ApplierFactory", "ApplierRegistry", "default_registry"]
