"""Change appliers: the units of work the phase executor drives."""
from __future__ import annotations

from .base import (
    Applier,
    ApplierContext,
    ApplierError,
    ApplierTimeoutError,
    ApplyResult,
    ApplyStatus,
    ChangePlan,
    CommandOutcome,
    PreconditionError,
    VerifyResult,
    VerifyStatus,
    call_with_timeout,
)
from .command import CommandApplier
from .files import FileApplier
from .preconditions import VersionPrecondition
from .registry import ApplierRegistry, default_registry

__all__ = [
    "Applier",
    "ApplierContext",
    "ApplierError",
    "ApplierRegistry",
    "ApplierTimeoutError",
    "ApplyResult",
    "ApplyStatus",
    "ChangePlan",
    "CommandApplier",
    "CommandOutcome",
    "FileApplier",
    "PreconditionError",
    "VersionPrecondition",
    "VerifyResult",
    "VerifyStatus",
    "call_with_timeout",
    "default_registry",
]
