"""Health verification for the managed database service."""
from __future__ import annotations

from .checks import default_checks
from .engine import HealthVerifier, run_checks
from .models import CheckDefinition, CheckResult, CheckStatus, HealthContext, HealthReport

__all__ = [
    "CheckDefinition",
    "CheckResult",
    "CheckStatus",
    "HealthContext",
    "HealthReport",
    "HealthVerifier",
    "default_checks",
    "run_checks",
]
