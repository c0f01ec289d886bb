"""hardenctl: converge a MongoDB host towards a declared hardening state.

Runs are phase ordered, resumable after interruption and guarded by graded
rollback; see :mod:`hardenctl.executor` for the state machine.
"""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in step with ``pyproject.toml``.
__version__ = "0.3.0"
