"""Durable state helpers (atomic files and the run-state tracker)."""
from __future__ import annotations

from .files import StateFileError, atomic_write_text, read_json, write_json
from .runstate import ExecutorState, RunState, RunStateTracker

__all__ = [
    "ExecutorState",
    "RunState",
    "RunStateTracker",
    "StateFileError",
    "atomic_write_text",
    "read_json",
    "write_json",
]
