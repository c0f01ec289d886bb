"""Process exit codes shared by every hardenctl command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit statuses scripts and the watchdog unit can rely on.

    ``ROLLBACK`` is returned whenever a rollback ran, automatic or requested,
    even when it restored the host cleanly.
    """

    OK = 0
    FAILURE = 1
    ROLLBACK = 2
    LOCK_BUSY = 3
