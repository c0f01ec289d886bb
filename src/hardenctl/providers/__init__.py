"""Service providers used by the executor, rollback manager and watchdog."""
from __future__ import annotations

from .systemd import ServiceController, SystemdError, SystemdProvider

__all__ = ["ServiceController", "SystemdError", "SystemdProvider"]
