"""Systemd provider for the managed database service and the watchdog unit."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..templates import TemplateEngine


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


class ServiceController(Protocol):
    """What the executor, rollback manager and watchdog need from an init system."""

    def is_active(self, service: str) -> bool: ...

    def is_enabled(self, service: str) -> bool: ...

    def can_reload(self, service: str) -> bool: ...

    def start(self, service: str) -> object: ...

    def stop(self, service: str) -> object: ...

    def restart(self, service: str) -> object: ...

    def reload(self, service: str) -> object: ...

    def enable(self, service: str) -> object: ...

    def disable(self, service: str) -> object: ...


@dataclass(slots=True)
class SystemdProvider:
    """Query and drive systemd units through ``systemctl``."""

    templates: TemplateEngine
    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    command_timeout: float = 90.0

    @staticmethod
    def unit_name(service: str) -> str:
        """Return the unit name for *service* (``mongod`` -> ``mongod.service``)."""
        safe = service.replace("/", "-")
        return safe if "." in safe else f"{safe}.service"

    def unit_path(self, service: str) -> Path:
        """Return the full path of the unit file for *service*."""
        return self.unit_dir / self.unit_name(service)

    def render_unit(
        self,
        service: str,
        template_name: str,
        context: Mapping[str, object],
    ) -> bool:
        """Render the unit file for *service*; reload systemd when it changed."""
        path = self.unit_path(service)
        changed = self.templates.render_to_path(template_name, path, context, mode=0o644)
        if changed:
            self._reload_daemon()
        return changed

    def remove_unit(self, service: str) -> bool:
        """Remove the unit file for *service*; return False when it was absent."""
        path = self.unit_path(service)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._reload_daemon()
        return True

    # Queries ---------------------------------------------------------
    def is_active(self, service: str) -> bool:
        """Return True when the unit is active."""
        result = self._systemctl("is-active", "--quiet", self.unit_name(service), check=False)
        return result.returncode == 0

    def is_enabled(self, service: str) -> bool:
        """Return True when the unit is enabled at boot."""
        result = self._systemctl("is-enabled", "--quiet", self.unit_name(service), check=False)
        return result.returncode == 0

    def can_reload(self, service: str) -> bool:
        """Return True when the unit supports ``systemctl reload``."""
        result = self._systemctl(
            "show",
            "--property=CanReload",
            "--value",
            self.unit_name(service),
            check=False,
        )
        return result.returncode == 0 and (result.stdout or "").strip() == "yes"

    def capture(self, service: str) -> dict[str, bool]:
        """Return enablement and activity of *service* for snapshots."""
        return {"enabled": self.is_enabled(service), "active": self.is_active(service)}

    # Actions ---------------------------------------------------------
    def enable(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit_name(service), dry_run=dry_run)

    def disable(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", self.unit_name(service), dry_run=dry_run)

    def start(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit_name(service), dry_run=dry_run)

    def stop(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit_name(service), dry_run=dry_run)

    def restart(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", self.unit_name(service), dry_run=dry_run)

    def reload(self, service: str, *, dry_run: bool = False) -> subprocess.CompletedProcess[str]:
        """Gracefully reload the unit."""
        return self._systemctl("reload", self.unit_name(service), dry_run=dry_run)

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        return self._run_command(
            [self.systemctl_bin, command, *args],
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(
                list(args),
                returncode=0,
                stdout="",
                stderr="",
            )
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SystemdError(
                f"{error_prefix} timed out after {self.command_timeout:g}s"
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["ServiceController", "SystemdError", "SystemdProvider"]
