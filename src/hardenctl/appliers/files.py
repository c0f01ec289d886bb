"""Managed file applier.

Writes one file atomically. The desired content comes from exactly one of:

``content``
    literal text in the step declaration;
``content_from``
    a dotted key into the desired-state document (``mongodb.net``); mappings
    and lists are rendered as YAML, which is the format ``mongod.conf`` uses;
``template``
    a Jinja2 template rendered with the whole document as ``config``.

The previous content and mode are captured before risky steps so ``undo``
restores the file byte for byte (or removes it when it did not exist).
"""
from __future__ import annotations

import base64
import binascii
import os
import stat
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from ..state.files import StateFileError, atomic_write_bytes, dump_yaml
from ..templates import TemplateError
from .base import (
    Applier,
    ApplierContext,
    ApplierError,
    ApplyResult,
    ChangePlan,
    VerifyResult,
    require_options,
)

if TYPE_CHECKING:
    from ..plan import Step
    from ..snapshots import Snapshot

_SOURCES = ("content", "content_from", "template")


def lookup_dotted(document: Mapping[str, object], dotted: str) -> object:
    """Return the value at *dotted* inside *document*."""
    current: object = document
    for segment in dotted.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            raise ApplierError(f"Key '{dotted}' not found in desired configuration.")
        current = current[segment]
    return current


def _parse_mode(raw: object) -> int:
    if raw is None:
        return 0o640
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    try:
        return int(str(raw), 8)
    except ValueError as exc:
        raise ApplierError(f"Invalid file mode {raw!r}; use an octal string like '0640'.") from exc


class FileApplier(Applier):
    """Keep a file's content and mode equal to the desired state."""

    kind = "file"

    def __init__(self, step: Step, context: ApplierContext) -> None:
        require_options(step, ["path"])
        declared = [key for key in _SOURCES if step.options.get(key) is not None]
        if len(declared) != 1:
            raise ApplierError(
                f"Step '{step.name}' must declare exactly one of: {', '.join(_SOURCES)}."
            )
        super().__init__(step, context)
        self.path = Path(str(step.options["path"]))
        self.mode = _parse_mode(step.options.get("mode"))
        self._source = declared[0]

    @property
    def requires_restart(self) -> bool:
        return bool(self.options.get("requires_restart", False))

    def desired_content(self) -> str:
        """Render the content the file should hold."""
        raw = self.options[self._source]
        if self._source == "content":
            text = str(raw)
        elif self._source == "content_from":
            value = lookup_dotted(self.context.document, str(raw))
            text = dump_yaml(value) if isinstance(value, (Mapping, list)) else str(value)
        else:
            if self.context.templates is None:
                raise ApplierError("Template rendering requested without a template engine.")
            try:
                text = self.context.templates.render_to_string(
                    str(raw), {"config": self.context.document, "step": self.step.name}
                )
            except TemplateError as exc:
                raise ApplierError(str(exc)) from exc
        return text if text.endswith("\n") else text + "\n"

    def _current(self) -> tuple[bytes | None, int | None]:
        try:
            content = self.path.read_bytes()
            mode = stat.S_IMODE(self.path.stat().st_mode)
        except FileNotFoundError:
            return None, None
        except OSError as exc:
            raise ApplierError(f"Unable to read {self.path}: {exc}") from exc
        return content, mode

    def _desired_bytes(self) -> bytes:
        return self.desired_content().encode("utf-8")

    def _in_sync(self) -> bool:
        content, mode = self._current()
        return content == self._desired_bytes() and mode == self.mode

    def describe(self) -> ChangePlan:
        content, mode = self._current()
        desired = self._desired_bytes()
        actions: list[str] = []
        if content is None:
            actions.append(f"create {self.path} ({oct(self.mode)})")
        elif content != desired:
            actions.append(f"rewrite {self.path}")
        if content is not None and mode != self.mode:
            actions.append(f"chmod {oct(self.mode)} {self.path}")
        return ChangePlan(
            step=self.step.name,
            summary=f"manage {self.path}",
            actions=tuple(actions),
            changes_expected=bool(actions),
            requires_restart=self.requires_restart and bool(actions),
        )

    def apply(self) -> ApplyResult:
        desired = self._desired_bytes()
        content, mode = self._current()
        if content == desired and mode == self.mode:
            return ApplyResult.success(changed=False, message=f"{self.path} up to date")
        try:
            if content == desired:
                os.chmod(self.path, self.mode)
            else:
                atomic_write_bytes(self.path, desired, mode=self.mode)
        except (OSError, StateFileError) as exc:
            return ApplyResult.failure(f"Failed to write {self.path}: {exc}")
        if self.requires_restart:
            return ApplyResult.restart_required(f"{self.path} updated; restart required")
        return ApplyResult.success(changed=True, message=f"{self.path} updated")

    def verify(self) -> VerifyResult:
        if self._in_sync():
            return VerifyResult.ok()
        return VerifyResult.failed(f"{self.path} does not match the desired content")

    def capture_state(self) -> Mapping[str, object]:
        content, mode = self._current()
        captured: dict[str, object] = {
            "path": str(self.path),
            "exists": content is not None,
            "mode": mode,
        }
        if content is None:
            captured["content"] = None
            return captured
        try:
            captured["content"] = content.decode("utf-8")
        except UnicodeDecodeError:
            # Snapshots are JSON; binary or legacy-encoded files travel as base64.
            captured["content_b64"] = base64.b64encode(content).decode("ascii")
        return captured

    def undo(self, snapshot: Snapshot | None) -> bool:
        captured = snapshot.applier_state(self.step.name) if snapshot is not None else None
        if captured is None:
            return False
        try:
            if not captured.get("exists"):
                self.path.unlink(missing_ok=True)
                return True
            encoded = captured.get("content_b64")
            if isinstance(encoded, str):
                data = base64.b64decode(encoded)
            else:
                data = str(captured.get("content") or "").encode("utf-8")
            mode = captured.get("mode")
            atomic_write_bytes(
                self.path,
                data,
                mode=mode if isinstance(mode, int) else self.mode,
            )
        except (OSError, StateFileError, binascii.Error):
            return False
        return True


__all__ = ["FileApplier", "lookup_dotted"]
