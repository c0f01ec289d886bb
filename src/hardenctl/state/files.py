"""Atomic file helpers shared by the durable stores.

Every durable record hardenctl owns (run state, snapshot index, config history,
watchdog record, alerts) is written through :func:`atomic_write_text`: the
payload goes to a temporary sibling file that is flushed, synced and then
``os.replace``-d over the target, so readers observe either the old or the new
content and never a torn write.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage hardenctl state. Install with `pip install hardenctl`."
    ) from exc


class StateFileError(RuntimeError):
    """Raised when a durable state file cannot be read or written."""


def atomic_write_text(path: Path, text: str, *, mode: int = 0o640) -> None:
    """Atomically replace *path* with *text* encoded as UTF-8."""
    atomic_write_bytes(path, text.encode("utf-8"), mode=mode)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = 0o640) -> None:
    """Atomically replace *path* with *data*."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StateFileError(f"Unable to create {path.parent}: {exc}") from exc
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise StateFileError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def write_json(path: Path, payload: object, *, mode: int = 0o640) -> None:
    """Atomically persist *payload* as pretty-printed JSON."""
    atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=False) + "\n", mode=mode)


def read_json(path: Path, *, default: object | None = None) -> object | None:
    """Return parsed JSON from *path*, or *default* when the file is missing.

    Parse failures raise :class:`StateFileError`; callers decide whether a
    corrupt file is fatal or recoverable.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return deepcopy(default)
    except (OSError, UnicodeDecodeError) as exc:
        raise StateFileError(f"Unable to read {path}: {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise StateFileError(f"Corrupted JSON in {path}: {exc}") from exc


def dump_yaml(document: object) -> str:
    """Serialise *document* the way hardenctl stores configuration."""
    payload = dict(document) if isinstance(document, Mapping) else document
    return yaml.safe_dump(payload, sort_keys=False, default_flow_style=False)


def load_yaml(text: str, *, source: str) -> object:
    """Parse YAML *text*; *source* names the file in error messages."""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise StateFileError(f"Failed to parse YAML from {source}: {exc}") from exc


__all__ = [
    "StateFileError",
    "atomic_write_bytes",
    "atomic_write_text",
    "dump_yaml",
    "load_yaml",
    "read_json",
    "write_json",
]
