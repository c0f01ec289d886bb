"""Snapshot and checkpoint index.

A snapshot records *where to go back to*: the configuration version that was
current, the phase/step boundary, which step categories it covers and the
auxiliary state captured from the service and appliers at that moment. The
index is a JSON document (``snapshots/index.json``) rewritten atomically.
"""
from __future__ import annotations

import secrets
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .state.files import StateFileError, read_json, write_json

EPHEMERAL_PREFIX = "ephemeral-"


class SnapshotError(RuntimeError):
    """Raised when snapshot index interactions fail."""


class SnapshotKind(str, Enum):
    """Why a snapshot was taken."""

    PRISTINE = "pristine"
    BASELINE = "baseline"
    PRE_STEP = "pre-step"
    CHECKPOINT = "checkpoint"

    @property
    def is_boundary(self) -> bool:
        """True for snapshots taken at session or phase boundaries."""
        return self in {SnapshotKind.PRISTINE, SnapshotKind.BASELINE, SnapshotKind.CHECKPOINT}


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Snapshot:
    """One entry of the snapshot index."""

    id: str
    name: str
    kind: SnapshotKind
    categories: tuple[str, ...]
    config_version: int | None
    session_id: str | None
    created_at: str
    phase: str | None = None
    step: str | None = None
    aux: Mapping[str, object] = field(default_factory=dict)

    def covers(self, category: str) -> bool:
        """True when the snapshot was taken with *category* in scope."""
        return category in self.categories

    def service_state(self) -> dict[str, object]:
        """Return the captured service enablement/activity, if any."""
        services = self.aux.get("services")
        return dict(services) if isinstance(services, Mapping) else {}

    def applier_state(self, step: str) -> dict[str, object] | None:
        """Return the state captured from *step*'s applier, if any."""
        appliers = self.aux.get("appliers")
        if not isinstance(appliers, Mapping):
            return None
        captured = appliers.get(step)
        return dict(captured) if isinstance(captured, Mapping) else None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "categories": list(self.categories),
            "config_version": self.config_version,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "phase": self.phase,
            "step": self.step,
            "aux": dict(self.aux),
        }

    @property
    def ephemeral(self) -> bool:
        """True for in-memory snapshots that were never written to the index."""
        return self.id.startswith(EPHEMERAL_PREFIX)

    @classmethod
    def in_memory(
        cls,
        step: str,
        category: str,
        captured: Mapping[str, object] | None,
        *,
        config_version: int | None = None,
        session_id: str | None = None,
        phase: str | None = None,
    ) -> Snapshot:
        """Build an unpersisted pre-step snapshot holding *captured* applier state."""
        return cls(
            id=f"{EPHEMERAL_PREFIX}{step}",
            name=f"pre-{step}",
            kind=SnapshotKind.PRE_STEP,
            categories=(category,),
            config_version=config_version,
            session_id=session_id,
            created_at=_now_iso(),
            phase=phase,
            step=step,
            aux={"appliers": {step: dict(captured)}} if captured is not None else {},
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Snapshot:
        """Build from an index entry."""
        try:
            kind = SnapshotKind(str(data["kind"]))
            snapshot_id = str(data["id"])
        except (KeyError, ValueError) as exc:
            raise SnapshotError(f"Malformed snapshot entry: {data!r}") from exc
        version = data.get("config_version")
        categories = data.get("categories")
        aux = data.get("aux")
        return cls(
            id=snapshot_id,
            name=str(data.get("name", snapshot_id)),
            kind=kind,
            categories=tuple(str(item) for item in categories)
            if isinstance(categories, list)
            else (),
            config_version=version if isinstance(version, int) else None,
            session_id=str(data["session_id"]) if data.get("session_id") else None,
            created_at=str(data.get("created_at", "")),
            phase=str(data["phase"]) if data.get("phase") else None,
            step=str(data["step"]) if data.get("step") else None,
            aux=dict(aux) if isinstance(aux, Mapping) else {},
        )


@dataclass(slots=True)
class SnapshotStore:
    """Manage the JSON snapshot index under the state directory."""

    root: Path
    max_snapshots: int = 50

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = Path(self.root).expanduser()

    @property
    def index(self) -> Path:
        """Location of the snapshot index."""
        return self.root / "index.json"

    # Basic helpers -------------------------------------------------
    def read(self) -> dict[str, object]:
        """Return the parsed index (empty structure when missing)."""
        try:
            data = read_json(self.index, default={"snapshots": []})
        except StateFileError as exc:
            raise SnapshotError(f"Snapshot index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise SnapshotError(f"Snapshot index must be a JSON object ({self.index}).")
        return dict(data)

    def _write(self, snapshots: Iterable[Snapshot]) -> None:
        try:
            write_json(self.index, {"snapshots": [item.to_dict() for item in snapshots]})
        except StateFileError as exc:
            raise SnapshotError(f"Failed to write snapshot index: {exc}") from exc

    def list_snapshots(self) -> list[Snapshot]:
        """Return snapshots, oldest first."""
        entries = self.read().get("snapshots", [])
        snapshots: list[Snapshot] = []
        if isinstance(entries, list):
            for item in entries:
                if isinstance(item, Mapping):
                    snapshots.append(Snapshot.from_dict(item))
        return snapshots

    def get(self, snapshot_id: str) -> Snapshot | None:
        """Return the snapshot with *snapshot_id*, if present."""
        wanted = snapshot_id.strip()
        for snapshot in self.list_snapshots():
            if snapshot.id == wanted:
                return snapshot
        return None

    def pristine(self) -> Snapshot | None:
        """Return the pristine (pre-first-run) snapshot, if one was taken."""
        for snapshot in self.list_snapshots():
            if snapshot.kind is SnapshotKind.PRISTINE:
                return snapshot
        return None

    def latest(self, predicate: Callable[[Snapshot], bool] | None = None) -> Snapshot | None:
        """Return the newest snapshot matching *predicate*."""
        for snapshot in reversed(self.list_snapshots()):
            if predicate is None or predicate(snapshot):
                return snapshot
        return None

    def position(self, snapshot_id: str) -> int:
        """Return the index position of *snapshot_id* (creation order)."""
        for position, snapshot in enumerate(self.list_snapshots()):
            if snapshot.id == snapshot_id:
                return position
        raise SnapshotError(f"Snapshot '{snapshot_id}' not found in index.")

    def referenced_versions(self) -> set[int]:
        """Configuration versions that retained snapshots point at."""
        return {
            snapshot.config_version
            for snapshot in self.list_snapshots()
            if snapshot.config_version is not None
        }

    # Mutations -----------------------------------------------------
    def create(
        self,
        name: str,
        *,
        kind: SnapshotKind,
        categories: Iterable[str],
        config_version: int | None,
        session_id: str | None,
        phase: str | None = None,
        step: str | None = None,
        aux: Mapping[str, object] | None = None,
    ) -> Snapshot:
        """Append a snapshot to the index and prune old entries."""
        if kind is SnapshotKind.PRISTINE and self.pristine() is not None:
            raise SnapshotError("A pristine snapshot already exists.")
        snapshot = Snapshot(
            id=self.generate_identifier(name),
            name=name,
            kind=kind,
            categories=tuple(sorted(set(categories))),
            config_version=config_version,
            session_id=session_id,
            created_at=_now_iso(),
            phase=phase,
            step=step,
            aux=dict(aux or {}),
        )
        snapshots = self.list_snapshots()
        snapshots.append(snapshot)
        self._write(self._pruned(snapshots))
        return snapshot

    def _pruned(self, snapshots: list[Snapshot]) -> list[Snapshot]:
        excess = len(snapshots) - max(2, self.max_snapshots)
        if excess <= 0:
            return snapshots
        survivors: list[Snapshot] = []
        for snapshot in snapshots:
            if excess > 0 and snapshot.kind is not SnapshotKind.PRISTINE:
                excess -= 1
                continue
            survivors.append(snapshot)
        return survivors

    # Utility helpers -----------------------------------------------
    def generate_identifier(self, name: str) -> str:
        """Return a unique snapshot identifier derived from *name*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        safe_name = "".join(char if char.isalnum() or char in {"-", "_"} else "-" for char in name)
        return f"{timestamp}-{safe_name}-{token}"


__all__ = ["EPHEMERAL_PREFIX", "Snapshot", "SnapshotError", "SnapshotKind", "SnapshotStore"]
