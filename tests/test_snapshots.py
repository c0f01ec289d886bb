"""Tests for the snapshot index."""
from __future__ import annotations

from pathlib import Path

import pytest

from hardenctl.snapshots import Snapshot, SnapshotError, SnapshotKind, SnapshotStore


def _create(store: SnapshotStore, name: str, kind: SnapshotKind, **extra: object) -> Snapshot:
    return store.create(
        name,
        kind=kind,
        categories=extra.pop("categories", ("config",)),  # type: ignore[arg-type]
        config_version=extra.pop("config_version", 1),  # type: ignore[arg-type]
        session_id="session-1",
        **extra,  # type: ignore[arg-type]
    )


def test_empty_index(tmp_path: Path) -> None:
    """A missing index reads as no snapshots."""
    store = SnapshotStore(tmp_path / "snapshots")

    assert store.list_snapshots() == []
    assert store.pristine() is None
    assert store.latest() is None


def test_create_and_lookup(tmp_path: Path) -> None:
    """Snapshots are persisted in creation order with sorted categories."""
    store = SnapshotStore(tmp_path / "snapshots")

    pristine = _create(store, "pristine", SnapshotKind.PRISTINE, categories=("service", "config"))
    checkpoint = _create(
        store,
        "checkpoint-tls",
        SnapshotKind.CHECKPOINT,
        config_version=2,
        phase="tls",
        aux={"services": {"mongod": {"enabled": True, "active": True}}},
    )

    reloaded = SnapshotStore(tmp_path / "snapshots")
    assert [item.id for item in reloaded.list_snapshots()] == [pristine.id, checkpoint.id]
    assert reloaded.pristine() == pristine
    assert pristine.categories == ("config", "service")
    assert reloaded.get(checkpoint.id) == checkpoint
    assert reloaded.position(checkpoint.id) == 1
    assert reloaded.latest(lambda item: item.kind.is_boundary) == checkpoint
    assert checkpoint.service_state() == {"mongod": {"enabled": True, "active": True}}
    assert reloaded.referenced_versions() == {1, 2}
    assert "checkpoint-tls" in checkpoint.id


def test_single_pristine(tmp_path: Path) -> None:
    """Only the first session captures the pre-hardening state."""
    store = SnapshotStore(tmp_path / "snapshots")
    _create(store, "pristine", SnapshotKind.PRISTINE)

    with pytest.raises(SnapshotError, match="already exists"):
        _create(store, "pristine", SnapshotKind.PRISTINE)


def test_pruning_keeps_pristine(tmp_path: Path) -> None:
    """Oldest snapshots are dropped first, never the pristine one."""
    store = SnapshotStore(tmp_path / "snapshots", max_snapshots=3)
    pristine = _create(store, "pristine", SnapshotKind.PRISTINE)
    created = [_create(store, f"pre-step-{n}", SnapshotKind.PRE_STEP) for n in range(4)]

    remaining = store.list_snapshots()

    assert [item.id for item in remaining] == [pristine.id, created[2].id, created[3].id]


def test_unknown_position_raises(tmp_path: Path) -> None:
    """Positions are only defined for indexed snapshots."""
    store = SnapshotStore(tmp_path / "snapshots")

    with pytest.raises(SnapshotError, match="not found"):
        store.position("nope")


def test_corrupt_index(tmp_path: Path) -> None:
    """Corruption is reported rather than silently discarding history."""
    store = SnapshotStore(tmp_path / "snapshots")
    store.root.mkdir(parents=True)
    store.index.write_text("{broken", encoding="utf-8")

    with pytest.raises(SnapshotError, match="corrupted"):
        store.list_snapshots()


def test_in_memory_snapshot_carries_applier_state() -> None:
    """Ephemeral pre-step snapshots hold what undo needs without touching disk."""
    snapshot = Snapshot.in_memory(
        "tls-config", "config", {"exists": False}, config_version=3, phase="tls"
    )

    assert snapshot.ephemeral
    assert snapshot.name == "pre-tls-config"
    assert snapshot.applier_state("tls-config") == {"exists": False}
    assert snapshot.applier_state("other") is None
    assert Snapshot.from_dict(snapshot.to_dict()) == snapshot


def test_malformed_entry_rejected() -> None:
    """Entries without a valid kind cannot be loaded."""
    with pytest.raises(SnapshotError, match="Malformed"):
        Snapshot.from_dict({"id": "x", "kind": "sideways"})
