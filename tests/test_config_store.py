"""Tests for the versioned desired-state store."""
from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import pytest

from hardenctl.config_store import (
    ConfigStore,
    ConfigStoreError,
    ValidationError,
    checksum_document,
)

V1 = {"steps": [{"name": "os-check", "phase": "preflight", "check": "true"}]}
V2 = {"steps": [{"name": "os-check", "phase": "preflight", "check": "false"}]}
V3 = {"steps": [], "maintenance": []}


def _require_steps(document: Mapping[str, object]) -> None:
    if not isinstance(document.get("steps"), list):
        raise ValidationError("'steps' must be a list.")


def _store(tmp_path: Path, **kwargs: object) -> ConfigStore:
    return ConfigStore(
        tmp_path / "desired.yml",
        tmp_path / "state" / "history",
        validator=_require_steps,
        **kwargs,  # type: ignore[arg-type]
    )


def test_write_archives_and_swaps(tmp_path: Path) -> None:
    """Each accepted document becomes a numbered version and the live file."""
    store = _store(tmp_path)

    first = store.write(V1, message="initial")
    second = store.write(V2, message="tighten")

    assert (first.sequence, second.sequence) == (1, 2)
    assert store.current_version() == second
    assert store.read() == V2
    assert store.load_version(1) == V1
    assert (tmp_path / "state" / "history" / "v1.yml").exists()
    assert [item.message for item in store.history()] == ["initial", "tighten"]
    assert second.checksum == checksum_document(V2)


def test_identical_write_is_a_no_op(tmp_path: Path) -> None:
    """Writing the current content again does not create a version."""
    store = _store(tmp_path)
    first = store.write(V1)

    again = store.write(dict(V1))

    assert again == first
    assert len(store.history()) == 1


def test_invalid_document_is_rejected_before_writing(tmp_path: Path) -> None:
    """Validation failures leave live file and history untouched."""
    store = _store(tmp_path)
    store.write(V1)

    with pytest.raises(ValidationError):
        store.write({"steps": "nope"})
    with pytest.raises(ValidationError, match="mapping"):
        store.write(["not", "a", "mapping"])  # type: ignore[arg-type]

    assert store.read() == V1
    assert len(store.history()) == 1


def test_last_known_good_bookkeeping(tmp_path: Path) -> None:
    """LKG may only point at existing versions that are not ahead of current."""
    store = _store(tmp_path)
    store.write(V1)
    second = store.write(V2)

    assert store.last_known_good() is None
    assert store.mark_last_known_good(1).sequence == 1
    assert store.mark_last_known_good(second) == second
    assert store.last_known_good() == second
    assert (tmp_path / "state" / "history" / "LKG").read_text(encoding="utf-8") == "2\n"

    with pytest.raises(ConfigStoreError, match="unknown version 9"):
        store.mark_last_known_good(9)


def test_lkg_cannot_run_ahead_of_current(tmp_path: Path) -> None:
    """After restoring an older version, newer ones cannot become LKG."""
    store = _store(tmp_path)
    store.write(V1)
    store.write(V2)
    index_path = tmp_path / "state" / "history" / "index.json"
    index = json.loads(index_path.read_text(encoding="utf-8"))
    index["current"] = 1
    index_path.write_text(json.dumps(index), encoding="utf-8")

    with pytest.raises(ConfigStoreError, match="ahead of current"):
        store.mark_last_known_good(2)


def test_restore_creates_new_version(tmp_path: Path) -> None:
    """History is append-only: restoring v1 creates v3 with v1's content."""
    store = _store(tmp_path)
    store.write(V1)
    store.write(V2)

    restored = store.restore(1)

    assert restored.sequence == 3
    assert restored.message == "restored from v1"
    assert store.read() == V1
    assert store.restore(3) == restored


def test_rollback_to_last_known_good(tmp_path: Path) -> None:
    """The LKG content is brought back; without one the call fails."""
    store = _store(tmp_path)
    store.write(V1)

    with pytest.raises(ConfigStoreError, match="No last-known-good"):
        store.rollback_to_last_known_good()

    store.mark_last_known_good(1)
    store.write(V2)
    version = store.rollback_to_last_known_good()

    assert version.message == "rollback to last-known-good v1"
    assert store.read() == V1


def test_corrupt_live_file_restored_from_lkg(tmp_path: Path) -> None:
    """An unparsable live file is replaced by the last-known-good version."""
    store = _store(tmp_path)
    store.write(V1)
    store.mark_last_known_good(1)
    store.write(V2)
    store.live_path.write_text("steps: [unclosed\n", encoding="utf-8")

    assert store.read() == V1
    assert store.current_version().sequence == 1
    assert "os-check" in store.live_path.read_text(encoding="utf-8")


def test_invalid_live_file_restored_from_current(tmp_path: Path) -> None:
    """Without an LKG the current version is used for recovery."""
    store = _store(tmp_path)
    store.write(V1)
    store.live_path.write_text("steps: 42\n", encoding="utf-8")

    assert store.read() == V1


def test_missing_live_file_restored(tmp_path: Path) -> None:
    """A deleted live file is restored from history."""
    store = _store(tmp_path)
    store.write(V1)
    store.live_path.unlink()

    assert store.read() == V1
    assert store.live_path.exists()


def test_missing_everything_reads_empty(tmp_path: Path) -> None:
    """A fresh host has an empty desired state and no history."""
    store = _store(tmp_path)

    assert store.read() == {}
    assert store.history() == []


def test_unusable_live_file_without_history_fails(tmp_path: Path) -> None:
    """Corruption with nothing to restore from is an error."""
    store = _store(tmp_path)
    store.live_path.write_text("steps: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigStoreError, match="no archived version"):
        store.read()


def test_manual_edit_is_adopted(tmp_path: Path) -> None:
    """Valid edits made outside the tool become a new version."""
    store = _store(tmp_path)
    store.write(V1)
    store.live_path.write_text("steps: []\nmaintenance: []\n", encoding="utf-8")

    assert store.read() == V3
    current = store.current_version()
    assert current is not None
    assert current.sequence == 2
    assert current.message == "adopted manual edit"


def test_peek_leaves_edits_and_corruption_alone(tmp_path: Path) -> None:
    """peek answers like read but never archives, restores or rewrites."""
    store = _store(tmp_path)
    store.write(V1)
    store.live_path.write_text("steps: []\nmaintenance: []\n", encoding="utf-8")

    assert store.peek() == V3
    assert [item.sequence for item in store.history()] == [1]

    store.live_path.write_text("steps: [unclosed\n", encoding="utf-8")

    assert store.peek() == V1
    assert store.live_path.read_text(encoding="utf-8") == "steps: [unclosed\n"
    assert store.current_version().sequence == 1


def test_untracked_live_file_is_adopted(tmp_path: Path) -> None:
    """A pre-existing desired.yml becomes version 1."""
    store = _store(tmp_path)
    store.live_path.write_text("steps: []\nmaintenance: []\n", encoding="utf-8")

    assert store.read() == V3
    assert [item.message for item in store.history()] == ["adopted existing configuration"]


def test_corrupt_index_is_rebuilt(tmp_path: Path) -> None:
    """The archive is the source of truth when index.json is damaged; reads never rewrite it."""
    store = _store(tmp_path)
    store.write(V1)
    store.write(V2)
    index_path = tmp_path / "state" / "history" / "index.json"
    index_path.write_text("{oops", encoding="utf-8")

    history = store.history()

    assert [item.sequence for item in history] == [1, 2]
    assert store.current_version().sequence == 2
    assert history[0].checksum == checksum_document(V1)
    assert index_path.read_text(encoding="utf-8") == "{oops"

    store.write(V3)

    assert json.loads(index_path.read_text(encoding="utf-8"))["current"] == 3


def test_pruning_keeps_current_lkg_and_protected(tmp_path: Path) -> None:
    """Old versions are dropped except those still referenced."""
    store = _store(tmp_path, max_versions=3, protected_versions=lambda: {2})
    for number in range(1, 7):
        store.write({"steps": [], "revision": number})
        if number == 1:
            store.mark_last_known_good(1)

    sequences = [item.sequence for item in store.history()]

    assert sequences == [1, 2, 6]
    assert not (tmp_path / "state" / "history" / "v3.yml").exists()
    assert store.load_version(1) == {"steps": [], "revision": 1}
    with pytest.raises(ConfigStoreError, match="not in history"):
        store.load_version(4)
