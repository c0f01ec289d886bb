"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from hardenctl.locking import (
    RUN_LOCK_NAME,
    STATUS_ACQUIRED,
    STATUS_RECOVERED,
    LockBusyError,
    LockManager,
)


def test_run_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes holder metadata and stamps the release."""
    manager = LockManager(tmp_path / "run")
    lock_path = tmp_path / "run" / f"{RUN_LOCK_NAME}.lock"

    with manager.run_lock("session-1") as handle:
        assert handle.status == STATUS_ACQUIRED
        assert handle.active
        assert handle.wait_ms >= 0
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["session_id"] == "session-1"
        assert "released_at" not in data
        assert manager.is_held()
        assert manager.holder() == data

    released = json.loads(lock_path.read_text(encoding="utf-8"))
    assert "released_at" in released
    assert not manager.is_held()
    assert manager.holder() is None
    assert manager.metadata() == released


def test_second_holder_is_refused_immediately(tmp_path: Path) -> None:
    """With no timeout a held lock raises with the holder's details."""
    manager = LockManager(tmp_path / "run")

    with manager.run_lock("first"):
        with pytest.raises(LockBusyError) as excinfo:
            manager.acquire("second")

    assert excinfo.value.holder["session_id"] == "first"
    assert "session first" in str(excinfo.value)


@pytest.mark.mutation_timeout
def test_waiting_acquisition_times_out(tmp_path: Path) -> None:
    """A bounded wait still fails while the lock stays held."""
    manager = LockManager(tmp_path / "run", default_timeout=0.1)

    with manager.run_lock("first"), pytest.raises(LockBusyError):
        manager.acquire("second")


def test_stale_lock_is_recovered(tmp_path: Path) -> None:
    """Metadata without a release stamp marks a dead holder."""
    manager = LockManager(tmp_path / "run")
    manager.runtime_dir.mkdir(parents=True)
    manager.lock_path().write_text(
        json.dumps({"pid": 999999, "session_id": "crashed", "acquired_at": "2024-01-01T00:00:00Z"}),
        encoding="utf-8",
    )

    handle = manager.acquire("next")
    try:
        assert handle.status == STATUS_RECOVERED
        assert handle.recovered
        assert handle.previous is not None
        assert handle.previous["session_id"] == "crashed"
    finally:
        handle.release()


def test_release_is_idempotent(tmp_path: Path) -> None:
    """Releasing twice is harmless and frees the lock."""
    manager = LockManager(tmp_path / "run")
    handle = manager.acquire("only")

    handle.release()
    handle.release()

    assert not handle.active
    again = manager.acquire("again")
    assert again.status == STATUS_ACQUIRED
    again.release()


def test_watchdog_lock_is_independent(tmp_path: Path) -> None:
    """The supervisor lock does not block executor runs."""
    manager = LockManager(tmp_path / "run")

    with manager.watchdog_lock("wd"):
        assert manager.is_held("watchdog")
        assert not manager.is_held()
        with manager.run_lock("executor") as handle:
            assert handle.active
        with pytest.raises(LockBusyError):
            manager.acquire("wd-2", name="watchdog")
