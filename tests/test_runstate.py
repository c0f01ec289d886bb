"""Tests for the durable run-state tracker."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from hardenctl.state.runstate import (
    ExecutorState,
    InvalidTransitionError,
    PendingRestart,
    RunState,
    RunStateTracker,
    new_session_id,
)


@dataclass
class _Ref:
    name: str
    fingerprint: str


def _tracker(tmp_path: Path) -> RunStateTracker:
    return RunStateTracker(tmp_path / "state" / "run-state.json")


def test_missing_record_loads_as_none(tmp_path: Path) -> None:
    """No file means no session yet."""
    tracker = _tracker(tmp_path)

    assert tracker.load() is None
    assert tracker.loaded is False
    with pytest.raises(RuntimeError):
        _ = tracker.state


def test_every_mutation_is_persisted(tmp_path: Path) -> None:
    """A new tracker sees exactly what the previous one wrote."""
    tracker = _tracker(tmp_path)
    tracker.start("session-1")
    tracker.transition(ExecutorState.RUNNING)
    tracker.set_position("tls", "tls-config")
    tracker.mark_step_completed("os-check", "preflight", "fp-1", snapshot_id="snap-1")
    tracker.add_recovery_point("resume", "snap-1")
    tracker.set_pending_restart(
        PendingRestart(
            step="tls-config",
            phase="tls",
            service="mongod",
            reason="restart required and not confirmed",
            requested_at="2024-05-01T00:00:00Z",
        )
    )

    state = _tracker(tmp_path).load()

    assert state is not None
    assert state.session_id == "session-1"
    assert state.state is ExecutorState.RUNNING
    assert (state.current_phase, state.current_step) == ("tls", "tls-config")
    assert state.completed("os-check").snapshot_id == "snap-1"
    assert state.recovery_points[0].name == "resume"
    assert state.pending_restart is not None
    assert state.pending_restart.service == "mongod"
    assert RunState.from_dict(state.to_dict()).to_dict() == state.to_dict()


def test_illegal_transition_is_rejected(tmp_path: Path) -> None:
    """The state machine refuses edges it does not define."""
    tracker = _tracker(tmp_path)
    tracker.start("session-1")

    with pytest.raises(InvalidTransitionError, match="idle -> verifying"):
        tracker.transition(ExecutorState.VERIFYING)

    tracker.transition(ExecutorState.RUNNING)
    tracker.transition(ExecutorState.PAUSED)
    tracker.transition(ExecutorState.RUNNING)
    tracker.transition(ExecutorState.COMPLETED)
    assert tracker.state.state is ExecutorState.COMPLETED


def test_failures_and_completion_counters(tmp_path: Path) -> None:
    """Failures count consecutively until a step completes."""
    tracker = _tracker(tmp_path)
    tracker.start("session-1")
    tracker.mark_step_completed("a", "preflight", "fp-a")

    tracker.mark_step_failed("a", "preflight", "broke")
    tracker.mark_step_failed("b", "preflight", "broke too")

    assert tracker.state.completed("a") is None
    assert tracker.state.failed_names() == ["a", "b"]
    assert tracker.state.consecutive_failures == 2

    tracker.mark_step_completed("b", "preflight", "fp-b")

    assert tracker.state.failed_names() == ["a"]
    assert tracker.state.consecutive_failures == 0


def test_new_session_keeps_completed_steps(tmp_path: Path) -> None:
    """Completion marks survive into the next session; failures do not."""
    tracker = _tracker(tmp_path)
    tracker.start("session-1")
    tracker.mark_step_completed("a", "preflight", "fp-a")
    tracker.mark_step_failed("b", "bootstrap", "boom")

    state = _tracker(tmp_path).start("session-2")

    assert state.session_id == "session-2"
    assert [entry.name for entry in state.completed_steps] == ["a"]
    assert state.failed_steps == []
    assert state.consecutive_failures == 0


def test_resume_returns_first_incomplete_step(tmp_path: Path) -> None:
    """A changed fingerprint makes a completed step incomplete again."""
    tracker = _tracker(tmp_path)
    tracker.start("session-1")
    tracker.mark_step_completed("a", "preflight", "fp-a")
    tracker.mark_step_completed("b", "bootstrap", "fp-b")

    steps = [_Ref("a", "fp-a"), _Ref("b", "fp-b-changed"), _Ref("c", "fp-c")]
    assert tracker.resume(steps) == _Ref("b", "fp-b-changed")
    assert tracker.resume(steps[:1]) is None


def test_rollback_progress_resumes_for_same_level(tmp_path: Path) -> None:
    """An unfinished rollback is reused; a finished one is replaced."""
    tracker = _tracker(tmp_path)
    tracker.start("session-1")
    tracker.mark_step_completed("sec", "tls", "fp")

    progress = tracker.begin_rollback("security", "3 consecutive step failures")
    tracker.record_undo("sec")
    again = tracker.begin_rollback("security", "retry")

    assert again is progress
    assert again.undone_steps == ["sec"]
    assert tracker.state.completed("sec") is None

    tracker.finish_rollback("completed")
    replaced = tracker.begin_rollback("security", "operator request")
    assert replaced is not progress
    assert replaced.undone_steps == []
    assert replaced.reason == "operator request"


def test_record_undo_requires_rollback(tmp_path: Path) -> None:
    """Undo bookkeeping outside a rollback is a programming error."""
    tracker = _tracker(tmp_path)
    tracker.start("session-1")

    with pytest.raises(RuntimeError, match="No rollback in progress"):
        tracker.record_undo("a")


def test_corrupt_record_is_quarantined(tmp_path: Path) -> None:
    """A damaged record is moved aside so a fresh session can start."""
    tracker = _tracker(tmp_path)
    tracker.path.parent.mkdir(parents=True)
    tracker.path.write_text("{torn", encoding="utf-8")

    assert tracker.load() is None
    assert not tracker.path.exists()
    assert len(list(tracker.path.parent.glob("run-state.json.corrupt-*"))) == 1

    state = tracker.resume_session()
    assert state.state is ExecutorState.IDLE


def test_invalid_state_value_is_quarantined(tmp_path: Path) -> None:
    """Well-formed JSON with an unknown state is treated as corrupt too."""
    tracker = _tracker(tmp_path)
    tracker.path.parent.mkdir(parents=True)
    tracker.path.write_text('{"session_id": "s", "state": "dancing"}', encoding="utf-8")

    assert tracker.load() is None


def test_peek_reads_without_side_effects(tmp_path: Path) -> None:
    """peek neither attaches the record nor moves a damaged file aside."""
    tracker = _tracker(tmp_path)
    tracker.start("s-1")

    reader = _tracker(tmp_path)
    peeked = reader.peek()

    assert peeked is not None and peeked.session_id == "s-1"
    assert not reader.loaded

    tracker.path.write_text("{torn", encoding="utf-8")

    assert reader.peek() is None
    assert tracker.path.read_text(encoding="utf-8") == "{torn"
    assert list(tracker.path.parent.glob("run-state.json.corrupt-*")) == []


def test_session_ids_are_unique() -> None:
    """Identifiers carry a random suffix."""
    assert new_session_id() != new_session_id()
