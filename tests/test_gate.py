from __future__ import annotations

import json
from pathlib import Path

import pytest

from syntropy_core.errors import RuntimeQueryError
from syntropy_core.gate import Acquired, ConcurrencyGate, Rejected, release_lock

from conftest import FakeRuntime, FrozenClock


@pytest.fixture
def gate(tmp_path: Path, runtime: FakeRuntime, clock: FrozenClock) -> ConcurrencyGate:
    return ConcurrencyGate(tmp_path / "worker-lock.json", runtime, clock=clock)


def _write_lock(gate: ConcurrencyGate, task_id: str) -> None:
    gate.lock_path.write_text(json.dumps({"taskId": task_id, "createdAt": "2026-03-01T11:00:00+00:00"}))


def test_acquire_creates_lock(gate: ConcurrencyGate) -> None:
    assert gate.acquire("t1") == Acquired("t1")
    lock = gate.read_lock()
    assert lock is not None and lock.task_id == "t1"


def test_stale_lock_is_healed_when_no_units_are_live(gate: ConcurrencyGate) -> None:
    _write_lock(gate, "crashed-task")

    assert isinstance(gate.acquire("t2"), Acquired)
    assert gate.read_lock().task_id == "t2"


def test_lock_with_live_unit_is_not_overwritten(gate: ConcurrencyGate, runtime: FakeRuntime) -> None:
    _write_lock(gate, "first-task")
    runtime.start("syntropy-worker-firsttas", {})

    verdict = gate.acquire("second-task")

    assert isinstance(verdict, Rejected)
    assert verdict.running_task_id == "first-task"
    assert "syntropy-worker-firsttas" in verdict.reason
    assert gate.read_lock().task_id == "first-task"


def test_unknown_liveness_does_not_heal(gate: ConcurrencyGate, runtime: FakeRuntime, monkeypatch) -> None:
    _write_lock(gate, "first-task")

    def _broken(prefix: str) -> list[str]:
        raise RuntimeQueryError("daemon down")

    monkeypatch.setattr(runtime, "list_running", _broken)

    verdict = gate.acquire("second-task")
    assert isinstance(verdict, Rejected)
    assert verdict.reason == "Worker lock already held"


def test_release_only_removes_matching_lock(gate: ConcurrencyGate) -> None:
    gate.acquire("newer-task")

    assert gate.release("older-task") is False
    assert gate.lock_path.exists()
    assert release_lock(gate.lock_path, "newer-task") is True
    assert not gate.lock_path.exists()


def test_retarget_points_lock_at_real_task(gate: ConcurrencyGate) -> None:
    gate.acquire("pending-placeholder")
    gate.retarget("real-task")
    assert gate.read_lock().task_id == "real-task"
