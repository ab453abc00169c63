from __future__ import annotations

from pathlib import Path

from conftest import FrozenClock

from syntropy_core.audit import AuditTrail


def test_records_are_timestamped_and_typed(tmp_path: Path, clock: FrozenClock) -> None:
    trail = AuditTrail(tmp_path / "audit.jsonl", clock=clock)

    trail.record("worker_spawned", taskId="t-1")

    [entry] = trail.entries()
    assert entry == {"timestamp": clock().isoformat(), "type": "worker_spawned", "taskId": "t-1"}


def test_oldest_entries_are_dropped(tmp_path: Path, clock: FrozenClock) -> None:
    trail = AuditTrail(tmp_path / "audit.jsonl", max_entries=3, clock=clock)

    for index in range(5):
        trail.record("cycle_start", cycle=index)

    assert [entry["cycle"] for entry in trail.entries()] == [2, 3, 4]


def test_entries_filter_and_skip_garbage(tmp_path: Path, clock: FrozenClock) -> None:
    path = tmp_path / "audit.jsonl"
    trail = AuditTrail(path, clock=clock)
    trail.record("cycle_start")
    with open(path, "a", encoding="utf-8") as handle:
        handle.write("{not json\n")
    trail.record("cycle_error", error="boom")

    assert [entry["type"] for entry in trail.entries()] == ["cycle_start", "cycle_error"]
    assert trail.entries("cycle_error")[0]["error"] == "boom"


def test_unwritable_trail_does_not_raise(tmp_path: Path, clock: FrozenClock) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    trail = AuditTrail(blocker / "audit.jsonl", clock=clock)

    trail.record("cycle_start")

    assert trail.entries() == []
