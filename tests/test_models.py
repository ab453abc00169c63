from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from syntropy_core.models import LedgerState, Task, TaskStatus, TaskType, unit_name_for


def test_task_defaults_follow_type() -> None:
    normal = Task.create("fix the api")
    rebuild = Task.create("rebuild", task_type=TaskType.SELF_REBUILD)

    assert normal.status is TaskStatus.PENDING
    assert normal.attempts == 0
    assert normal.max_attempts == 3
    assert rebuild.max_attempts == 1
    assert normal.id != rebuild.id


def test_unit_names_use_prefix_and_eight_chars() -> None:
    task_id = "0123abcd-ffff-4000-8000-000000000000"
    assert unit_name_for(task_id) == "syntropy-worker-0123abcd"
    assert unit_name_for(task_id, TaskType.SELF_REBUILD) == "syntropy-worker-rebuild-0123abcd"


def test_serializes_with_camel_case_keys() -> None:
    task = Task.create("do it", "ctx")
    data = task.to_json_dict()

    assert data["createdAt"].endswith("+00:00")
    assert data["maxAttempts"] == 3
    assert data["payload"] == {"instruction": "do it", "context": "ctx"}
    assert "completedAt" not in data


def test_naive_timestamps_are_read_as_utc() -> None:
    raw = {
        "id": "t1",
        "status": "completed",
        "type": "normal",
        "payload": {"instruction": "x"},
        "attempts": 1,
        "maxAttempts": 3,
        "createdAt": "2026-01-01T10:00:00",
        "completedAt": "2026-01-01T10:05:00Z",
    }
    task = Task.model_validate_json(json.dumps(raw))
    assert task.created_at == datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert task.completed_at.tzinfo is not None


@pytest.mark.parametrize(
    "mutation",
    [
        {"status": "exploded"},
        {"type": "docker-op"},
        {"attempts": "1"},
        {"payload": None},
        {"surprise": True},
    ],
)
def test_malformed_records_are_rejected(mutation: dict) -> None:
    raw = {
        "id": "t1",
        "status": "pending",
        "type": "normal",
        "payload": {"instruction": "x"},
        "attempts": 0,
        "maxAttempts": 3,
        "createdAt": "2026-01-01T10:00:00Z",
    }
    raw.update(mutation)
    with pytest.raises(ValidationError):
        LedgerState.model_validate_json(json.dumps({"version": 1, "tasks": [raw]}))


def test_payload_and_id_are_immutable() -> None:
    task = Task.create("original")
    with pytest.raises(ValidationError):
        task.id = "other"
    with pytest.raises(ValidationError):
        task.payload.instruction = "changed"


def test_last_completed_picks_latest_completion() -> None:
    early = Task.create("a")
    late = Task.create("b")
    early.completed_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    late.completed_at = datetime(2026, 1, 2, tzinfo=timezone.utc)
    state = LedgerState(tasks=[late, early, Task.create("open")])

    assert state.last_completed() is late
