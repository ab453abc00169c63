from __future__ import annotations

import shlex
import sys
from datetime import timedelta

import pytest
from conftest import FakeRuntime, FrozenClock, start_unit

from syntropy_core.errors import CycleFailed
from syntropy_core.models import Task, TaskStatus
from syntropy_core.service import Orchestrator


def _python(script: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}"


def test_spawn_sequence_keeps_a_single_running_task(
    orchestrator: Orchestrator, runtime: FakeRuntime, clock: FrozenClock
) -> None:
    first = orchestrator.spawn_worker("first job")
    assert first["success"] is True
    start_unit(orchestrator, first["taskId"])

    busy = orchestrator.spawn_worker("second job")
    assert busy["code"] == "lock_contention"
    assert busy["runningTaskId"] == first["taskId"]
    assert len(orchestrator.ledger.read().running()) == 1

    runtime.exit(first["unitName"], 0)
    clock.advance(5)
    second = orchestrator.spawn_worker("second job")

    assert second["success"] is True
    state = orchestrator.ledger.read()
    assert state.find(first["taskId"]).status is TaskStatus.COMPLETED
    start_unit(orchestrator, second["taskId"])
    assert [task.id for task in orchestrator.ledger.read().running()] == [second["taskId"]]


def test_failed_task_triggers_cooldown_payload(
    orchestrator: Orchestrator, runtime: FakeRuntime, clock: FrozenClock
) -> None:
    first = orchestrator.spawn_worker("flaky job")
    start_unit(orchestrator, first["taskId"])
    runtime.exit(first["unitName"], 2)
    clock.advance(1)

    payload = orchestrator.spawn_worker("retry")

    assert payload["code"] == "cooldown_active"
    assert payload["waitSeconds"] == 60
    assert payload["lastTaskId"] == first["taskId"]


def test_bad_arguments_come_back_as_payloads(orchestrator: Orchestrator) -> None:
    assert orchestrator.spawn_worker("x", priority="urgent")["code"] == "invalid_argument"
    assert orchestrator.spawn_worker("   ")["code"] == "spawn_failure"
    assert orchestrator.check_status("missing")["code"] == "task_not_found"
    assert orchestrator.list_tasks(status="weird")["code"] == "invalid_argument"


def test_check_status_includes_unit_name(orchestrator: Orchestrator) -> None:
    spawned = orchestrator.spawn_worker("look around")
    payload = orchestrator.check_status(spawned["taskId"])

    assert payload["status"] == "pending"
    assert payload["unitName"] == spawned["unitName"]
    assert payload["payload"]["instruction"] == "look around"


def test_list_tasks_newest_first(orchestrator: Orchestrator, clock: FrozenClock) -> None:
    for index in range(3):
        task = Task.create(f"job {index} " + "x" * 200, created_at=clock() + timedelta(minutes=index))
        if index == 1:
            task.status = TaskStatus.FAILED
        orchestrator.ledger.append(task)

    listing = orchestrator.list_tasks(limit=2)
    failed = orchestrator.list_tasks(status="failed")

    assert listing["total"] == 3
    assert [task["taskPreview"][:5] for task in listing["tasks"]] == ["job 2", "job 1"]
    assert len(listing["tasks"][0]["taskPreview"]) <= 103
    assert failed["filtered"] == 1
    assert failed["tasks"][0]["status"] == "failed"


def test_read_worker_logs_prefers_unit_log(orchestrator: Orchestrator) -> None:
    paths = orchestrator.settings.paths
    task_id = "abcdef12-0000"
    paths.data_dir.mkdir(parents=True)
    paths.output_path(task_id).write_text("artifact only\n")

    fallback = orchestrator.read_worker_logs(task_id)
    assert fallback["content"] == "artifact only"

    paths.logs_dir.mkdir(parents=True)
    paths.worker_log_path(task_id).write_text("\n".join(f"line {n}" for n in range(10)) + "\n")
    tail = orchestrator.read_worker_logs(task_id, lines=3)

    assert tail["totalLines"] == 10
    assert tail["content"] == "line 7\nline 8\nline 9"
    assert orchestrator.read_worker_logs("live")["code"] == "log_not_found"


def test_schedule_next_run_clamps(orchestrator: Orchestrator, clock: FrozenClock) -> None:
    payload = orchestrator.schedule_next_run(2, "soon please")

    assert payload["scheduledIn"] == "10 minutes"
    assert payload["nextRunAt"] == (clock() + timedelta(minutes=10)).isoformat()
    assert orchestrator.schedule.read().reason == "soon please"
    assert orchestrator.schedule_next_run(1000, "later")["scheduledIn"] == "360 minutes"


def test_diagnostics_reports_long_runners(orchestrator: Orchestrator, clock: FrozenClock) -> None:
    spawned = orchestrator.spawn_worker("slow job")
    start_unit(orchestrator, spawned["taskId"])
    orchestrator.check_status(spawned["taskId"])
    clock.advance(minutes=21)

    report = orchestrator.worker_diagnostics()

    assert [event["taskId"] for event in report["active"]] == [spawned["taskId"]]
    assert [event["taskId"] for event in report["healing"]] == [spawned["taskId"]]


def test_continuity_round_trip_rejects_stale_checksum(orchestrator: Orchestrator) -> None:
    first = orchestrator.read_continuity()
    assert orchestrator.update_continuity("# Notes\n", first["contextChecksum"])["success"] is True

    stale = orchestrator.update_continuity("# Other\n", first["contextChecksum"])
    assert stale["code"] == "stale_context"


def test_run_cycle_passes_roots_to_decision_command(orchestrator: Orchestrator) -> None:
    orchestrator.settings.scheduler.decision_command = _python(
        "import os, sys; sys.exit(0 if os.environ['SYNTROPY_HOST_ROOT'] == '/srv/host-root' else 5)"
    )
    orchestrator.run_cycle()


def test_run_cycle_failure_raises(orchestrator: Orchestrator) -> None:
    orchestrator.settings.scheduler.decision_command = _python("import sys; sys.exit(3)")
    with pytest.raises(CycleFailed, match="exited with 3"):
        orchestrator.run_cycle()


def test_scheduler_counts_failed_cycles(orchestrator: Orchestrator) -> None:
    orchestrator.settings.scheduler.decision_command = _python("import sys; sys.exit(1)")
    scheduler = orchestrator.build_scheduler()

    outcome = scheduler.run_cycle()

    assert outcome.ok is False
    assert outcome.consecutive_failures == 1
    assert orchestrator.audit.entries("cycle_error")
