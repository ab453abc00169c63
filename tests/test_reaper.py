from __future__ import annotations

from datetime import timedelta

from syntropy_core.models import LedgerState, Task, TaskStatus
from syntropy_core.service import Orchestrator

from conftest import FakeRuntime, FrozenClock, start_unit


def _terminal(clock: FrozenClock, age: timedelta, status: TaskStatus = TaskStatus.COMPLETED) -> Task:
    task = Task.create("old work", created_at=clock.now - age - timedelta(hours=1))
    task.status = status
    task.completed_at = clock.now - age
    return task


def test_running_task_with_vanished_unit_is_aborted(orchestrator: Orchestrator, runtime: FakeRuntime) -> None:
    task_id = orchestrator.launcher.spawn("work").task_id
    start_unit(orchestrator, task_id)
    runtime.vanish(orchestrator.ledger.get(task_id).unit_name)

    result = orchestrator.reaper.sweep(7)

    assert result.aborted == 1
    task = orchestrator.ledger.get(task_id)
    assert task.status is TaskStatus.ABORTED
    assert "disappeared" in task.error
    assert task.exit_code is None


def test_running_task_with_exited_unit_is_aborted(orchestrator: Orchestrator, runtime: FakeRuntime) -> None:
    task_id = orchestrator.launcher.spawn("work").task_id
    start_unit(orchestrator, task_id)
    runtime.exit(orchestrator.ledger.get(task_id).unit_name, 3)

    assert orchestrator.reaper.sweep(7).aborted == 1
    task = orchestrator.ledger.get(task_id)
    assert task.status is TaskStatus.ABORTED
    assert task.exit_code == 3
    assert "exited unexpectedly (exitCode=3)" in task.error


def test_live_running_task_is_left_alone(orchestrator: Orchestrator) -> None:
    task_id = orchestrator.launcher.spawn("work").task_id
    start_unit(orchestrator, task_id)

    assert orchestrator.reaper.sweep(7).aborted == 0
    assert orchestrator.ledger.get(task_id).status is TaskStatus.RUNNING


def test_second_sweep_is_a_no_op(orchestrator: Orchestrator, runtime: FakeRuntime, clock: FrozenClock) -> None:
    task_id = orchestrator.launcher.spawn("work").task_id
    start_unit(orchestrator, task_id)
    runtime.vanish(orchestrator.ledger.get(task_id).unit_name)
    orchestrator.ledger.write(
        LedgerState(tasks=[*orchestrator.ledger.read().tasks, _terminal(clock, timedelta(days=30))])
    )

    first = orchestrator.reaper.sweep(7)
    second = orchestrator.reaper.sweep(7)

    assert (first.aborted, first.removed) == (1, 1)
    assert (second.aborted, second.removed) == (0, 0)


def test_retention_boundary(orchestrator: Orchestrator, clock: FrozenClock) -> None:
    expired = _terminal(clock, timedelta(days=7, seconds=1), TaskStatus.FAILED)
    survivor = _terminal(clock, timedelta(days=7) - timedelta(seconds=1), TaskStatus.ABORTED)
    orchestrator.ledger.write(LedgerState(tasks=[expired, survivor]))
    paths = orchestrator.settings.paths
    for task in (expired, survivor):
        paths.output_path(task.id).write_text("output")

    result = orchestrator.reaper.sweep(7)

    assert result.removed == 1
    assert result.remaining == 1
    assert [task.id for task in orchestrator.ledger.read().tasks] == [survivor.id]
    assert not paths.output_path(expired.id).exists()
    assert paths.output_path(survivor.id).exists()


def test_age_falls_back_to_created_at(orchestrator: Orchestrator, clock: FrozenClock) -> None:
    aborted = Task.create("never finished", created_at=clock.now - timedelta(days=10))
    aborted.status = TaskStatus.ABORTED
    orchestrator.ledger.write(LedgerState(tasks=[aborted]))

    assert orchestrator.reaper.sweep(7).removed == 1


def test_open_tasks_are_never_pruned(orchestrator: Orchestrator, clock: FrozenClock) -> None:
    pending = Task.create("queued long ago", created_at=clock.now - timedelta(days=30))
    pending.error = "spawn failed"
    orchestrator.ledger.write(LedgerState(tasks=[pending]))

    assert orchestrator.reaper.sweep(7).removed == 0


def test_orphaned_outputs_are_deleted(orchestrator: Orchestrator) -> None:
    paths = orchestrator.settings.paths
    paths.data_dir.mkdir(parents=True, exist_ok=True)
    orphan = paths.output_path("not-in-ledger")
    orphan.write_text("stale")

    result = orchestrator.reaper.sweep(7)

    assert result.orphaned == 1
    assert not orphan.exists()
