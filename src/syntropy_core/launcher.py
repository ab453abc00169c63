"""Worker launcher: cooldown check, gate acquisition, task creation, unit start."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from loguru import logger

from .audit import AuditTrail
from .constants import DEFAULT_SPAWN_COOLDOWN_SECONDS, ENV_HOST_ROOT, ENV_TASK_ID, ENV_TASK_TYPE, WORKER_UNIT_PREFIX
from .errors import CooldownActive, LedgerCorrupt, LockContention, RuntimeQueryError, SpawnFailure
from .events import WorkerEventLog
from .gate import ConcurrencyGate, Rejected
from .ledger import TaskLedger
from .models import LedgerState, Priority, Task, TaskStatus, TaskType, WorkerEventType
from .monitor import LifecycleMonitor
from .runtime import ExecutionRuntime
from .utils import _utc_now


@dataclass(frozen=True)
class SpawnResult:
    task_id: str
    unit_name: str
    task_type: TaskType = TaskType.NORMAL

    def to_dict(self) -> dict[str, object]:
        return {
            "success": True,
            "taskId": self.task_id,
            "unitName": self.unit_name,
            "type": self.task_type.value,
            "status": "spawned",
            "message": f"Worker spawned. Task ID: {self.task_id[:8]}. Poll its status with the full task id.",
        }


def cooldown_remaining(state: LedgerState, now: datetime, cooldown_seconds: float) -> Optional[tuple[float, Task]]:
    """Seconds left on the post-failure cooldown, with the task that caused it.

    Only the most recently completed task counts, and only if it failed.
    """
    last = state.last_completed()
    if last is None or not last.failed:
        return None
    elapsed = (now - last.completed_at).total_seconds()
    if elapsed >= cooldown_seconds:
        return None
    return cooldown_seconds - elapsed, last


class WorkerLauncher:
    def __init__(
        self,
        ledger: TaskLedger,
        gate: ConcurrencyGate,
        runtime: ExecutionRuntime,
        *,
        host_root: str,
        audit: AuditTrail,
        events: WorkerEventLog,
        monitor: Optional[LifecycleMonitor] = None,
        cooldown_seconds: float = DEFAULT_SPAWN_COOLDOWN_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ledger = ledger
        self.gate = gate
        self.runtime = runtime
        self.host_root = host_root
        self.audit = audit
        self.events = events
        self.monitor = monitor
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock

    def spawn(
        self,
        instruction: str,
        context: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        *,
        task_type: TaskType = TaskType.NORMAL,
    ) -> SpawnResult:
        """Create a task and start its unit.

        Open tasks are reconciled first, so a unit that already exited is
        classified from its exit code before it is removed, and a fresh failure
        is seen by the cooldown check.

        Args:
            instruction: What the worker should do.
            context: Optional extra context appended to the briefing.
            priority: Recorded on the task.
            task_type: ``self-rebuild`` relaxes the self-rebuild guardrail in the unit.

        Returns:
            The new task id and unit name.

        Raises:
            CooldownActive: The most recent completion failed under a minute ago.
            LockContention: Another worker holds the gate.
            SpawnFailure: The unit could not be started. The lock is left in
                place and the error is recorded on the task.
        """
        if not instruction.strip():
            raise SpawnFailure("Instruction must not be empty")

        if self.monitor is not None:
            finished = self.monitor.refresh_open()
            if finished:
                logger.info("Reconciled {} finished task(s) before spawning", len(finished))

        state = self.ledger.read()
        now = self._clock()
        remaining = cooldown_remaining(state, now, self.cooldown.total_seconds())
        if remaining is not None:
            wait, last = remaining
            error = CooldownActive(math.ceil(wait), last.id, last.status.value)
            logger.info("Spawn rejected: cooldown active for {}s after task {}", error.wait_seconds, last.id)
            self.audit.record(
                "worker_spawn_rejected",
                reason="cooldown_after_failure",
                waitSeconds=error.wait_seconds,
                lastTaskId=last.id,
            )
            raise error

        try:
            self.runtime.remove_exited(WORKER_UNIT_PREFIX)
        except RuntimeQueryError as exc:
            logger.warning("Skipping exited-unit cleanup: {}", exc)

        placeholder = f"pending-{uuid.uuid4().hex[:12]}"
        verdict = self.gate.acquire(placeholder)
        if isinstance(verdict, Rejected):
            running = state.running()
            running_task_id = verdict.running_task_id or (running[0].id if running else None)
            logger.info("Spawn rejected: {}", verdict.reason)
            self.audit.record(
                "worker_spawn_rejected",
                reason="worker_busy",
                detail=verdict.reason,
                runningTaskId=running_task_id,
            )
            raise LockContention(verdict.reason, running_task_id)

        task = Task.create(instruction, context, task_type=task_type, priority=priority, created_at=now)
        try:
            self.ledger.append(task)
        except LedgerCorrupt:
            self.gate.release(placeholder)
            raise
        self.audit.record("worker_task_created", taskId=task.id, type=task_type.value, task=instruction[:500])
        self.gate.retarget(task.id)

        unit_name = task.unit_name
        self.events.record(
            task.id,
            WorkerEventType.SPAWN,
            unit_name=unit_name,
            status=TaskStatus.PENDING,
            spawn_time=now,
        )
        env = {
            ENV_TASK_ID: task.id,
            ENV_HOST_ROOT: self.host_root,
            ENV_TASK_TYPE: task_type.value,
        }
        logger.info("Spawning worker unit {} for task {}", unit_name, task.id)
        try:
            self.runtime.start(unit_name, env)
        except SpawnFailure as exc:
            self._record_spawn_error(task.id, str(exc))
            self.audit.record("worker_spawn_failed", taskId=task.id, unitName=unit_name, error=str(exc))
            logger.error("Worker unit {} failed to start: {}", unit_name, exc)
            raise SpawnFailure(str(exc), task_id=task.id) from exc

        self.audit.record("worker_spawned", taskId=task.id, unitName=unit_name, type=task_type.value)
        logger.info("Worker spawned: {}", unit_name)
        return SpawnResult(task_id=task.id, unit_name=unit_name, task_type=task_type)

    def _record_spawn_error(self, task_id: str, message: str) -> None:
        state = self.ledger.read()
        task = state.find(task_id)
        if task is None:
            return
        task.error = message
        self.ledger.write(state)
