"""Periodic sweep: abort orphaned running tasks, prune expired terminal ones."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from loguru import logger

from .audit import AuditTrail
from .constants import DEFAULT_RETENTION_DAYS, OUTPUT_PREFIX, OUTPUT_SUFFIX
from .errors import UnitVanished
from .events import WorkerEventLog
from .io_utils import _unlink_best_effort
from .ledger import TaskLedger
from .models import TaskStatus
from .runtime import ExecutionRuntime
from .utils import _utc_now


@dataclass(frozen=True)
class SweepResult:
    aborted: int = 0
    removed: int = 0
    orphaned: int = 0
    remaining: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Reaper:
    def __init__(
        self,
        ledger: TaskLedger,
        runtime: ExecutionRuntime,
        *,
        data_dir: Path,
        audit: AuditTrail,
        events: WorkerEventLog,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ledger = ledger
        self.runtime = runtime
        self.data_dir = data_dir
        self.audit = audit
        self.events = events
        self._clock = clock

    def output_path(self, task_id: str) -> Path:
        return self.data_dir / f"{OUTPUT_PREFIX}{task_id}{OUTPUT_SUFFIX}"

    def sweep(self, retention_days: float = DEFAULT_RETENTION_DAYS) -> SweepResult:
        """Abort orphaned running tasks, then prune expired terminal ones.

        A running task whose unit is gone or has exited is marked aborted. A
        terminal task whose completion (or creation) is strictly older than the
        cutoff is removed with its output artifact and events. Output artifacts
        for tasks no longer in the ledger are deleted too.

        Args:
            retention_days: Age in days beyond which terminal tasks are pruned.

        Returns:
            Counts of aborted, removed and orphaned items, and remaining tasks.
        """
        state = self.ledger.read()
        now = self._clock()
        changed = False

        aborted = 0
        for task in state.running():
            unit = self.runtime.status(task.unit_name)
            if not unit.finished:
                continue
            task.status = TaskStatus.ABORTED
            task.completed_at = now
            if unit.exists:
                task.exit_code = unit.exit_code
                task.error = f"Worker unit {task.unit_name} exited unexpectedly (exitCode={unit.exit_code})"
            else:
                task.error = str(UnitVanished(task.id, task.unit_name))
            logger.warning("Aborted orphaned task {}: {}", task.id, task.error)
            self.events.record_outcome(
                task.id, task.unit_name, task.status, now, exit_code=task.exit_code, error=task.error
            )
            aborted += 1
            changed = True

        cutoff = now - timedelta(days=retention_days)
        kept = []
        expired = []
        for task in state.tasks:
            if task.status.is_terminal and task.age_reference() < cutoff:
                expired.append(task.id)
            else:
                kept.append(task)
        if expired:
            state.tasks = kept
            changed = True
        if changed:
            self.ledger.write(state)

        for task_id in expired:
            _unlink_best_effort(self.output_path(task_id))
        if expired:
            self.events.forget(expired)

        orphaned = self._remove_orphaned_outputs({task.id for task in state.tasks})

        result = SweepResult(aborted=aborted, removed=len(expired), orphaned=orphaned, remaining=len(state.tasks))
        if aborted or expired or orphaned:
            logger.info("Sweep: {}", result.to_dict())
        self.audit.record("worker_cleanup", **result.to_dict())
        return result

    def _remove_orphaned_outputs(self, known_ids: set[str]) -> int:
        if not self.data_dir.is_dir():
            return 0
        orphaned = 0
        for path in self.data_dir.glob(f"{OUTPUT_PREFIX}*{OUTPUT_SUFFIX}"):
            task_id = path.name[len(OUTPUT_PREFIX):-len(OUTPUT_SUFFIX)]
            if task_id in known_ids:
                continue
            if _unlink_best_effort(path):
                orphaned += 1
        return orphaned
