"""Lifecycle monitor: reconcile ledger status with the live state of each unit."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .audit import AuditTrail
from .constants import DEFAULT_OUTPUT_TAIL_CHARS, DEFAULT_SPAWN_GRACE_SECONDS, SUMMARY_HEADER_PATTERN
from .errors import RuntimeQueryError, UnitVanished
from .events import WorkerEventLog
from .ledger import TaskLedger
from .models import Task, TaskStatus
from .runtime import ExecutionRuntime, UnitStatus
from .utils import _utc_now

_SUMMARY_RE = re.compile(SUMMARY_HEADER_PATTERN, re.IGNORECASE | re.MULTILINE)


def extract_summary(output: str) -> Optional[str]:
    """Everything from the first ``## Summary`` header to the end, untruncated."""
    match = _SUMMARY_RE.search(output)
    if match is None:
        return None
    return output[match.start():]


def read_output(path: Path, tail_chars: int = DEFAULT_OUTPUT_TAIL_CHARS) -> tuple[Optional[str], Optional[str]]:
    """Return ``(tail, summary)`` for an output artifact, or ``(None, None)`` if absent."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None, None
    except OSError as exc:
        logger.warning("Cannot read worker output {}: {}", path, exc)
        return None, None
    return text[-tail_chars:] if tail_chars > 0 else "", extract_summary(text)


class LifecycleMonitor:
    def __init__(
        self,
        ledger: TaskLedger,
        runtime: ExecutionRuntime,
        *,
        output_path: Callable[[str], Path],
        audit: AuditTrail,
        events: WorkerEventLog,
        tail_chars: int = DEFAULT_OUTPUT_TAIL_CHARS,
        spawn_grace_seconds: float = DEFAULT_SPAWN_GRACE_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ledger = ledger
        self.runtime = runtime
        self.output_path = output_path
        self.audit = audit
        self.events = events
        self.tail_chars = tail_chars
        self.spawn_grace = timedelta(seconds=spawn_grace_seconds)
        self._clock = clock

    def refresh(self, task_id: str) -> Task:
        """Reconcile one task and return its current record.

        Raises:
            TaskNotFound: No task with *task_id* is in the ledger.
        """
        task = self.ledger.get(task_id)
        if task.status is TaskStatus.RUNNING:
            self.events.ensure_running(task.id, task.unit_name, task.started_at)
            return self._reconcile_running(task)
        if task.status is TaskStatus.PENDING:
            return self._reconcile_pending(task)
        return task

    def refresh_open(self) -> list[Task]:
        """Refresh every pending or running task; returns those that reached a terminal state."""
        finished = []
        for task in self.ledger.read().open_tasks():
            try:
                current = self.refresh(task.id)
            except RuntimeQueryError as exc:
                logger.warning("Cannot reconcile task {}: {}", task.id, exc)
                continue
            if current.status.is_terminal:
                finished.append(current)
        return finished

    def _reconcile_running(self, task: Task) -> Task:
        unit = self.runtime.status(task.unit_name)
        if not unit.finished:
            return task
        return self._finish(task, unit)

    def _reconcile_pending(self, task: Task) -> Task:
        if task.error:
            logger.warning("Task {} never started: {}", task.id, task.error)
            return self._finish(task, None, error=task.error)
        if self._clock() - task.created_at < self.spawn_grace:
            return task
        unit = self.runtime.status(task.unit_name)
        if unit.alive:
            return task
        if not unit.exists:
            return self._finish(task, None, error=f"Worker unit {task.unit_name} never started")
        return self._finish(task, unit)

    def _finish(self, task: Task, unit: Optional[UnitStatus], *, error: Optional[str] = None) -> Task:
        state = self.ledger.read()
        current = state.find(task.id)
        if current is None or current.status is not task.status:
            # Changed underneath us (the unit marked it running, or another pass finished it).
            return current or task
        now = self._clock()
        exit_code = unit.exit_code if unit is not None and unit.exists else None
        current.status = TaskStatus.COMPLETED if exit_code == 0 else TaskStatus.FAILED
        current.exit_code = exit_code
        current.completed_at = now
        if unit is not None and not unit.exists:
            current.error = str(UnitVanished(current.id, current.unit_name))
        elif error:
            current.error = error
        output, summary = read_output(self.output_path(current.id), self.tail_chars)
        if output is not None:
            current.output = output
            current.summary = summary
        self.ledger.write(state)

        logger.info(
            "Task {} is {} (exit code {})",
            current.id,
            current.status.value,
            "n/a" if exit_code is None else exit_code,
        )
        self.audit.record(
            "worker_status_updated",
            taskId=current.id,
            status=current.status.value,
            exitCode=exit_code,
        )
        self.events.record_outcome(
            current.id,
            current.unit_name,
            current.status,
            now,
            exit_code=exit_code,
            error=current.error,
        )
        return current
