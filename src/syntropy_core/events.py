"""Secondary worker event log used for diagnostics.

The ledger says *what* state a task is in; the event log says *when* a unit was
seen running, which is what healing detection needs.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger
from pydantic import ValidationError

from .constants import DEFAULT_HEALING_THRESHOLD_SECONDS
from .io_utils import _atomic_write_text
from .models import TaskStatus, WorkerEvent, WorkerEventStore, WorkerEventType
from .utils import _new_event_id, _utc_now

_TERMINAL_EVENTS = {WorkerEventType.COMPLETE, WorkerEventType.FAILED, WorkerEventType.ABORTED}


class WorkerEventLog:
    def __init__(
        self,
        path: Path,
        *,
        healing_threshold_seconds: int = DEFAULT_HEALING_THRESHOLD_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.path = path
        self.healing_threshold = timedelta(seconds=healing_threshold_seconds)
        self._clock = clock

    def read(self) -> WorkerEventStore:
        if not self.path.exists():
            return WorkerEventStore()
        try:
            return WorkerEventStore.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            # Diagnostics only; a damaged event log must not block reconciliation.
            logger.warning("Ignoring unreadable worker event log {}: {}", self.path, exc)
            return WorkerEventStore()

    def _write(self, store: WorkerEventStore) -> None:
        _atomic_write_text(self.path, store.model_dump_json(by_alias=True, exclude_none=True, indent=2) + "\n")

    def record(self, task_id: str, event_type: WorkerEventType, **fields) -> WorkerEvent:
        now = self._clock()
        event = WorkerEvent(id=_new_event_id(now), task_id=task_id, event_type=event_type, timestamp=now, **fields)
        store = self.read()
        store.events.append(event)
        self._write(store)
        logger.debug("Recorded worker event {} for task {}", event_type.value, task_id)
        return event

    def spawn_event(self, task_id: str, status: Optional[TaskStatus] = None) -> Optional[WorkerEvent]:
        for event in self.read().events:
            if event.task_id != task_id or event.event_type is not WorkerEventType.SPAWN:
                continue
            if status is None or event.status is status:
                return event
        return None

    def ensure_running(self, task_id: str, unit_name: str, started_at: Optional[datetime]) -> bool:
        """Backfill a running spawn event for *task_id*. Returns True if one was added."""
        if self.spawn_event(task_id, TaskStatus.RUNNING) is not None:
            return False
        first = self.spawn_event(task_id)
        spawn_time = first.spawn_time if first and first.spawn_time else started_at
        self.record(
            task_id,
            WorkerEventType.SPAWN,
            unit_name=unit_name,
            status=TaskStatus.RUNNING,
            spawn_time=spawn_time,
        )
        return True

    def record_outcome(
        self,
        task_id: str,
        unit_name: str,
        status: TaskStatus,
        completed_at: datetime,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> WorkerEvent:
        """Append the terminal event for *task_id*.

        Args:
            task_id: Task that finished.
            unit_name: Its execution unit.
            status: Terminal ledger status; anything other than completed or
                failed is recorded as aborted.
            completed_at: When the outcome was observed.
            exit_code: Unit exit code, if known.
            error: Error text recorded on the task.

        Returns:
            The stored event, with ``buildDurationMs`` measured from the first
            spawn event when there is one.
        """
        event_type = {
            TaskStatus.COMPLETED: WorkerEventType.COMPLETE,
            TaskStatus.FAILED: WorkerEventType.FAILED,
        }.get(status, WorkerEventType.ABORTED)
        first = self.spawn_event(task_id)
        spawn_time = first.spawn_time if first else None
        duration_ms = None
        if spawn_time is not None:
            duration_ms = int((completed_at - spawn_time).total_seconds() * 1000)
        return self.record(
            task_id,
            event_type,
            unit_name=unit_name,
            status=status,
            spawn_time=spawn_time,
            completion_time=completed_at,
            build_duration_ms=duration_ms,
            exit_code=exit_code,
            error=error,
        )

    def detect_healing(self) -> tuple[list[WorkerEvent], list[WorkerEvent]]:
        """Split running workers into ``(active, healing)``.

        A worker is active while its running spawn event has no terminal event
        after it, and healing once it has been running longer than the threshold.
        """
        store = self.read()
        finished = {event.task_id for event in store.events if event.event_type in _TERMINAL_EVENTS}
        now = self._clock()
        active: list[WorkerEvent] = []
        healing: list[WorkerEvent] = []
        for event in store.events:
            if event.event_type is not WorkerEventType.SPAWN or event.status is not TaskStatus.RUNNING:
                continue
            if event.task_id in finished:
                continue
            active.append(event)
            elapsed = now - event.timestamp
            if elapsed > self.healing_threshold:
                healing.append(event.model_copy(update={"build_duration_ms": int(elapsed.total_seconds() * 1000)}))
        return active, healing

    def forget(self, task_ids: Iterable[str]) -> int:
        """Drop all events for *task_ids*; used when tasks leave the ledger."""
        doomed = set(task_ids)
        if not doomed:
            return 0
        store = self.read()
        kept = [event for event in store.events if event.task_id not in doomed]
        dropped = len(store.events) - len(kept)
        if dropped:
            store.events = kept
            self._write(store)
        return dropped
