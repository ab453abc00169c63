"""Pydantic records for the ledger, lock, schedule and worker event files.

Records are serialized with camelCase keys. Reading is strict: a record with a
missing field, an unknown status or a wrongly typed value is rejected instead of
coerced.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .constants import (
    DEFAULT_NORMAL_MAX_ATTEMPTS,
    DEFAULT_REBUILD_MAX_ATTEMPTS,
    LEDGER_VERSION,
    REBUILD_UNIT_PREFIX,
    UNIT_ID_CHARS,
    WORKER_UNIT_PREFIX,
)
from .utils import _ensure_utc, _new_task_id, _utc_now


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.ABORTED})


class TaskType(str, Enum):
    NORMAL = "normal"
    SELF_REBUILD = "self-rebuild"

    @property
    def unit_prefix(self) -> str:
        return REBUILD_UNIT_PREFIX if self is TaskType.SELF_REBUILD else WORKER_UNIT_PREFIX

    @property
    def max_attempts(self) -> int:
        return DEFAULT_REBUILD_MAX_ATTEMPTS if self is TaskType.SELF_REBUILD else DEFAULT_NORMAL_MAX_ATTEMPTS


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        strict=True,
        extra="forbid",
    )

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TaskPayload(_Record):
    model_config = ConfigDict(frozen=True)

    instruction: str
    context: Optional[str] = None


class Task(_Record):
    id: str = Field(default_factory=_new_task_id, frozen=True)
    status: TaskStatus = TaskStatus.PENDING
    type: TaskType = TaskType.NORMAL
    payload: TaskPayload = Field(frozen=True)
    priority: Priority = Priority.NORMAL
    attempts: int = 0
    max_attempts: int = DEFAULT_NORMAL_MAX_ATTEMPTS
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None
    summary: Optional[str] = None
    error: Optional[str] = None

    @field_validator("created_at", "started_at", "completed_at")
    @classmethod
    def coerce_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value) if value is not None else None

    @classmethod
    def create(
        cls,
        instruction: str,
        context: Optional[str] = None,
        *,
        task_type: TaskType = TaskType.NORMAL,
        priority: Priority = Priority.NORMAL,
        created_at: Optional[datetime] = None,
    ) -> "Task":
        return cls(
            type=task_type,
            payload=TaskPayload(instruction=instruction, context=context),
            priority=priority,
            max_attempts=task_type.max_attempts,
            created_at=created_at or _utc_now(),
        )

    @property
    def unit_name(self) -> str:
        return unit_name_for(self.id, self.type)

    @property
    def failed(self) -> bool:
        return self.status is TaskStatus.FAILED or (self.exit_code is not None and self.exit_code != 0)

    def age_reference(self) -> datetime:
        return self.completed_at or self.created_at


def unit_name_for(task_id: str, task_type: TaskType = TaskType.NORMAL) -> str:
    return f"{task_type.unit_prefix}{task_id[:UNIT_ID_CHARS]}"


class LedgerState(_Record):
    version: Literal[1] = LEDGER_VERSION
    tasks: list[Task] = Field(default_factory=list)

    def find(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def running(self) -> list[Task]:
        return [task for task in self.tasks if task.status is TaskStatus.RUNNING]

    def open_tasks(self) -> list[Task]:
        return [task for task in self.tasks if not task.status.is_terminal]

    def last_completed(self) -> Optional[Task]:
        finished = [task for task in self.tasks if task.completed_at is not None]
        if not finished:
            return None
        return max(finished, key=lambda task: task.completed_at)


class LockRecord(_Record):
    task_id: str
    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("created_at")
    @classmethod
    def coerce_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value) if value is not None else None


class ScheduleRecord(_Record):
    next_run_at: datetime
    reason: str

    @field_validator("next_run_at")
    @classmethod
    def coerce_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value) if value is not None else None


class WorkerEventType(str, Enum):
    SPAWN = "spawn"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


class WorkerEvent(_Record):
    id: str
    task_id: str
    event_type: WorkerEventType
    timestamp: datetime
    unit_name: Optional[str] = None
    status: Optional[TaskStatus] = None
    spawn_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    build_duration_ms: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @field_validator("timestamp", "spawn_time", "completion_time")
    @classmethod
    def coerce_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value) if value is not None else None


class WorkerEventStore(_Record):
    version: int = 1
    events: list[WorkerEvent] = Field(default_factory=list)
