"""Single-flight worker orchestration: ledger, gate, lifecycle, self-rebuild and scheduling."""

from .errors import (
    CooldownActive,
    HealthCheckTimeout,
    LedgerCorrupt,
    LockContention,
    SpawnFailure,
    StaleContext,
    SyntropyError,
    UnitVanished,
)
from .models import LedgerState, Task, TaskStatus, TaskType
from .service import Orchestrator

__all__ = [
    "CooldownActive",
    "HealthCheckTimeout",
    "LedgerCorrupt",
    "LedgerState",
    "LockContention",
    "Orchestrator",
    "SpawnFailure",
    "StaleContext",
    "SyntropyError",
    "Task",
    "TaskStatus",
    "TaskType",
    "UnitVanished",
]
