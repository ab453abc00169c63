"""Error taxonomy for the task orchestration core.

Every per-task failure is one of these classes. Components raise them; the
:class:`~syntropy_core.service.Orchestrator` facade turns them into result
payloads and audit entries so nothing here terminates the orchestrator.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class SyntropyError(Exception):
    """Base class for orchestration errors."""

    code = "error"

    def to_payload(self) -> dict[str, object]:
        return {"error": str(self), "code": self.code}


class ConfigError(SyntropyError, ValueError):
    code = "config_error"


class LedgerCorrupt(SyntropyError):
    code = "ledger_corrupt"

    def __init__(self, path: Path, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"Task ledger {path} is malformed: {detail}")


class TaskNotFound(SyntropyError, KeyError):
    code = "task_not_found"

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"Task {self.task_id} not found in ledger"


class LockContention(SyntropyError):
    """Another worker is believed to be in flight; retry later."""

    code = "lock_contention"

    def __init__(self, reason: str, running_task_id: Optional[str] = None) -> None:
        self.reason = reason
        self.running_task_id = running_task_id
        super().__init__(f"Another worker is currently running (single-flight enforced). {reason}")

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["runningTaskId"] = self.running_task_id
        return payload


class CooldownActive(SyntropyError):
    """The most recent task failed too recently to spawn another worker."""

    code = "cooldown_active"

    def __init__(self, wait_seconds: int, task_id: str, task_status: str) -> None:
        self.wait_seconds = wait_seconds
        self.task_id = task_id
        self.task_status = task_status
        super().__init__(
            f"Spawn cooldown active (last task failed). Wait {wait_seconds}s before retrying. "
            f"Last task: {task_id}"
        )

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload.update(
            {"waitSeconds": self.wait_seconds, "lastTaskId": self.task_id, "lastTaskStatus": self.task_status}
        )
        return payload


class SpawnFailure(SyntropyError):
    """The launch command itself failed; the lock stays for the next healing pass."""

    code = "spawn_failure"

    def __init__(self, message: str, task_id: Optional[str] = None) -> None:
        self.task_id = task_id
        super().__init__(message)

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["taskId"] = self.task_id
        return payload


class UnitVanished(SyntropyError):
    code = "unit_vanished"

    def __init__(self, task_id: str, unit_name: str) -> None:
        self.task_id = task_id
        self.unit_name = unit_name
        super().__init__(f"Worker unit {unit_name} disappeared (crash or restart) while task {task_id} was running")


class StaleContext(SyntropyError):
    """A guarded mutation was attempted against out-of-date state."""

    code = "stale_context"

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            "The checksum provided does not match the current content on disk. "
            "Read the latest state before updating."
        )


class HealthCheckTimeout(SyntropyError):
    code = "health_check_timeout"

    def __init__(self, url: str, attempts: int, last_error: Optional[str] = None) -> None:
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        detail = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"Health check failed after {attempts} attempts against {url}{detail}")


class CycleFailed(SyntropyError):
    code = "cycle_failed"


class RuntimeQueryError(SyntropyError):
    """The execution runtime could not be queried (tool missing, timeout, daemon down)."""

    code = "runtime_unavailable"
