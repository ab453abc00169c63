"""Single-flight concurrency gate over worker execution.

Known limitation: stale-lock healing and the exclusive create are two separate
steps. A second caller can pass the liveness check in between, and a unit can
start after the check. Both callers still go through the exclusive create, so
at most one of them acquires; the window only affects which one wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from loguru import logger
from pydantic import ValidationError

from .constants import WORKER_UNIT_PREFIX
from .errors import RuntimeQueryError
from .io_utils import _atomic_write_text, _exclusive_write_json, _unlink_best_effort
from .models import LockRecord
from .runtime import ExecutionRuntime
from .utils import _utc_now


@dataclass(frozen=True)
class Acquired:
    task_id: str


@dataclass(frozen=True)
class Rejected:
    reason: str
    running_task_id: Optional[str] = None


class ConcurrencyGate:
    def __init__(
        self,
        lock_path: Path,
        runtime: ExecutionRuntime,
        *,
        unit_prefix: str = WORKER_UNIT_PREFIX,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.lock_path = lock_path
        self.runtime = runtime
        self.unit_prefix = unit_prefix
        self._clock = clock

    def read_lock(self) -> Optional[LockRecord]:
        """Return the current lock, or None when absent or unreadable."""
        try:
            raw = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("Worker lock {} is unreadable", self.lock_path)
            return None

    def _live_units(self) -> Optional[list[str]]:
        try:
            return self.runtime.list_running(self.unit_prefix)
        except RuntimeQueryError as exc:
            logger.warning("Cannot list live worker units: {}", exc)
            return None

    def acquire(self, task_id: str) -> Acquired | Rejected:
        """Take the single-flight lock for *task_id*.

        A lock left behind with no live worker units is removed first. When
        liveness cannot be determined the lock is kept.

        Args:
            task_id: Id recorded in the lock; may be a placeholder to retarget later.

        Returns:
            `Acquired` on success, otherwise `Rejected` with the reason and the
            task id the existing lock names, if readable.
        """
        if self.lock_path.exists():
            live = self._live_units()
            if live == []:
                stale = self.read_lock()
                logger.info(
                    "Removing stale worker lock (task {}) with no live units",
                    stale.task_id if stale else "unknown",
                )
                _unlink_best_effort(self.lock_path)

        record = LockRecord(task_id=task_id, created_at=self._clock())
        if _exclusive_write_json(self.lock_path, record.to_json_dict()):
            logger.debug("Acquired worker lock for {}", task_id)
            return Acquired(task_id)

        live = self._live_units() or []
        lock = self.read_lock()
        running_task_id = lock.task_id if lock is not None else None
        if live:
            reason = f"Worker already running: {', '.join(live)}"
        else:
            reason = "Worker lock already held"
        return Rejected(reason=reason, running_task_id=running_task_id)

    def retarget(self, task_id: str) -> None:
        """Point the held lock at the real task id once the task exists."""
        record = LockRecord(task_id=task_id, created_at=self._clock())
        _atomic_write_text(self.lock_path, record.model_dump_json(by_alias=True, indent=2))

    def release(self, task_id: str) -> bool:
        """Remove the lock if it names *task_id*. Returns True when removed."""
        return release_lock(self.lock_path, task_id)


def release_lock(lock_path: Path, task_id: str) -> bool:
    """Remove the lock only if it still names *task_id*."""
    try:
        lock = LockRecord.model_validate_json(lock_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return False
    except ValidationError:
        logger.warning("Worker lock {} is unreadable; leaving it", lock_path)
        return False
    if lock.task_id != task_id:
        logger.debug("Lock names {}, not {}; leaving it", lock.task_id, task_id)
        return False
    return _unlink_best_effort(lock_path)
