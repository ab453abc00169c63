"""Durable task ledger.

Callers read the whole state, mutate an in-memory copy and write the whole
state back. Writes go to a temp file first and are renamed over the ledger so a
crash mid-write never leaves a torn file behind.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from .errors import LedgerCorrupt, TaskNotFound
from .io_utils import _atomic_write_text
from .models import LedgerState, Task


class TaskLedger:
    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> LedgerState:
        """Return the persisted state, or an empty state when no ledger exists yet.

        Raises:
            LedgerCorrupt: The file exists but is not a valid ledger. The file is
                left untouched so it can be inspected.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return LedgerState()
        except OSError as exc:
            raise LedgerCorrupt(self.path, f"{exc.__class__.__name__}: {exc}") from exc
        if not raw.strip():
            return LedgerState()
        try:
            return LedgerState.model_validate_json(raw)
        except ValidationError as exc:
            raise LedgerCorrupt(self.path, _summarize_validation(exc)) from exc

    def write(self, state: LedgerState) -> None:
        """Replace the ledger with *state* atomically.

        Args:
            state: Full ledger state; partial updates are not supported.
        """
        payload = state.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        _atomic_write_text(self.path, payload + "\n")
        logger.debug("Wrote ledger with {} tasks to {}", len(state.tasks), self.path)

    def get(self, task_id: str) -> Task:
        """Return the task with *task_id*.

        Raises:
            TaskNotFound: No such task in the ledger.
        """
        task = self.read().find(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def append(self, task: Task) -> LedgerState:
        """Append *task* and persist.

        Args:
            task: New task record.

        Returns:
            The state that was written.
        """
        state = self.read()
        state.tasks.append(task)
        self.write(state)
        return state


def _summarize_validation(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    more = f" (+{len(errors) - 1} more)" if len(errors) > 1 else ""
    return f"{location or '<root>'}: {first.get('msg', 'invalid')}{more}"
