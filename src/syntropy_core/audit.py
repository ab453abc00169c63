"""Append-only audit trail kept to a bounded number of entries."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .constants import DEFAULT_MAX_AUDIT_ENTRIES
from .io_utils import _append_jsonl, _trim_lines
from .utils import _utc_now


class AuditTrail:
    """JSONL audit log; oldest entries are dropped once ``max_entries`` is exceeded.

    Recording never raises. A broken audit file must not take a cycle down with it.
    """

    def __init__(
        self,
        path: Path,
        max_entries: int = DEFAULT_MAX_AUDIT_ENTRIES,
        clock: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.path = path
        self.max_entries = max_entries
        self._clock = clock or _utc_now

    def record(self, event_type: str, **fields: Any) -> None:
        """Append one entry and prune the oldest beyond ``max_entries``.

        Args:
            event_type: Value of the entry's ``type`` key.
            **fields: Extra JSON-serializable fields, camelCase by convention.
        """
        entry = {"timestamp": self._clock().isoformat(), "type": event_type, **fields}
        try:
            _append_jsonl(self.path, entry)
            _trim_lines(self.path, self.max_entries)
        except OSError as exc:
            logger.warning("Failed to append audit entry {}: {}", event_type, exc)

    def entries(self, event_type: Optional[str] = None) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        result: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping unreadable audit line in {}", self.path)
                continue
            if event_type is None or entry.get("type") == event_type:
                result.append(entry)
        return result
