"""Continuity record: the briefing a fresh orchestrator instance resumes from."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .audit import AuditTrail
from .errors import StaleContext
from .io_utils import _atomic_write_text
from .utils import _content_checksum


@dataclass(frozen=True)
class ContinuitySnapshot:
    content: str
    checksum: str
    exists: bool = True

    def to_dict(self) -> dict[str, object]:
        return {"content": self.content, "contextChecksum": self.checksum, "exists": self.exists}


class ContinuityRecord:
    def __init__(self, path: Path, audit: Optional[AuditTrail] = None) -> None:
        self.path = path
        self.audit = audit

    def read(self) -> ContinuitySnapshot:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ContinuitySnapshot(content="", checksum=_content_checksum(""), exists=False)
        return ContinuitySnapshot(content=content, checksum=_content_checksum(content))

    def update(self, content: str, expected_checksum: str) -> ContinuitySnapshot:
        """Replace the record, but only if it has not changed since *expected_checksum* was read.

        Raises:
            StaleContext: The record on disk no longer matches; nothing is written.
        """
        current = self.read()
        if current.checksum != expected_checksum:
            if self.audit is not None:
                self.audit.record("continuity_rejected", expected=expected_checksum, actual=current.checksum)
            raise StaleContext(expected_checksum, current.checksum)
        _atomic_write_text(self.path, content)
        if self.audit is not None:
            self.audit.record("continuity_update", contentSnippet=content[:500])
        return ContinuitySnapshot(content=content, checksum=_content_checksum(content))

    def prepend_note(self, title: str, fields: list[tuple[str, str]], footer: str = "") -> ContinuitySnapshot:
        """Put a timestamped note above the existing content, keeping all of it."""
        previous = self.read().content
        lines = [f"## {title}", ""]
        lines += [f"**{label}**: {value}" for label, value in fields]
        if footer:
            lines += ["", footer]
        lines += ["", "---", "", previous]
        content = "\n".join(lines)
        _atomic_write_text(self.path, content)
        logger.info("Prepended '{}' note to {}", title, self.path)
        return ContinuitySnapshot(content=content, checksum=_content_checksum(content))
