"""Provide utility helpers for timestamps, identifiers and checksums."""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _utc_now().isoformat()


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _new_task_id() -> str:
    return str(uuid.uuid4())


def _new_event_id(now: datetime) -> str:
    return f"evt-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:7]}"


def _content_checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:12]
