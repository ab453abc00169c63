"""Self-rebuild coordinator.

The only sanctioned way for the orchestrator to replace its own running
instance. State is written to the continuity record before the rebuild unit is
launched, so the next instance can pick up where this one stopped.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .audit import AuditTrail
from .constants import (
    CONTINUITY_FILE,
    DEFAULT_HEALTH_ATTEMPTS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_HEALTH_URL,
    DEFAULT_SELF_SERVICE,
)
from .continuity import ContinuityRecord
from .errors import SpawnFailure
from .launcher import SpawnResult, WorkerLauncher
from .models import Priority, TaskType
from .utils import _utc_now

_GIT_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")


def build_rebuild_instruction(
    reason: str,
    *,
    host_root: str,
    ref: Optional[str] = None,
    service: str = DEFAULT_SELF_SERVICE,
    health_url: str = DEFAULT_HEALTH_URL,
    attempts: int = DEFAULT_HEALTH_ATTEMPTS,
    interval_seconds: int = DEFAULT_HEALTH_INTERVAL_SECONDS,
) -> str:
    compose = f"docker compose --project-directory {host_root}"
    sync = f"git checkout {ref}" if ref else "git pull origin main"
    budget_minutes = attempts * interval_seconds / 60
    return "\n".join(
        [
            "SELF-REBUILD PROCEDURE",
            "======================",
            f"Reason: {reason}",
            "",
            "Steps:",
            f"1. cd {host_root} && git fetch origin",
            f"2. {sync}",
            f"3. {compose} build {service}",
            f"4. {compose} up -d {service}",
            f"5. Wait up to {budget_minutes:g} minutes for the health check:",
            f"   syntropy-core health-wait --url {health_url} --attempts {attempts} --interval {interval_seconds}",
            "   Healthy means the endpoint answered with status \"ok\".",
            "6. If healthy: exit 0",
            "7. If NOT healthy:",
            f"   - {compose} logs {service} --tail=100",
            "   - Report that the rebuild failed and manual intervention is needed.",
            "   - exit 1",
            "",
            f"The new instance reads {CONTINUITY_FILE} to restore context.",
        ]
    )


class SelfRebuildCoordinator:
    def __init__(
        self,
        continuity: ContinuityRecord,
        launcher: WorkerLauncher,
        *,
        audit: AuditTrail,
        host_root: str,
        service: str = DEFAULT_SELF_SERVICE,
        health_url: str = DEFAULT_HEALTH_URL,
        health_attempts: int = DEFAULT_HEALTH_ATTEMPTS,
        health_interval_seconds: int = DEFAULT_HEALTH_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.continuity = continuity
        self.launcher = launcher
        self.audit = audit
        self.host_root = host_root
        self.service = service
        self.health_url = health_url
        self.health_attempts = health_attempts
        self.health_interval_seconds = health_interval_seconds
        self._clock = clock

    def schedule_rebuild(self, reason: str, ref: Optional[str] = None) -> SpawnResult:
        if ref is not None and not _GIT_REF_RE.match(ref):
            raise SpawnFailure(f"Invalid git ref: {ref!r}")
        now = self._clock()
        fields = [("Time", now.isoformat()), ("Reason", reason)]
        if ref:
            fields.append(("Git Ref", ref))
        self.continuity.prepend_note("Self-Rebuild Scheduled", fields, footer="Previous context preserved below.")
        self.audit.record("rebuild_scheduled", reason=reason, gitRef=ref)

        instruction = build_rebuild_instruction(
            reason,
            host_root=self.host_root,
            ref=ref,
            service=self.service,
            health_url=self.health_url,
            attempts=self.health_attempts,
            interval_seconds=self.health_interval_seconds,
        )
        context = f"Self-rebuild triggered at {now.isoformat()}. Reason: {reason}"
        logger.warning("Scheduling self-rebuild of {}: {}", self.service, reason)
        return self.launcher.spawn(instruction, context, Priority.HIGH, task_type=TaskType.SELF_REBUILD)
