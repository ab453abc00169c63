"""Orchestrator facade: wires the components and exposes the operations the
decision logic and the command line call.

Per-task errors come back as ``{"error": ...}`` payloads instead of exceptions,
so neither the decision logic nor the control loop is taken down by them.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .audit import AuditTrail
from .config import Settings, load_settings
from .constants import ENV_HOST_ROOT, ENV_ROOT
from .continuity import ContinuityRecord
from .errors import CycleFailed, SyntropyError
from .events import WorkerEventLog
from .gate import ConcurrencyGate
from .launcher import WorkerLauncher
from .ledger import TaskLedger
from .logging_utils import preview
from .models import Priority, TaskStatus
from .monitor import LifecycleMonitor
from .reaper import Reaper
from .rebuild import SelfRebuildCoordinator
from .runtime import DockerComposeRuntime, ExecutionRuntime
from .scheduler import CycleScheduler, ScheduleStore
from .utils import _utc_now


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        runtime: Optional[ExecutionRuntime] = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.settings = settings
        paths = settings.paths
        worker = settings.worker
        self.runtime = runtime or DockerComposeRuntime(
            paths.root,
            service=worker.compose_service,
            profile=worker.compose_profile,
            docker_bin=worker.docker_bin,
            timeout_seconds=worker.status_timeout_seconds,
        )
        self.clock = clock
        self.audit = AuditTrail(paths.audit, worker.max_audit_entries, clock=clock)
        self.ledger = TaskLedger(paths.ledger)
        self.events = WorkerEventLog(
            paths.events,
            healing_threshold_seconds=worker.healing_threshold_seconds,
            clock=clock,
        )
        self.gate = ConcurrencyGate(paths.lock, self.runtime, clock=clock)
        self.monitor = LifecycleMonitor(
            self.ledger,
            self.runtime,
            output_path=paths.output_path,
            audit=self.audit,
            events=self.events,
            tail_chars=worker.output_tail_chars,
            spawn_grace_seconds=worker.spawn_grace_seconds,
            clock=clock,
        )
        self.launcher = WorkerLauncher(
            self.ledger,
            self.gate,
            self.runtime,
            host_root=paths.host_root,
            audit=self.audit,
            events=self.events,
            monitor=self.monitor,
            cooldown_seconds=worker.spawn_cooldown_seconds,
            clock=clock,
        )
        self.reaper = Reaper(
            self.ledger,
            self.runtime,
            data_dir=paths.data_dir,
            audit=self.audit,
            events=self.events,
            clock=clock,
        )
        self.continuity = ContinuityRecord(paths.continuity, self.audit)
        self.rebuilder = SelfRebuildCoordinator(
            self.continuity,
            self.launcher,
            audit=self.audit,
            host_root=paths.host_root,
            service=worker.self_service,
            health_url=settings.rebuild.health_url,
            health_attempts=settings.rebuild.health_attempts,
            health_interval_seconds=settings.rebuild.health_interval_seconds,
            clock=clock,
        )
        self.schedule = ScheduleStore(paths.schedule, self.audit, clock=clock)

    @classmethod
    def from_root(cls, root: Optional[Path] = None, runtime: Optional[ExecutionRuntime] = None) -> "Orchestrator":
        return cls(load_settings(root), runtime)

    def _failure(self, operation: str, exc: SyntropyError) -> dict[str, Any]:
        logger.warning("{} failed: {}", operation, exc)
        return exc.to_payload()

    def spawn_worker(self, instruction: str, context: Optional[str] = None, priority: str = "normal") -> dict[str, Any]:
        try:
            level = Priority(priority)
        except ValueError:
            return {"error": f"Unknown priority {priority!r}", "code": "invalid_argument"}
        try:
            result = self.launcher.spawn(instruction, context, level)
        except SyntropyError as exc:
            return self._failure("spawn_worker", exc)
        return result.to_dict()

    def check_status(self, task_id: str) -> dict[str, Any]:
        try:
            task = self.monitor.refresh(task_id)
        except SyntropyError as exc:
            return self._failure("check_status", exc)
        payload = task.to_json_dict()
        payload["unitName"] = task.unit_name
        return payload

    def list_tasks(self, status: str = "all", limit: int = 10) -> dict[str, Any]:
        try:
            state = self.ledger.read()
        except SyntropyError as exc:
            return self._failure("list_tasks", exc)
        tasks = state.tasks
        if status != "all":
            try:
                wanted = TaskStatus(status)
            except ValueError:
                return {"error": f"Unknown status {status!r}", "code": "invalid_argument"}
            tasks = [task for task in tasks if task.status is wanted]
        tasks = sorted(tasks, key=lambda task: task.created_at, reverse=True)[: max(limit, 0)]
        return {
            "total": len(state.tasks),
            "filtered": len(tasks),
            "tasks": [
                {
                    "id": task.id,
                    "status": task.status.value,
                    "type": task.type.value,
                    "createdAt": task.created_at.isoformat(),
                    "completedAt": task.completed_at.isoformat() if task.completed_at else None,
                    "exitCode": task.exit_code,
                    "taskPreview": preview(task.payload.instruction, 100),
                }
                for task in tasks
            ],
        }

    def read_worker_logs(self, task_id: str, lines: int = 200) -> dict[str, Any]:
        """Tail the per-unit live log; ``live`` reads the shared log.

        Falls back to the output artifact when the unit log is gone.
        """
        paths = self.settings.paths
        if task_id == "live":
            candidates = [paths.live_log]
        else:
            candidates = [paths.worker_log_path(task_id), paths.output_path(task_id)]
        for path in candidates:
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                continue
            all_lines = content.splitlines()
            tail = all_lines[-lines:] if lines > 0 else []
            return {
                "logPath": str(path),
                "totalLines": len(all_lines),
                "returnedLines": len(tail),
                "content": "\n".join(tail),
            }
        return {"error": f"No log found for {task_id}", "code": "log_not_found"}

    def sweep(self, retention_days: Optional[float] = None) -> dict[str, Any]:
        days = self.settings.worker.retention_days if retention_days is None else retention_days
        try:
            result = self.reaper.sweep(days)
        except SyntropyError as exc:
            return self._failure("sweep", exc)
        return {"success": True, **result.to_dict()}

    def schedule_rebuild(self, reason: str, ref: Optional[str] = None) -> dict[str, Any]:
        try:
            result = self.rebuilder.schedule_rebuild(reason, ref)
        except SyntropyError as exc:
            return self._failure("schedule_rebuild", exc)
        payload = result.to_dict()
        payload["message"] = (
            f"Self-rebuild scheduled. Task ID: {result.task_id[:8]}. "
            "State was saved to the continuity record; this instance will be replaced."
        )
        return payload

    def schedule_next_run(self, delay_minutes: float, reason: str) -> dict[str, Any]:
        minutes, record = self.schedule.schedule_in_minutes(delay_minutes, reason)
        return {
            "success": True,
            "scheduledIn": f"{minutes:g} minutes",
            "nextRunAt": record.next_run_at.isoformat(),
            "reason": reason,
        }

    def worker_diagnostics(self) -> dict[str, Any]:
        active, healing = self.events.detect_healing()
        return {
            "active": [event.to_json_dict() for event in active],
            "healing": [event.to_json_dict() for event in healing],
        }

    def read_continuity(self) -> dict[str, Any]:
        return self.continuity.read().to_dict()

    def update_continuity(self, content: str, checksum: str) -> dict[str, Any]:
        try:
            snapshot = self.continuity.update(content, checksum)
        except SyntropyError as exc:
            return self._failure("update_continuity", exc)
        return {"success": True, "contextChecksum": snapshot.checksum}

    def run_cycle(self) -> None:
        """One cycle: reconcile open tasks, sweep, then hand over to the decision command.

        Raises:
            CycleFailed: The decision command exited non-zero.
        """
        finished = self.monitor.refresh_open()
        if finished:
            logger.info("Reconciled {} finished task(s)", len(finished))
        self.reaper.sweep(self.settings.worker.retention_days)

        command = self.settings.scheduler.decision_command
        if not command:
            logger.info("No decision command configured; housekeeping only")
            return
        env = dict(os.environ)
        env.update({ENV_ROOT: str(self.settings.paths.root), ENV_HOST_ROOT: self.settings.paths.host_root})
        try:
            result = subprocess.run(shlex.split(command), cwd=self.settings.paths.root, env=env)
        except OSError as exc:
            raise CycleFailed(f"Decision command could not start: {exc}") from exc
        if result.returncode != 0:
            raise CycleFailed(f"Decision command exited with {result.returncode}")

    def build_scheduler(self) -> CycleScheduler:
        cfg = self.settings.scheduler
        return CycleScheduler(
            self.run_cycle,
            self.schedule,
            self.audit,
            min_interval_seconds=cfg.min_interval_seconds,
            max_interval_seconds=cfg.max_interval_seconds,
            default_interval_seconds=cfg.default_interval_seconds,
            max_consecutive_failures=cfg.max_consecutive_failures,
            circuit_breaker_delay_seconds=cfg.circuit_breaker_delay_seconds,
            clock=self.clock,
        )
