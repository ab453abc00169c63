"""Entry point executed inside a worker unit.

Marks the task running, runs the agent command with a hard timeout and tees its
output to the artifact and logs. Terminal classification is left to the
lifecycle monitor; the unit's exit code is what it reads. The lock is released
on the way out only if it still names this task.
"""

from __future__ import annotations

import os
import shlex
import socket
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TextIO

from loguru import logger

from .config import Settings
from .constants import (
    ENV_HOST_ROOT,
    ENV_TASK_ID,
    ENV_TASK_TYPE,
    EXIT_GUARDRAIL,
    EXIT_TASK_MISSING,
    EXIT_TIMEOUT,
)
from .errors import LedgerCorrupt, TaskNotFound
from .gate import release_lock
from .guardrails import screen_instruction
from .ledger import TaskLedger
from .models import Task, TaskStatus, TaskType
from .utils import _utc_now

_KILL_AFTER_SECONDS = 60


@dataclass(frozen=True)
class AgentRun:
    exit_code: int
    timed_out: bool
    runtime_seconds: int


def build_briefing(task: Task, *, host_root: str, self_service: str) -> str:
    compose = f"docker compose --project-directory {host_root}"
    lines = [
        "=== WORKER TASK BRIEFING ===",
        "",
        "CONTEXT:",
        "- You are a worker unit started by the orchestrator.",
        "- You CAN modify code, run tests and restart services.",
    ]
    if task.type is TaskType.SELF_REBUILD:
        lines.append(f"- This is a deliberate self-rebuild task: rebuilding '{self_service}' is expected.")
    else:
        lines.append(f"- You MUST NOT rebuild the '{self_service}' service; it is your parent.")
    lines += [
        "",
        "WORKING ROOT RULE:",
        "Every docker compose command MUST name the host project directory:",
        f"  {compose} <command>",
        "Relative volume paths otherwise resolve against this unit, not the host.",
        "",
        "GUARDRAILS:",
        f"  ALLOWED:   {compose} up -d --build <service>",
        f"  ALLOWED:   {compose} restart <service>",
        "  FORBIDDEN: docker compose without --project-directory",
    ]
    if task.type is TaskType.NORMAL:
        lines += [
            f"  FORBIDDEN: docker compose up -d --build {self_service}",
            "  FORBIDDEN: docker compose up -d --build (rebuilds everything)",
        ]
    lines += [
        "Check a command first with: syntropy-core guard -- <command>",
        "",
        "YOUR TASK:",
        task.payload.instruction,
    ]
    if task.payload.context:
        lines += ["", "ADDITIONAL CONTEXT:", task.payload.context]
    lines += [
        "",
        "When done, end with a '## Summary' section covering:",
        "1. What you did",
        "2. What changed",
        "3. Any remaining issues",
    ]
    return "\n".join(lines)


def _tee_pipe(pipe: Any, sinks: list[TextIO]) -> None:
    for line in iter(pipe.readline, ""):
        for sink in sinks:
            sink.write(line)
            sink.flush()
    pipe.close()


def run_agent(
    command: str,
    prompt: str,
    cwd: Path,
    sinks: list[TextIO],
    *,
    timeout_seconds: int,
    env: Optional[dict[str, str]] = None,
) -> AgentRun:
    """Run the agent, streaming combined stdout/stderr into every sink.

    The prompt is substituted after splitting so quotes and newlines in it
    survive intact.

    Args:
        command: Agent command line containing a ``{prompt}`` placeholder.
        prompt: Briefing passed in place of the placeholder.
        cwd: Working directory for the agent.
        sinks: Text streams that each receive every output line.
        timeout_seconds: Hard limit; the agent is terminated, then killed.
        env: Environment for the agent process.

    Returns:
        Exit code (124 on timeout), whether it timed out, and its runtime.
    """
    if "{prompt}" not in command:
        raise ValueError("Agent command must include a {prompt} placeholder")
    parts = [part.replace("{prompt}", prompt) for part in shlex.split(command)]

    start = time.monotonic()
    process = subprocess.Popen(
        parts,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
        env=env,
    )
    reader = threading.Thread(target=_tee_pipe, args=(process.stdout, sinks), daemon=True)
    reader.start()

    timed_out = False
    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        process.terminate()
        try:
            process.wait(timeout=_KILL_AFTER_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
    reader.join(timeout=5)

    exit_code = EXIT_TIMEOUT if timed_out else process.returncode
    return AgentRun(exit_code=exit_code, timed_out=timed_out, runtime_seconds=int(time.monotonic() - start))


def mark_running(ledger: TaskLedger, task_id: str, worker_id: str, now: datetime) -> Task:
    """Transition a pending task to running.

    Raises:
        TaskNotFound: The task is not in the ledger.
        ValueError: The task is not pending any more, or another task is
            still marked running.
    """
    state = ledger.read()
    task = state.find(task_id)
    if task is None:
        raise TaskNotFound(task_id)
    if task.status is not TaskStatus.PENDING:
        raise ValueError(f"Task {task_id} is {task.status.value}, expected pending")
    running = state.running()
    if running:
        raise ValueError(f"Task {running[0].id} is still running")
    task.status = TaskStatus.RUNNING
    task.started_at = now
    task.worker_id = worker_id
    task.attempts += 1
    ledger.write(state)
    return task


def _banner(lines: list[str]) -> str:
    rule = "=" * 40
    return "\n".join([rule, *lines, rule, ""]) + "\n"


def run_worker(
    settings: Settings,
    task_id: Optional[str] = None,
    *,
    clock: Callable[[], datetime] = _utc_now,
    worker_id: Optional[str] = None,
    stdout: TextIO = sys.stdout,
) -> int:
    """Execute the task named by ``$TASK_ID`` (or *task_id*) and return the unit exit code."""
    paths = settings.paths
    task_id = task_id or os.environ.get(ENV_TASK_ID, "")
    if not task_id:
        logger.error("{} environment variable not set", ENV_TASK_ID)
        return EXIT_TASK_MISSING
    worker_id = worker_id or socket.gethostname()
    ledger = TaskLedger(paths.ledger)

    try:
        try:
            task = mark_running(ledger, task_id, worker_id, clock())
        except (TaskNotFound, LedgerCorrupt, ValueError) as exc:
            logger.error("Cannot start task {}: {}", task_id, exc)
            return EXIT_TASK_MISSING
        logger.info("Task {} ({}) running on {}", task.id, task.type.value, worker_id)

        output_path = paths.output_path(task.id)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        paths.logs_dir.mkdir(parents=True, exist_ok=True)

        blocked = screen_instruction(task.payload.instruction, task.type, self_service=settings.worker.self_service)
        if blocked:
            message = "\n".join(f"GUARDRAIL: {v.reason}: {v.command.strip()}" for v in blocked)
            output_path.write_text(message + "\n", encoding="utf-8")
            logger.error("Task {} blocked by guardrails:\n{}", task.id, message)
            return EXIT_GUARDRAIL

        briefing = build_briefing(task, host_root=paths.host_root, self_service=settings.worker.self_service)
        timeout = settings.worker.timeout_seconds
        env = dict(os.environ)
        env.update({ENV_TASK_ID: task.id, ENV_TASK_TYPE: task.type.value, ENV_HOST_ROOT: paths.host_root})

        with open(output_path, "w", encoding="utf-8") as output, open(
            paths.worker_log_path(task.id), "w", encoding="utf-8"
        ) as unit_log, open(paths.live_log, "a", encoding="utf-8") as live_log:
            header = _banner(
                [f"WORKER TASK: {task.id}", f"STARTED: {clock().isoformat()}", f"TIMEOUT: {timeout}s"]
            )
            unit_log.write(header)
            live_log.write(header)
            result = run_agent(
                settings.worker.agent_command,
                briefing,
                paths.root,
                [output, unit_log, live_log, stdout],
                timeout_seconds=timeout,
                env=env,
            )
            if result.timed_out:
                output.write(f"\nTIMEOUT: Task exceeded {timeout}s limit\n")
                logger.warning("Task {} exceeded {}s limit", task.id, timeout)
            footer = _banner([f"WORKER COMPLETED: {clock().isoformat()}", f"EXIT CODE: {result.exit_code}"])
            unit_log.write("\n" + footer)
            live_log.write("\n" + footer)

        logger.info("Task {} finished with exit code {} after {}s", task.id, result.exit_code, result.runtime_seconds)
        return result.exit_code
    finally:
        release_lock(paths.lock, task_id)
