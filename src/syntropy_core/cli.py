from __future__ import annotations

import argparse
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .constants import (
    DEFAULT_HEALTH_ATTEMPTS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    ENV_HOST_ROOT,
    ENV_TASK_TYPE,
    EXIT_GUARDRAIL,
)
from .errors import ConfigError, HealthCheckTimeout
from .guardrails import check_command
from .health import wait_for_healthy
from .logging_utils import configure_logging, pretty
from .models import TaskStatus, TaskType
from .service import Orchestrator
from .worker_entry import run_worker


def _resolve_root(root: Optional[str]) -> Optional[Path]:
    return Path(root).expanduser().resolve() if root else None


def _emit(payload: dict[str, Any]) -> int:
    sys.stdout.write(pretty(payload) + "\n")
    return 1 if "error" in payload else 0


def _ctx(args: argparse.Namespace) -> Orchestrator:
    return Orchestrator.from_root(_resolve_root(args.root))


def _run(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    scheduler = orchestrator.build_scheduler()

    def _handle_stop(signum: int, _frame: Any) -> None:
        logger.info("Received signal {}; stopping after the current cycle", signum)
        scheduler.stop()

    signal.signal(signal.SIGTERM, _handle_stop)
    signal.signal(signal.SIGINT, _handle_stop)
    logger.info(
        "Starting control loop (min {}m, max {}m)",
        round(scheduler.min_interval / 60),
        round(scheduler.max_interval / 60),
    )
    cycles = scheduler.run_forever(max_cycles=args.max_cycles)
    return _emit({"cycles": cycles, "consecutiveFailures": scheduler.consecutive_failures})


def _cycle(args: argparse.Namespace) -> int:
    outcome = _ctx(args).build_scheduler().run_cycle()
    _emit(outcome.to_dict())
    return 0 if outcome.ok else 1


def _spawn(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).spawn_worker(args.instruction, args.context, args.priority))


def _status(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).check_status(args.task_id))


def _list(args: argparse.Namespace) -> int:
    payload = _ctx(args).list_tasks(args.status, args.limit)
    if not args.table or "error" in payload:
        return _emit(payload)
    table = Table(title=f"Tasks ({payload['filtered']} of {payload['total']})")
    for column in ("ID", "Status", "Type", "Created", "Exit", "Task"):
        table.add_column(column)
    for task in payload["tasks"]:
        table.add_row(
            task["id"][:8],
            task["status"],
            task["type"],
            task["createdAt"],
            "" if task["exitCode"] is None else str(task["exitCode"]),
            task["taskPreview"],
        )
    Console().print(table)
    return 0


def _logs(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).read_worker_logs(args.task_id, args.lines))


def _sweep(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).sweep(args.retention_days))


def _rebuild(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).schedule_rebuild(args.reason, args.ref))


def _schedule_next(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).schedule_next_run(args.minutes, args.reason))


def _diagnostics(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).worker_diagnostics())


def _worker_entry(args: argparse.Namespace) -> int:
    settings = load_settings(_resolve_root(args.root))
    return run_worker(settings, args.task_id)


def _guard(args: argparse.Namespace) -> int:
    command = list(args.guarded)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        sys.stderr.write("guard: no command given\n")
        return 2
    raw_type = args.task_type or os.environ.get(ENV_TASK_TYPE, TaskType.NORMAL.value)
    try:
        task_type = TaskType(raw_type)
    except ValueError:
        sys.stderr.write(f"guard: unknown task type {raw_type!r}\n")
        return 2
    verdict = check_command(" ".join(command), task_type, host_root=os.environ.get(ENV_HOST_ROOT))
    sys.stdout.write(pretty(verdict.to_dict()) + "\n")
    return 0 if verdict.allowed else EXIT_GUARDRAIL


def _health_wait(args: argparse.Namespace) -> int:
    url = args.url or load_settings(_resolve_root(args.root)).rebuild.health_url
    try:
        attempt = wait_for_healthy(url, attempts=args.attempts, interval_seconds=args.interval)
    except HealthCheckTimeout as exc:
        return _emit(exc.to_payload())
    return _emit({"healthy": True, "url": url, "attempts": attempt})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Syntropy core - single-flight worker orchestration")
    parser.add_argument("--root", default=None, help="Orchestrator root directory (default: $SYNTROPY_ROOT or cwd)")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file (rotated at 10 MB)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the scheduled control loop")
    run.add_argument("--max-cycles", type=int, default=None)
    run.set_defaults(func=_run)

    cycle = subparsers.add_parser("cycle", help="Run a single cycle now")
    cycle.set_defaults(func=_cycle)

    spawn = subparsers.add_parser("spawn", help="Spawn a worker for an instruction")
    spawn.add_argument("instruction")
    spawn.add_argument("--context", default=None)
    spawn.add_argument("--priority", default="normal", choices=["low", "normal", "high"])
    spawn.set_defaults(func=_spawn)

    status = subparsers.add_parser("status", help="Reconcile and show a task")
    status.add_argument("task_id")
    status.set_defaults(func=_status)

    tlist = subparsers.add_parser("list", help="List tasks, newest first")
    tlist.add_argument("--status", default="all", choices=["all", *(s.value for s in TaskStatus)])
    tlist.add_argument("--limit", type=int, default=10)
    tlist.add_argument("--table", action="store_true", help="Render a table instead of JSON")
    tlist.set_defaults(func=_list)

    logs = subparsers.add_parser("logs", help="Tail a worker log ('live' for the shared log)")
    logs.add_argument("task_id")
    logs.add_argument("--lines", type=int, default=200)
    logs.set_defaults(func=_logs)

    sweep = subparsers.add_parser("sweep", help="Abort orphaned tasks and prune expired ones")
    sweep.add_argument("--retention-days", type=float, default=None)
    sweep.set_defaults(func=_sweep)

    rebuild = subparsers.add_parser("rebuild", help="Schedule a self-rebuild")
    rebuild.add_argument("reason")
    rebuild.add_argument("--ref", default=None, help="Git ref to check out (default: pull main)")
    rebuild.set_defaults(func=_rebuild)

    schedule = subparsers.add_parser("schedule-next", help="Choose when the next cycle runs")
    schedule.add_argument("minutes", type=float)
    schedule.add_argument("reason")
    schedule.set_defaults(func=_schedule_next)

    diagnostics = subparsers.add_parser("diagnostics", help="Show active and healing workers")
    diagnostics.set_defaults(func=_diagnostics)

    entry = subparsers.add_parser("worker-entry", help="Run the task named by $TASK_ID (inside a unit)")
    entry.add_argument("--task-id", default=None)
    entry.set_defaults(func=_worker_entry)

    guard = subparsers.add_parser("guard", help="Check a command against the worker guardrails")
    guard.add_argument("--task-type", default=None, choices=[t.value for t in TaskType])
    guard.add_argument("guarded", nargs=argparse.REMAINDER)
    guard.set_defaults(func=_guard)

    health = subparsers.add_parser("health-wait", help="Poll a health endpoint until it reports ok")
    health.add_argument("--url", default=None)
    health.add_argument("--attempts", type=int, default=DEFAULT_HEALTH_ATTEMPTS)
    health.add_argument("--interval", type=float, default=DEFAULT_HEALTH_INTERVAL_SECONDS)
    health.set_defaults(func=_health_wait)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, Path(args.log_file) if args.log_file else None)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except ConfigError as exc:
        sys.stderr.write(f"Configuration error: {exc}\n")
        return 2
