"""Forbidden-operation rules applied inside worker units.

Two rules exist:

* ``missing_working_root``: a compose command that touches shared
  infrastructure without ``--project-directory`` resolves volume paths against
  the unit's own view of the filesystem. Blocked for every task type.
* ``self_rebuild``: rebuilding the orchestrator's own service from a normal task
  would kill the parent. Only ``self-rebuild`` tasks may do it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .constants import DEFAULT_SELF_SERVICE
from .models import TaskType

_COMPOSE_VERB = re.compile(r"docker[ -]compose\b.*\b(up|down|restart|build|logs|exec|run)\b", re.IGNORECASE)
_PROJECT_DIRECTORY = re.compile(r"--project-directory\b", re.IGNORECASE)
_SEGMENT_SPLIT = re.compile(r"&&|\|\||;|\||`|\$\(")

RULE_MISSING_ROOT = "missing_working_root"
RULE_SELF_REBUILD = "self_rebuild"


def _self_target_patterns(service: str) -> list[re.Pattern[str]]:
    svc = re.escape(service)
    raw = [
        rf"docker compose.*\b{svc}\b.*\bbuild\b",
        rf"docker-compose.*\b{svc}\b.*\bbuild\b",
        rf"docker[ -]compose\b.*\bbuild\b.*\b{svc}\b",
        rf"docker build.*\b{svc}\b",
        rf"docker[ -]compose\b.*\bup\b.*--build\b.*\b{svc}\b",
        # rebuild-all without a named service also rebuilds the orchestrator
        r"docker[ -]compose\b.*\bup\b.*--build\s*$",
    ]
    return [re.compile(pattern, re.IGNORECASE) for pattern in raw]


@dataclass(frozen=True)
class GuardrailVerdict:
    allowed: bool
    command: str
    rule: Optional[str] = None
    reason: str = ""
    hint: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "command": self.command,
            "rule": self.rule,
            "reason": self.reason,
            "hint": self.hint,
        }


def _segments(command: str) -> list[str]:
    return [part.strip() for part in _SEGMENT_SPLIT.split(command) if part.strip()]


def check_command(
    command: str,
    task_type: TaskType,
    *,
    self_service: str = DEFAULT_SELF_SERVICE,
    host_root: Optional[str] = None,
) -> GuardrailVerdict:
    """Decide whether *command* may run inside a unit executing a *task_type* task.

    Each shell segment (split on ``&&``, ``||``, ``;``, pipes and command
    substitution) is checked on its own.

    Args:
        command: Shell command line as the agent would run it.
        task_type: Type of the task the unit is executing.
        self_service: Compose service name of the orchestrator itself.
        host_root: Host project directory, used in the hint.

    Returns:
        The verdict; ``rule`` names the rule that blocked the command.
    """
    return _check(command, task_type, (RULE_MISSING_ROOT, RULE_SELF_REBUILD), self_service, host_root)


def _check(
    command: str,
    task_type: TaskType,
    rules: tuple[str, ...],
    self_service: str,
    host_root: Optional[str],
) -> GuardrailVerdict:
    root_hint = host_root or "$SYNTROPY_HOST_ROOT"
    for segment in _segments(command) or [command]:
        if RULE_MISSING_ROOT in rules and _COMPOSE_VERB.search(segment) and not _PROJECT_DIRECTORY.search(segment):
            return GuardrailVerdict(
                allowed=False,
                command=command,
                rule=RULE_MISSING_ROOT,
                reason="docker compose command missing --project-directory",
                hint=f"Use: docker compose --project-directory {root_hint} <command>",
            )
        if task_type is TaskType.SELF_REBUILD or RULE_SELF_REBUILD not in rules:
            continue
        for pattern in _self_target_patterns(self_service):
            if pattern.search(segment):
                return GuardrailVerdict(
                    allowed=False,
                    command=command,
                    rule=RULE_SELF_REBUILD,
                    reason=f"Command would rebuild {self_service}; self-modification is prohibited in regular tasks",
                    hint="Schedule a self-rebuild task for intentional updates",
                )
    return GuardrailVerdict(allowed=True, command=command)


def screen_instruction(
    instruction: str,
    task_type: TaskType,
    *,
    self_service: str = DEFAULT_SELF_SERVICE,
) -> list[GuardrailVerdict]:
    """Blocked self-rebuild commands found in an instruction, one verdict per line.

    Only the self-rebuild rule is screened here. Prose mentioning compose verbs
    is common, so the working-root rule is left to the per-command check.
    """
    if task_type is TaskType.SELF_REBUILD:
        return []
    blocked = []
    for line in instruction.splitlines():
        verdict = _check(line, task_type, (RULE_SELF_REBUILD,), self_service, None)
        if not verdict.allowed:
            blocked.append(verdict)
    return blocked
