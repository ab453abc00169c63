from __future__ import annotations

import pytest

from syntropy_core.guardrails import RULE_MISSING_ROOT, RULE_SELF_REBUILD, check_command, screen_instruction
from syntropy_core.models import TaskType

ROOT = "docker compose --project-directory /srv/host-root"


@pytest.mark.parametrize(
    "command",
    [
        "ls -la",
        f"{ROOT} up -d --build agent",
        f"{ROOT} restart api",
        f"{ROOT} logs agent --tail 50",
        "git status && npm test",
    ],
)
def test_allowed_for_normal_tasks(command: str) -> None:
    assert check_command(command, TaskType.NORMAL).allowed


@pytest.mark.parametrize(
    "command",
    [
        "docker compose up -d --build",
        "docker compose restart api",
        "cd /tmp && docker compose logs agent",
        "docker-compose run --rm web npm test",
    ],
)
def test_compose_without_working_root_is_blocked(command: str) -> None:
    verdict = check_command(command, TaskType.NORMAL)
    assert not verdict.allowed
    assert verdict.rule == RULE_MISSING_ROOT


def test_working_root_rule_applies_to_rebuild_tasks_too() -> None:
    verdict = check_command("docker compose build syntropy", TaskType.SELF_REBUILD)
    assert verdict.rule == RULE_MISSING_ROOT


@pytest.mark.parametrize(
    "command",
    [
        f"{ROOT} build syntropy",
        f"{ROOT} up -d --build syntropy",
        f"{ROOT} up -d --build",
        "docker build -t syntropy .",
        f"{ROOT} syntropy build",
    ],
)
def test_self_rebuild_blocked_for_normal_tasks(command: str) -> None:
    verdict = check_command(command, TaskType.NORMAL)
    assert not verdict.allowed
    assert verdict.rule == RULE_SELF_REBUILD


@pytest.mark.parametrize("command", [f"{ROOT} build syntropy", f"{ROOT} up -d syntropy", "docker build -t syntropy ."])
def test_self_rebuild_allowed_for_rebuild_tasks(command: str) -> None:
    assert check_command(command, TaskType.SELF_REBUILD).allowed


def test_hint_names_host_root() -> None:
    verdict = check_command("docker compose restart api", TaskType.NORMAL, host_root="/srv/host-root")
    assert "/srv/host-root" in verdict.hint


def test_screen_instruction_flags_self_rebuild_lines() -> None:
    instruction = "Update deps.\nThen run docker compose up -d --build syntropy\nReport back."

    blocked = screen_instruction(instruction, TaskType.NORMAL)

    assert len(blocked) == 1
    assert "syntropy" in blocked[0].command
    assert screen_instruction(instruction, TaskType.SELF_REBUILD) == []


def test_screen_instruction_ignores_prose_about_compose() -> None:
    assert screen_instruction("Check docker compose logs for the api", TaskType.NORMAL) == []
