from __future__ import annotations

from pathlib import Path

import pytest

from syntropy_core.config import load_settings
from syntropy_core.constants import DEFAULT_CIRCUIT_BREAKER_DELAY_SECONDS, DEFAULT_WORKER_TIMEOUT_SECONDS
from syntropy_core.errors import ConfigError


def _write_config(root: Path, text: str) -> None:
    config = root / ".syntropy" / "config.yaml"
    config.parent.mkdir(parents=True)
    config.write_text(text, encoding="utf-8")


def test_defaults_without_config(tmp_path: Path) -> None:
    settings = load_settings(tmp_path, env={})

    assert settings.paths.root == tmp_path.resolve()
    assert settings.paths.host_root == str(tmp_path.resolve())
    assert settings.paths.ledger == tmp_path.resolve() / "data" / "task-ledger.json"
    assert settings.paths.worker_log_path("abcdef123456").name == "worker-abcdef12.log"
    assert settings.worker.timeout_seconds == DEFAULT_WORKER_TIMEOUT_SECONDS
    assert settings.scheduler.circuit_breaker_delay_seconds == DEFAULT_CIRCUIT_BREAKER_DELAY_SECONDS
    assert settings.scheduler.decision_command is None


def test_root_from_environment(tmp_path: Path) -> None:
    settings = load_settings(env={"SYNTROPY_ROOT": str(tmp_path)})
    assert settings.paths.root == tmp_path.resolve()


def test_yaml_then_environment(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "worker:\n  timeout_seconds: 600\n  retention_days: 3\n"
        "scheduler:\n  max_consecutive_failures: 5\n  decision_command: ./decide.sh\n",
    )

    settings = load_settings(
        tmp_path,
        env={"SYNTROPY_WORKER_TIMEOUT_SECONDS": "900", "SYNTROPY_CIRCUIT_BREAKER_DELAY_MINUTES": "30"},
    )

    assert settings.worker.timeout_seconds == 900
    assert settings.worker.retention_days == 3
    assert settings.scheduler.max_consecutive_failures == 5
    assert settings.scheduler.decision_command == "./decide.sh"
    assert settings.scheduler.circuit_breaker_delay_seconds == 30 * 60


def test_empty_environment_values_are_ignored(tmp_path: Path) -> None:
    settings = load_settings(tmp_path, env={"SYNTROPY_MAX_CONSECUTIVE_FAILURES": ""})
    assert settings.scheduler.max_consecutive_failures == 3


@pytest.mark.parametrize(
    "text, message",
    [
        ("worker:\n  timeout_seconds: soon\n", "must be a number"),
        ("worker:\n  timeout_seconds: 0\n", "must be positive"),
        ("worker:\n  nonsense: 1\n", "Unknown setting worker.nonsense"),
        ("extras:\n  a: 1\n", "Unknown config section"),
        ("worker: [1, 2]\n", "must be a mapping"),
        ("scheduler:\n  min_interval_seconds: 9000\n  max_interval_seconds: 600\n", "must not exceed"),
        ("worker:\n  agent_command: opencode run\n", "{prompt}"),
    ],
)
def test_invalid_config_raises(tmp_path: Path, text: str, message: str) -> None:
    _write_config(tmp_path, text)
    with pytest.raises(ConfigError, match=message.replace("{", r"\{").replace("}", r"\}")):
        load_settings(tmp_path, env={})


def test_malformed_yaml_raises(tmp_path: Path) -> None:
    _write_config(tmp_path, "worker: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid config file"):
        load_settings(tmp_path, env={})


def test_invalid_environment_value_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="must be a number"):
        load_settings(tmp_path, env={"SYNTROPY_MAX_CONSECUTIVE_FAILURES": "many"})
