"""Load settings from `.syntropy/config.yaml` with environment overrides.

Precedence, lowest first: built-in defaults, the YAML file, environment
variables. Invalid values raise :class:`~syntropy_core.errors.ConfigError`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import (
    AUDIT_FILE,
    CONFIG_FILE,
    CONTINUITY_FILE,
    DATA_DIR_NAME,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_CIRCUIT_BREAKER_DELAY_SECONDS,
    DEFAULT_HEALING_THRESHOLD_SECONDS,
    DEFAULT_HEALTH_ATTEMPTS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_HEALTH_URL,
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_MAX_AUDIT_ENTRIES,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_MAX_INTERVAL_SECONDS,
    DEFAULT_MIN_INTERVAL_SECONDS,
    DEFAULT_OUTPUT_TAIL_CHARS,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_SELF_SERVICE,
    DEFAULT_SPAWN_COOLDOWN_SECONDS,
    DEFAULT_SPAWN_GRACE_SECONDS,
    DEFAULT_STATUS_TIMEOUT_SECONDS,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    ENV_HOST_ROOT,
    ENV_ROOT,
    LEDGER_FILE,
    LIVE_LOG_FILE,
    LOCK_FILE,
    LOGS_DIR_NAME,
    OUTPUT_PREFIX,
    OUTPUT_SUFFIX,
    SCHEDULE_FILE,
    STATE_DIR_NAME,
    UNIT_ID_CHARS,
    WORKER_EVENTS_FILE,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error


@dataclass
class PathSettings:
    root: Path
    host_root: str = ""

    def __post_init__(self) -> None:
        if not self.host_root:
            self.host_root = str(self.root)

    @property
    def config_file(self) -> Path:
        return self.root / STATE_DIR_NAME / CONFIG_FILE

    @property
    def data_dir(self) -> Path:
        return self.root / DATA_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.root / LOGS_DIR_NAME

    @property
    def ledger(self) -> Path:
        return self.data_dir / LEDGER_FILE

    @property
    def lock(self) -> Path:
        return self.data_dir / LOCK_FILE

    @property
    def events(self) -> Path:
        return self.data_dir / WORKER_EVENTS_FILE

    @property
    def schedule(self) -> Path:
        return self.data_dir / SCHEDULE_FILE

    @property
    def audit(self) -> Path:
        return self.data_dir / AUDIT_FILE

    @property
    def continuity(self) -> Path:
        return self.root / CONTINUITY_FILE

    @property
    def live_log(self) -> Path:
        return self.logs_dir / LIVE_LOG_FILE

    def output_path(self, task_id: str) -> Path:
        return self.data_dir / f"{OUTPUT_PREFIX}{task_id}{OUTPUT_SUFFIX}"

    def worker_log_path(self, task_id: str) -> Path:
        return self.logs_dir / f"worker-{task_id[:UNIT_ID_CHARS]}.log"


@dataclass
class WorkerSettings:
    spawn_cooldown_seconds: float = DEFAULT_SPAWN_COOLDOWN_SECONDS
    spawn_grace_seconds: float = DEFAULT_SPAWN_GRACE_SECONDS
    status_timeout_seconds: int = DEFAULT_STATUS_TIMEOUT_SECONDS
    timeout_seconds: int = DEFAULT_WORKER_TIMEOUT_SECONDS
    output_tail_chars: int = DEFAULT_OUTPUT_TAIL_CHARS
    retention_days: float = DEFAULT_RETENTION_DAYS
    healing_threshold_seconds: int = DEFAULT_HEALING_THRESHOLD_SECONDS
    max_audit_entries: int = DEFAULT_MAX_AUDIT_ENTRIES
    agent_command: str = DEFAULT_AGENT_COMMAND
    compose_service: str = "worker"
    compose_profile: Optional[str] = "worker"
    docker_bin: str = "docker"
    self_service: str = DEFAULT_SELF_SERVICE


@dataclass
class SchedulerSettings:
    min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS
    max_interval_seconds: float = DEFAULT_MAX_INTERVAL_SECONDS
    default_interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    circuit_breaker_delay_seconds: float = DEFAULT_CIRCUIT_BREAKER_DELAY_SECONDS
    decision_command: Optional[str] = None


@dataclass
class RebuildSettings:
    health_url: str = DEFAULT_HEALTH_URL
    health_attempts: int = DEFAULT_HEALTH_ATTEMPTS
    health_interval_seconds: int = DEFAULT_HEALTH_INTERVAL_SECONDS


@dataclass
class Settings:
    paths: PathSettings
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    rebuild: RebuildSettings = field(default_factory=RebuildSettings)

    def validate(self) -> None:
        positive = {
            "scheduler.min_interval_seconds": self.scheduler.min_interval_seconds,
            "scheduler.max_interval_seconds": self.scheduler.max_interval_seconds,
            "scheduler.default_interval_seconds": self.scheduler.default_interval_seconds,
            "scheduler.circuit_breaker_delay_seconds": self.scheduler.circuit_breaker_delay_seconds,
            "worker.timeout_seconds": self.worker.timeout_seconds,
            "worker.status_timeout_seconds": self.worker.status_timeout_seconds,
            "worker.max_audit_entries": self.worker.max_audit_entries,
            "rebuild.health_attempts": self.rebuild.health_attempts,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        for name, value in {
            "worker.spawn_cooldown_seconds": self.worker.spawn_cooldown_seconds,
            "worker.retention_days": self.worker.retention_days,
            "rebuild.health_interval_seconds": self.rebuild.health_interval_seconds,
        }.items():
            if value < 0:
                raise ConfigError(f"{name} must not be negative, got {value}")
        if self.scheduler.min_interval_seconds > self.scheduler.max_interval_seconds:
            raise ConfigError("scheduler.min_interval_seconds must not exceed scheduler.max_interval_seconds")
        if self.scheduler.max_consecutive_failures < 1:
            raise ConfigError("scheduler.max_consecutive_failures must be at least 1")
        if "{prompt}" not in self.worker.agent_command:
            raise ConfigError("worker.agent_command must contain a {prompt} placeholder")


def _coerce(section: str, name: str, current: Any, value: Any) -> Any:
    if value is None:
        if current is None or isinstance(current, str):
            return None
        raise ConfigError(f"{section}.{name} must not be empty")
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        raise ConfigError(f"{section}.{name} must be a boolean")
    if isinstance(current, (int, float)) and not isinstance(current, bool):
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{section}.{name} must be a number, got {value!r}") from None
        if isinstance(current, int) and number.is_integer():
            return int(number)
        return number
    return str(value)


def _apply_section(target: Any, section: str, raw: Any) -> None:
    if raw is None:
        return
    if not isinstance(raw, dict):
        raise ConfigError(f"{section} must be a mapping")
    known = {f.name for f in fields(target)}
    for key, value in raw.items():
        if key not in known:
            raise ConfigError(f"Unknown setting {section}.{key}")
        setattr(target, key, _coerce(section, key, getattr(target, key), value))


_ENV_OVERRIDES: dict[str, tuple[str, str, float]] = {
    "SYNTROPY_MAX_CONSECUTIVE_FAILURES": ("scheduler", "max_consecutive_failures", 1),
    "SYNTROPY_CIRCUIT_BREAKER_DELAY_MINUTES": ("scheduler", "circuit_breaker_delay_seconds", 60),
    "SYNTROPY_WORKER_TIMEOUT_SECONDS": ("worker", "timeout_seconds", 1),
    "SYNTROPY_AGENT_COMMAND": ("worker", "agent_command", 1),
    "SYNTROPY_DECISION_COMMAND": ("scheduler", "decision_command", 1),
    "SYNTROPY_HEALTH_URL": ("rebuild", "health_url", 1),
}


def load_settings(root: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` for *root* (or ``$SYNTROPY_ROOT``, or the cwd).

    Args:
        root: Orchestrator root directory.
        env: Environment mapping; defaults to ``os.environ``.

    Returns:
        Validated settings.

    Raises:
        ConfigError: Malformed YAML, an unknown key or an invalid value.
    """
    env = os.environ if env is None else env
    if root is None:
        root = Path(env.get(ENV_ROOT) or Path.cwd())
    root = Path(root).resolve()
    settings = Settings(paths=PathSettings(root=root, host_root=env.get(ENV_HOST_ROOT, "")))

    data, err = _load_data_with_error(settings.paths.config_file, {})
    if err:
        raise ConfigError(f"Invalid config file: {err}")
    for section in ("worker", "scheduler", "rebuild"):
        _apply_section(getattr(settings, section), section, data.get(section))
    unknown = set(data) - {"worker", "scheduler", "rebuild"}
    if unknown:
        raise ConfigError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

    for var, (section, name, scale) in _ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        target = getattr(settings, section)
        value = _coerce(section, name, getattr(target, name), raw)
        if isinstance(value, (int, float)) and scale != 1:
            value = value * scale
        setattr(target, name, value)

    settings.validate()
    return settings
