from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Mapping, Optional

import pytest

from syntropy_core.config import Settings, load_settings
from syntropy_core.errors import SpawnFailure
from syntropy_core.gate import release_lock
from syntropy_core.runtime import MISSING_UNIT, UnitStatus
from syntropy_core.service import Orchestrator
from syntropy_core.worker_entry import mark_running


class FakeRuntime:
    """In-memory execution runtime; units live in a dict keyed by name."""

    def __init__(self) -> None:
        self.units: dict[str, UnitStatus] = {}
        self.started: list[tuple[str, dict[str, str]]] = []
        self.fail_start: Optional[str] = None

    def start(self, unit_name: str, env: Mapping[str, str]) -> None:
        if self.fail_start:
            raise SpawnFailure(self.fail_start)
        self.started.append((unit_name, dict(env)))
        self.units[unit_name] = UnitStatus(exists=True, exited=False)

    def status(self, unit_name: str) -> UnitStatus:
        return self.units.get(unit_name, MISSING_UNIT)

    def list_running(self, prefix: str) -> list[str]:
        return [name for name, unit in self.units.items() if name.startswith(prefix) and unit.alive]

    def remove_exited(self, prefix: str) -> int:
        doomed = [name for name, unit in self.units.items() if name.startswith(prefix) and unit.exited]
        for name in doomed:
            del self.units[name]
        return len(doomed)

    def exit(self, unit_name: str, code: int) -> None:
        self.units[unit_name] = UnitStatus(exists=True, exited=True, exit_code=code)

    def vanish(self, unit_name: str) -> None:
        self.units.pop(unit_name, None)


class FrozenClock:
    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return load_settings(tmp_path, env={"SYNTROPY_HOST_ROOT": "/srv/host-root"})


@pytest.fixture
def orchestrator(settings: Settings, runtime: FakeRuntime, clock: FrozenClock) -> Orchestrator:
    return Orchestrator(settings, runtime, clock=clock)


def start_unit(orchestrator: Orchestrator, task_id: str) -> None:
    """Do what a unit does on start: mark its task running."""
    mark_running(orchestrator.ledger, task_id, "unit-host", orchestrator.clock())


def finish_unit(orchestrator: Orchestrator, runtime: FakeRuntime, task_id: str, code: int) -> None:
    """Do what a unit does on exit: stop with *code* and drop its own lock."""
    task = orchestrator.ledger.get(task_id)
    runtime.exit(task.unit_name, code)
    release_lock(orchestrator.settings.paths.lock, task_id)
