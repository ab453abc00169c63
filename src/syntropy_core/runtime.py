"""Execution runtime port and the docker compose adapter behind it.

Orchestration logic only talks to :class:`ExecutionRuntime`; tests substitute a
fake, production uses :class:`DockerComposeRuntime`.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence

from loguru import logger

from .constants import DEFAULT_STATUS_TIMEOUT_SECONDS
from .errors import RuntimeQueryError, SpawnFailure


@dataclass(frozen=True)
class UnitStatus:
    exists: bool
    exited: bool
    exit_code: Optional[int] = None

    @property
    def alive(self) -> bool:
        return self.exists and not self.exited

    @property
    def finished(self) -> bool:
        return not self.exists or self.exited


MISSING_UNIT = UnitStatus(exists=False, exited=True, exit_code=None)


class ExecutionRuntime(Protocol):
    def start(self, unit_name: str, env: Mapping[str, str]) -> None:
        """Start a detached unit. Raises SpawnFailure if the launch command fails."""

    def status(self, unit_name: str) -> UnitStatus:
        """Report whether *unit_name* exists and whether it has exited."""

    def list_running(self, prefix: str) -> list[str]:
        """Names of live units starting with *prefix*. Raises RuntimeQueryError."""

    def remove_exited(self, prefix: str) -> int:
        """Force-remove already-exited units matching *prefix*; returns the count."""


class DockerComposeRuntime:
    """Runs workers as one-off ``docker compose run -d`` containers."""

    def __init__(
        self,
        project_dir: Path,
        *,
        service: str = "worker",
        profile: Optional[str] = "worker",
        docker_bin: str = "docker",
        timeout_seconds: int = DEFAULT_STATUS_TIMEOUT_SECONDS,
    ) -> None:
        self.project_dir = project_dir
        self.service = service
        self.profile = profile
        self.docker_bin = docker_bin
        self.timeout_seconds = timeout_seconds

    def _docker(self, args: Sequence[str], *, timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker_bin, *args],
            cwd=self.project_dir,
            capture_output=True,
            text=True,
            timeout=timeout or self.timeout_seconds,
        )

    def start(self, unit_name: str, env: Mapping[str, str]) -> None:
        args = ["compose", "--project-directory", str(self.project_dir)]
        if self.profile:
            args += ["--profile", self.profile]
        args += ["run", "-d", "--name", unit_name]
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        args.append(self.service)
        try:
            result = self._docker(args, timeout=max(self.timeout_seconds, 120))
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SpawnFailure(f"Failed to spawn worker: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise SpawnFailure(f"Failed to spawn worker: {detail or f'exit code {result.returncode}'}")

    def status(self, unit_name: str) -> UnitStatus:
        try:
            result = self._docker(["inspect", "--format", "{{.State.Status}}:{{.State.ExitCode}}", unit_name])
        except subprocess.TimeoutExpired:
            # Unknown is treated as alive so nothing gets reclassified on a slow daemon.
            logger.warning("Timed out inspecting {}; assuming it is still running", unit_name)
            return UnitStatus(exists=True, exited=False)
        except OSError as exc:
            raise RuntimeQueryError(f"Cannot run {self.docker_bin}: {exc}") from exc
        if result.returncode != 0:
            return MISSING_UNIT
        state, _, code = result.stdout.strip().partition(":")
        try:
            exit_code = int(code)
        except ValueError:
            exit_code = None
        exited = state in {"exited", "dead"}
        return UnitStatus(exists=True, exited=exited, exit_code=exit_code if exited else None)

    def _list(self, prefix: str, *extra: str) -> list[str]:
        args = ["ps", *extra, "--filter", f"name={prefix}", "--format", "{{.Names}}"]
        try:
            result = self._docker(args)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RuntimeQueryError(f"Listing units failed: {exc}") from exc
        if result.returncode != 0:
            raise RuntimeQueryError(f"Listing units failed: {result.stderr.strip()}")
        return [name.strip() for name in result.stdout.splitlines() if name.strip().startswith(prefix)]

    def list_running(self, prefix: str) -> list[str]:
        return self._list(prefix)

    def remove_exited(self, prefix: str) -> int:
        names = self._list(prefix, "-a", "--filter", "status=exited")
        if not names:
            return 0
        try:
            result = self._docker(["rm", "-f", *names])
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Removing exited units {} failed: {}", names, exc)
            return 0
        if result.returncode != 0:
            logger.warning("Removing exited units {} failed: {}", names, result.stderr.strip())
            return 0
        logger.info("Removed {} exited worker unit(s)", len(names))
        return len(names)
