"""Cycle scheduler with a persisted wake time, backoff and a circuit breaker."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from loguru import logger
from pydantic import ValidationError

from .audit import AuditTrail
from .constants import (
    DEFAULT_CIRCUIT_BREAKER_DELAY_SECONDS,
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_MAX_INTERVAL_SECONDS,
    DEFAULT_MIN_INTERVAL_SECONDS,
    SCHEDULE_MAX_DELAY_MINUTES,
    SCHEDULE_MIN_DELAY_MINUTES,
)
from .io_utils import _atomic_write_text
from .models import ScheduleRecord
from .utils import _utc_now


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class ScheduleStore:
    def __init__(self, path: Path, audit: AuditTrail, clock: Callable[[], datetime] = _utc_now) -> None:
        self.path = path
        self.audit = audit
        self._clock = clock

    def read(self) -> Optional[ScheduleRecord]:
        try:
            return ScheduleRecord.model_validate_json(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable schedule {}: {}", self.path, exc)
            return None

    def set_delay(self, delay_seconds: float, reason: str) -> ScheduleRecord:
        """Persist the next run time as now + *delay_seconds*.

        Args:
            delay_seconds: Unclamped delay from now.
            reason: Why this time was chosen; kept for logs and the next startup.

        Returns:
            The record that was written.
        """
        record = ScheduleRecord(next_run_at=self._clock() + timedelta(seconds=delay_seconds), reason=reason)
        _atomic_write_text(self.path, record.model_dump_json(by_alias=True, indent=2) + "\n")
        logger.info("Next run scheduled for {} ({})", record.next_run_at.isoformat(), reason)
        self.audit.record(
            "schedule_set",
            nextRunAt=record.next_run_at.isoformat(),
            reason=reason,
            delayMs=int(delay_seconds * 1000),
        )
        return record

    def schedule_in_minutes(self, delay_minutes: float, reason: str) -> tuple[float, ScheduleRecord]:
        """Clamp to the allowed range and persist; returns ``(minutes, record)``."""
        minutes = max(SCHEDULE_MIN_DELAY_MINUTES, min(SCHEDULE_MAX_DELAY_MINUTES, delay_minutes))
        return minutes, self.set_delay(minutes * 60, reason)


@dataclass(frozen=True)
class CycleOutcome:
    ok: bool
    delay_seconds: Optional[float] = None
    skipped: bool = False
    error: Optional[str] = None
    breaker_engaged: bool = False
    consecutive_failures: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "error": self.error,
            "delaySeconds": self.delay_seconds,
            "breakerEngaged": self.breaker_engaged,
            "consecutiveFailures": self.consecutive_failures,
        }


class CycleScheduler:
    """Drives the periodic decision loop. ``Idle -> Running -> Idle``.

    A trigger that arrives while a cycle is running is skipped and audited,
    never queued. All loop state lives on the instance.
    """

    def __init__(
        self,
        cycle: Callable[[], object],
        store: ScheduleStore,
        audit: AuditTrail,
        *,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        max_interval_seconds: float = DEFAULT_MAX_INTERVAL_SECONDS,
        default_interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        circuit_breaker_delay_seconds: float = DEFAULT_CIRCUIT_BREAKER_DELAY_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._cycle = cycle
        self.store = store
        self.audit = audit
        self.min_interval = min_interval_seconds
        self.max_interval = max_interval_seconds
        self.default_interval = default_interval_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self.circuit_breaker_delay = circuit_breaker_delay_seconds
        self._clock = clock
        self._flag_lock = threading.Lock()
        self._running = False
        self._stop = threading.Event()
        self.consecutive_failures = 0

    @property
    def state(self) -> SchedulerState:
        return SchedulerState.RUNNING if self._running else SchedulerState.IDLE

    def _clamp(self, seconds: float) -> float:
        return max(self.min_interval, min(self.max_interval, seconds))

    def planned_delay(self) -> tuple[float, str]:
        """The decision logic's chosen delay, clamped, with its reason."""
        record = self.store.read()
        if record is None:
            return self._clamp(self.default_interval), "default interval"
        remaining = (record.next_run_at - self._clock()).total_seconds()
        if remaining <= 0:
            return self.min_interval, "past due, catching up"
        if remaining > self.max_interval:
            return self._clamp(self.default_interval), "default interval"
        return self._clamp(remaining), record.reason

    def next_delay(self, success: bool) -> tuple[float, bool]:
        """Update the failure counter and return ``(delay_seconds, breaker_engaged)``."""
        if success:
            self.consecutive_failures = 0
            delay, reason = self.planned_delay()
            logger.info("Next cycle in {} minutes ({})", round(delay / 60), reason)
            return delay, False

        self.consecutive_failures += 1
        self.audit.record("consecutive_failure", count=self.consecutive_failures)
        if self.consecutive_failures >= self.max_consecutive_failures:
            delay = self.circuit_breaker_delay
            reason = f"circuit breaker: {self.consecutive_failures} consecutive failures"
            self.store.set_delay(delay, reason)
            logger.warning(
                "Circuit breaker engaged after {} consecutive failures; pausing {} minutes",
                self.consecutive_failures,
                round(delay / 60),
            )
            self.audit.record(
                "circuit_breaker_engaged",
                failures=self.consecutive_failures,
                delayMinutes=delay / 60,
            )
            return delay, True

        planned, reason = self.planned_delay()
        delay = min(self.max_interval, planned * 2 ** (self.consecutive_failures - 1))
        logger.info(
            "Backing off after failure {}: next cycle in {} minutes ({})",
            self.consecutive_failures,
            round(delay / 60),
            reason,
        )
        return delay, False

    def startup_delay(self) -> float:
        """Seconds to wait before the first cycle; zero unless a schedule is well in the future."""
        record = self.store.read()
        if record is None:
            return 0.0
        remaining = (record.next_run_at - self._clock()).total_seconds()
        if remaining <= self.min_interval:
            return 0.0
        delay = min(remaining, self.max_interval)
        logger.info("Deferring first cycle until {} ({})", record.next_run_at.isoformat(), record.reason)
        self.audit.record("startup_deferred", nextRunAt=record.next_run_at.isoformat(), delayMs=int(delay * 1000))
        return delay

    def run_cycle(self) -> CycleOutcome:
        """Run one cycle unless one is already running.

        Exceptions from the cycle are logged and audited, never raised.

        Returns:
            The outcome, including the delay until the next cycle. A skipped
            trigger returns ``skipped=True`` and no delay.
        """
        with self._flag_lock:
            if self._running:
                logger.warning("Cycle already running; skipping this trigger")
                self.audit.record("cycle_skipped", reason="cycle already running")
                return CycleOutcome(ok=False, skipped=True, consecutive_failures=self.consecutive_failures)
            self._running = True

        error = None
        try:
            self.audit.record("cycle_start")
            self._cycle()
        except Exception as exc:  # the loop outlives any single cycle
            error = f"{exc.__class__.__name__}: {exc}"
            logger.exception("Cycle failed: {}", error)
            self.audit.record("cycle_error", error=error)
        else:
            self.audit.record("cycle_complete")
        finally:
            with self._flag_lock:
                self._running = False

        delay, engaged = self.next_delay(error is None)
        return CycleOutcome(
            ok=error is None,
            delay_seconds=delay,
            error=error,
            breaker_engaged=engaged,
            consecutive_failures=self.consecutive_failures,
        )

    def run_forever(self, *, max_cycles: Optional[int] = None) -> int:
        """Run cycles until :meth:`stop` is called. Returns the number of cycles run."""
        self._stop.clear()
        delay = self.startup_delay()
        cycles = 0
        while not self._stop.wait(delay):
            outcome = self.run_cycle()
            if outcome.skipped:
                delay = self.min_interval
                continue
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            delay = outcome.delay_seconds or self.min_interval
        return cycles

    def trigger(self) -> CycleOutcome:
        """Run a cycle now, from any thread. Skipped if one is already running."""
        return self.run_cycle()

    def stop(self) -> None:
        self._stop.set()

    def reset_failures(self) -> None:
        self.consecutive_failures = 0
