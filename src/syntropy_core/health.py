"""Bounded poll of an HTTP health endpoint."""

from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from typing import Callable, Optional

from loguru import logger

from .constants import DEFAULT_HEALTH_ATTEMPTS, DEFAULT_HEALTH_INTERVAL_SECONDS
from .errors import HealthCheckTimeout

HEALTHY_STATUS = "ok"


def check_health(url: str, *, timeout_seconds: float = 5) -> tuple[bool, Optional[str]]:
    """Single GET; healthy only when the JSON body carries ``status == "ok"``.

    Returns ``(healthy, problem)`` where *problem* describes why it was not.
    """
    request = urllib.request.Request(url, headers={"Accept": "application/json"}, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as resp:
            body = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        return False, f"HTTP {exc.code}"
    except (urllib.error.URLError, OSError) as exc:
        return False, f"{exc.__class__.__name__}: {exc}"
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return False, "response is not JSON"
    status = payload.get("status") if isinstance(payload, dict) else None
    if status == HEALTHY_STATUS:
        return True, None
    return False, f"status={status!r}"


def wait_for_healthy(
    url: str,
    *,
    attempts: int = DEFAULT_HEALTH_ATTEMPTS,
    interval_seconds: float = DEFAULT_HEALTH_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll *url* until it reports healthy. Returns the attempt that succeeded.

    Raises:
        HealthCheckTimeout: No healthy response within *attempts* polls.
    """
    last_problem = None
    for attempt in range(1, attempts + 1):
        healthy, last_problem = check_health(url)
        if healthy:
            logger.info("{} healthy after {} attempt(s)", url, attempt)
            return attempt
        logger.info("Health attempt {}/{} for {}: {}", attempt, attempts, url, last_problem)
        if attempt < attempts:
            sleep(interval_seconds)
    raise HealthCheckTimeout(url, attempts, last_problem)
