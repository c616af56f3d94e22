"""Backoff and per-subsystem circuit breaking for the bridge loops."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .logging import get_logger
from .metrics import record_subsystem_failure, record_subsystem_status

SUBSYSTEMS: Tuple[str, ...] = ("discovery", "poller", "homekit", "api")


@dataclass
class BackoffPolicy:
    """Exponential backoff parameters."""

    base: float
    factor: float
    maximum: float

    def delay(self, failures: int) -> float:
        """Delay before the next attempt after `failures` consecutive failures."""

        if failures <= 0:
            return 0.0
        delay = max(0.0, self.base)
        for _ in range(failures - 1):
            delay = min(self.maximum, max(delay * self.factor, self.base))
        return min(delay, self.maximum)


@dataclass
class SubsystemState:
    name: str
    status: str = "ok"
    failures: int = 0
    suppressions: int = 0
    suppressed_until: Optional[float] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None

    def as_dict(self, now: float) -> Dict[str, Any]:
        remaining = None
        if self.suppressed_until is not None:
            remaining = max(0.0, self.suppressed_until - now)
        return {
            "status": self.status,
            "failures": self.failures,
            "suppressions": self.suppressions,
            "suppressed_for": remaining,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
        }


class HealthMonitor:
    """Track subsystem health with a simple circuit breaker.

    A subsystem moves to ``degraded`` on its first failure and to
    ``suppressed`` once `failure_threshold` consecutive failures pile up.
    While suppressed, `allow_attempt` refuses work until the cooldown
    elapses; the next permitted attempt runs as ``recovering``.
    """

    def __init__(
        self,
        subsystem_names: Tuple[str, ...] = SUBSYSTEMS,
        failure_threshold: int = 5,
        cooldown_seconds: float = 15.0,
    ) -> None:
        self._states: Dict[str, SubsystemState] = {
            name: SubsystemState(name=name) for name in subsystem_names
        }
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._lock = asyncio.Lock()
        self.logger = get_logger("lifx.health")
        for name in subsystem_names:
            record_subsystem_status(name, "ok")

    async def record_success(self, subsystem: str) -> None:
        async with self._lock:
            state = self._states[subsystem]
            previous = state.status
            state.status = "ok"
            state.failures = 0
            state.last_error = None
            state.suppressed_until = None
            state.last_success = time.monotonic()
            record_subsystem_status(subsystem, "ok")
        if previous != "ok":
            self.logger.info(
                "Subsystem recovered",
                extra={"subsystem": subsystem, "previous_status": previous},
            )

    async def record_failure(self, subsystem: str, error: Optional[BaseException] = None) -> None:
        """Record a failure and open the circuit once the threshold is reached."""

        async with self._lock:
            state = self._states[subsystem]
            state.failures += 1
            state.last_failure = time.monotonic()
            state.last_error = str(error) if error else state.last_error
            if state.failures >= self._failure_threshold:
                state.status = "suppressed"
                state.suppressions += 1
                state.suppressed_until = state.last_failure + self._cooldown
                record_subsystem_failure(subsystem)
            else:
                state.status = "degraded"
            record_subsystem_status(subsystem, state.status)
            status, failures = state.status, state.failures
        if status == "suppressed":
            self.logger.warning(
                "Subsystem suppressed",
                extra={"subsystem": subsystem, "failures": failures, "cooldown_seconds": self._cooldown},
            )

    async def allow_attempt(self, subsystem: str) -> Tuple[bool, float]:
        """Return whether an attempt is allowed and the remaining suppression time."""

        async with self._lock:
            state = self._states[subsystem]
            now = time.monotonic()
            if state.suppressed_until and state.suppressed_until > now:
                return False, state.suppressed_until - now
            if state.status == "suppressed":
                state.status = "recovering"
            record_subsystem_status(subsystem, state.status)
            return True, 0.0

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        async with self._lock:
            now = time.monotonic()
            return {name: state.as_dict(now) for name, state in self._states.items()}

    async def overall_status(self) -> str:
        """Worst status across subsystems: ``ok``, ``degraded`` or ``suppressed``."""

        snapshot = await self.snapshot()
        statuses = {entry["status"] for entry in snapshot.values()}
        if "suppressed" in statuses:
            return "suppressed"
        if statuses - {"ok"}:
            return "degraded"
        return "ok"
