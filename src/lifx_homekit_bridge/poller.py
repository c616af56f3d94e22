"""Background state refresh for reachable bulbs."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import List, Optional

from .config import Config
from .devices import DeviceRecord
from .health import BackoffPolicy, HealthMonitor
from .logging import get_logger
from .metrics import observe_poll_cycle
from .registry import DeviceRegistry


class StatePollerService:
    """Periodically re-read the state of online devices.

    Poll failures are only counted; reachability is left to discovery.
    """

    def __init__(
        self,
        config: Config,
        registry: DeviceRegistry,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.logger = get_logger("lifx.poller")
        self._health = health or HealthMonitor(
            ("poller",),
            failure_threshold=self.config.subsystem_failure_threshold,
            cooldown_seconds=self.config.subsystem_failure_cooldown,
        )
        self._backoff = BackoffPolicy(
            base=self.config.backoff_base,
            factor=self.config.backoff_factor,
            maximum=self.config.backoff_max,
        )
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._batch_cursor = 0

    async def start(self) -> None:
        if self._task:
            return
        if not self.config.poll_enabled:
            self.logger.info("State polling disabled; skipping poller startup.")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "State poller started",
            extra={
                "interval_seconds": self.config.poll_interval,
                "batch_size": self.config.poll_batch_size,
            },
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self.logger.info("State poller stopped")

    async def _run(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            allowed, remaining = await self._health.allow_attempt("poller")
            if not allowed:
                self.logger.warning(
                    "Poller suppressed after failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await self._sleep_with_stop(remaining)
                continue
            try:
                await self.run_cycle()
                await self._health.record_success("poller")
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                self.logger.exception("Poll cycle failed")
                await self._health.record_failure("poller", exc)
                await self._sleep_with_stop(self._backoff.delay(failures))
                continue
            await self._sleep_with_stop(self.config.poll_interval)

    async def run_cycle(self) -> int:
        """Refresh one batch of online devices; returns how many reads failed."""

        started = time.perf_counter()
        targets = [record for record in self.registry.records() if record.reachable]
        if not targets:
            observe_poll_cycle("idle", time.perf_counter() - started)
            return 0
        batch = self._select_batch(targets)
        results = await asyncio.gather(*(self.registry.refresh(record.id) for record in batch))
        failed = sum(1 for result in results if not result.ok)
        observe_poll_cycle("partial" if failed else "ok", time.perf_counter() - started)
        self.logger.debug(
            "Poll cycle complete",
            extra={"polled": len(batch), "failed": failed},
        )
        return failed

    def _select_batch(self, targets: List[DeviceRecord]) -> List[DeviceRecord]:
        batch_size = max(1, min(self.config.poll_batch_size, len(targets)))
        start = self._batch_cursor % len(targets)
        end = start + batch_size
        if end <= len(targets):
            batch = targets[start:end]
        else:
            batch = targets[start:] + targets[: end - len(targets)]
        self._batch_cursor = end % len(targets)
        return batch

    async def _sleep_with_stop(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
