"""Discovery service for LIFX bulbs.

aiolifx broadcasts the discovery probes and keeps one `Device` per MAC
address. This service is the discovery parent: aiolifx calls `register`
when a bulb answers and `unregister` once a bulb has stopped answering for
longer than its unregister timeout. Both are forwarded to the registry.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Callable, Coroutine, Optional, Set

from aiolifx.aiolifx import LifxDiscovery

from .config import Config
from .logging import get_logger
from .metrics import record_discovery_event
from .registry import DeviceRegistry
from .transport import LightTransport

DiscoveryFactory = Callable[..., Any]


class DiscoveryService:
    """Owns the aiolifx discovery endpoint and relays its callbacks."""

    def __init__(
        self,
        config: Config,
        registry: DeviceRegistry,
        transport: LightTransport,
        *,
        discovery_factory: DiscoveryFactory = LifxDiscovery,
    ) -> None:
        self.config = config
        self.registry = registry
        self.transport = transport
        self.logger = get_logger("lifx.discovery")
        self._factory = discovery_factory
        self._discovery: Optional[Any] = None
        self._tasks: Set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._discovery is not None

    async def start(self) -> None:
        if self.config.dry_run:
            self.logger.info("Discovery service running in dry-run mode; sockets not opened.")
            return
        if self._discovery is not None:
            return
        loop = asyncio.get_running_loop()
        discovery = self._factory(
            loop,
            self,
            discovery_interval=self.config.discovery_interval,
            discovery_step=self.config.discovery_step,
            broadcast_ip=self.config.broadcast_address,
        )
        # start() schedules endpoint creation; awaiting it surfaces bind errors here.
        await discovery.start(listen_ip=self.config.listen_address, listen_port=0)
        self._discovery = discovery
        self.logger.info(
            "Discovery service started",
            extra={
                "broadcast": self.config.broadcast_address,
                "listen": self.config.listen_address,
                "interval": self.config.discovery_interval,
            },
        )

    async def stop(self) -> None:
        discovery, self._discovery = self._discovery, None
        if discovery is not None:
            discovery.cleanup()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self.logger.info("Discovery service stopped")

    def rescan(self) -> bool:
        """Broadcast a discovery probe on the next discovery tick."""

        if self._discovery is None:
            return False
        self._discovery.discovery_countdown = 0
        self.logger.debug("Discovery rescan requested")
        return True

    # aiolifx parent interface

    def register(self, light: Any) -> None:
        device_id = self.transport.device_id(light)
        if self.registry.is_ignored(device_id):
            record_discovery_event("ignored")
            self.logger.debug("Ignoring registration of ignored device", extra={"device_id": device_id})
            return
        self._tune(light)
        record_discovery_event("register")
        self.logger.debug(
            "Device announced",
            extra={"device_id": device_id, "address": self.transport.address(light)},
        )
        self._dispatch(
            self.registry.on_online(device_id, light, address=self.transport.address(light))
        )

    def unregister(self, light: Any) -> None:
        device_id = self.transport.device_id(light)
        record_discovery_event("unregister")
        self.logger.debug("Device stopped answering", extra={"device_id": device_id})
        self._dispatch(self.registry.on_offline(device_id))

    def _tune(self, light: Any) -> None:
        light.retry_count = self.config.resend_max_times
        light.timeout = self.config.resend_packet_delay
        light.unregister_timeout = self.config.device_unregister_timeout

    def _dispatch(self, signal: Coroutine[Any, Any, None]) -> None:
        # Tasks start in creation order, so per-device lock acquisition keeps arrival order.
        task = asyncio.get_running_loop().create_task(signal)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "Discovery signal handling failed",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
