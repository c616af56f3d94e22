"""Entrypoint for the LIFX HomeKit bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Awaitable, Callable, Iterable, List, Optional

from .api import ApiService
from .cache import AccessoryCache
from .config import Config, load_config
from .db import DatabaseManager, apply_migrations
from .discovery import DiscoveryService
from .health import SUBSYSTEMS, BackoffPolicy, HealthMonitor
from .homekit import HomeKitService
from .logging import configure_logging, get_logger
from .poller import StatePollerService
from .registry import DeviceRegistry
from .transport import LifxLanTransport


def _backoff(config: Config) -> BackoffPolicy:
    return BackoffPolicy(
        base=config.backoff_base,
        factor=config.backoff_factor,
        maximum=config.backoff_max,
    )


async def _start_with_retries(
    name: str,
    start: Callable[[], Awaitable[None]],
    stop_event: asyncio.Event,
    config: Config,
    health: HealthMonitor,
) -> bool:
    """Start a subsystem, backing off and honouring suppression on failure."""

    logger = get_logger(f"lifx.{name}")
    backoff = _backoff(config)
    failures = 0
    while not stop_event.is_set():
        allowed, remaining = await health.allow_attempt(name)
        if not allowed:
            logger.warning(
                "Subsystem temporarily suppressed after repeated failures",
                extra={"subsystem": name, "cooldown_seconds": round(remaining, 2)},
            )
            await _wait_or_stop(stop_event, remaining)
            continue
        try:
            await start()
        except Exception as exc:
            failures += 1
            logger.exception("Subsystem failed to start; will retry", extra={"subsystem": name})
            await health.record_failure(name, exc)
            await _wait_or_stop(stop_event, backoff.delay(failures))
            continue
        await health.record_success(name)
        return True
    return False


async def _discovery_loop(
    stop_event: asyncio.Event, config: Config, service: DiscoveryService, health: HealthMonitor
) -> None:
    logger = get_logger("lifx.discovery")
    try:
        if await _start_with_retries("discovery", service.start, stop_event, config, health):
            await stop_event.wait()
    finally:
        await service.stop()
        logger.info("Discovery loop stopped")


async def _poller_loop(stop_event: asyncio.Event, service: StatePollerService) -> None:
    logger = get_logger("lifx.poller")
    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("Poller loop stopped")


async def _homekit_loop(
    stop_event: asyncio.Event, config: Config, service: HomeKitService, health: HealthMonitor
) -> None:
    logger = get_logger("lifx.homekit")
    try:
        if await _start_with_retries("homekit", service.start, stop_event, config, health):
            await stop_event.wait()
    finally:
        await service.stop()
        logger.info("HomeKit loop stopped")


async def _api_loop(
    stop_event: asyncio.Event, config: Config, service: ApiService, health: HealthMonitor
) -> None:
    logger = get_logger("lifx.api")
    try:
        if await _start_with_retries("api", service.start, stop_event, config, health):
            await stop_event.wait()
    finally:
        await service.stop()
        logger.info("API loop stopped")


async def _run_async(config: Config) -> None:
    logger = get_logger("lifx")
    stop_event = asyncio.Event()
    health = HealthMonitor(
        SUBSYSTEMS,
        failure_threshold=config.subsystem_failure_threshold,
        cooldown_seconds=config.subsystem_failure_cooldown,
    )

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    db = DatabaseManager(config.db_path)
    transport = LifxLanTransport(message_handler_timeout=config.message_handler_timeout)
    registry = DeviceRegistry(
        transport,
        state_ttl=config.state_cache_ttl,
        default_fade_ms=config.default_fade_ms,
        ignored=config.ignored_devices,
    )
    cache = AccessoryCache(db)
    registry.subscribe(cache)
    homekit = HomeKitService(config, registry)
    try:
        await homekit.prepare()
    except Exception as exc:
        logger.exception("HomeKit bridge could not be prepared; will retry")
        await health.record_failure("homekit", exc)
    restored = await cache.restore_into(registry)
    logger.info("Restored cached accessories", extra={"count": restored})

    discovery = DiscoveryService(config, registry, transport)
    poller = StatePollerService(config, registry, health=health)
    api = ApiService(config, registry, health=health, cache=cache, discovery=discovery)
    tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(_homekit_loop(stop_event, config, homekit, health)),
        asyncio.create_task(_discovery_loop(stop_event, config, discovery, health)),
        asyncio.create_task(_poller_loop(stop_event, poller)),
        asyncio.create_task(_api_loop(stop_event, config, api, health)),
    ]
    logger.info(
        "Bridge services started",
        extra={
            "homekit_port": config.homekit_port,
            "api_port": config.api_port,
            "db_path": str(config.db_path),
            "dry_run": config.dry_run,
        },
    )

    try:
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger)
        await registry.close()
        await db.close()
        logger.info("Bridge shutdown complete")


async def _shutdown_tasks(tasks: Iterable[asyncio.Task[None]], logger: logging.Logger) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error("Service task ended with an error", exc_info=result)


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> None:
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("lifx")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
