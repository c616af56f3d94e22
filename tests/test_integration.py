import asyncio
from pathlib import Path
from unittest.mock import MagicMock

from httpx import ASGITransport, AsyncClient
from pyhap.loader import get_loader

from lifx_homekit_bridge.api import create_app
from lifx_homekit_bridge.cache import AccessoryCache
from lifx_homekit_bridge.config import Config
from lifx_homekit_bridge.db import DatabaseManager, apply_migrations
from lifx_homekit_bridge.devices import LightState
from lifx_homekit_bridge.discovery import DiscoveryService
from lifx_homekit_bridge.homekit import HomeKitBridge
from lifx_homekit_bridge.registry import DeviceRegistry

from conftest import FakeConnection, FakeTransport


def test_accessories_survive_restart(tmp_path: Path) -> None:
    asyncio.run(_run_restart(tmp_path))


async def _boot(config: Config, transport: FakeTransport):
    driver = MagicMock()
    driver.loader = get_loader()
    db = DatabaseManager(config.db_path)
    registry = DeviceRegistry(transport, state_ttl=0.0)
    cache = AccessoryCache(db)
    registry.subscribe(cache)
    bridge = HomeKitBridge(driver, registry)
    registry.subscribe(bridge)
    await cache.restore_into(registry)
    discovery = DiscoveryService(config, registry, transport)
    return db, registry, cache, bridge, discovery


async def _settle(discovery: DiscoveryService) -> None:
    while discovery._tasks:
        await asyncio.gather(*list(discovery._tasks))


async def _run_restart(tmp_path: Path) -> None:
    db_path = tmp_path / "accessories.sqlite3"
    apply_migrations(db_path)
    config = Config(db_path=db_path, dry_run=True)

    transport = FakeTransport()
    transport.states["d0:73:d5:00:00:01"] = LightState(power=False, brightness=40.0)
    transport.labels["d0:73:d5:00:00:01"] = "Kitchen"
    db, registry, cache, bridge, discovery = await _boot(config, transport)
    try:
        await discovery.start()
        discovery.register(FakeConnection("d0:73:d5:00:00:01"))
        await _settle(discovery)
        app = create_app(config, registry, cache=cache, discovery=discovery)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/devices/d0:73:d5:00:00:01/command", json={"power": True, "brightness": 65}
            )
            assert response.status_code == 202
        first_aid = bridge.accessories["d0:73:d5:00:00:01"].aid
    finally:
        await discovery.stop()
        await registry.close()
        await db.close()

    second_transport = FakeTransport()
    db, registry, cache, bridge, discovery = await _boot(config, second_transport)
    try:
        record = registry.get("d0:73:d5:00:00:01")
        assert record is not None
        assert record.reachable is False
        assert record.display_name == "Kitchen"
        assert record.last_known_state.power is True
        assert record.last_known_state.brightness == 65.0
        accessory = bridge.accessories["d0:73:d5:00:00:01"]
        assert accessory.aid == first_aid
        assert accessory.available is False
        assert accessory.chars["On"].get_value() is True
        assert second_transport.calls == []

        discovery.register(FakeConnection("d0:73:d5:00:00:01"))
        await _settle(discovery)
        assert accessory.available is True
        assert accessory.attached is True
        assert second_transport.calls_for("get_hardware_info") == []
    finally:
        await discovery.stop()
        await registry.close()
        await db.close()
