import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from lifx_homekit_bridge.config import Config
from lifx_homekit_bridge.discovery import DiscoveryService
from lifx_homekit_bridge.registry import DeviceRegistry
from lifx_homekit_bridge.transport.lifx import LifxLanTransport

from conftest import FakeConnection


class _FakeDiscovery:
    def __init__(self, loop: Any, parent: Any, **kwargs: Any) -> None:
        self.loop = loop
        self.parent = parent
        self.kwargs = kwargs
        self.started_with: Dict[str, Any] = {}
        self.cleaned_up = False
        self.discovery_countdown = 30

    async def start(self, listen_ip: str = "0.0.0.0", listen_port: int = 0) -> None:
        self.started_with = {"listen_ip": listen_ip, "listen_port": listen_port}

    def cleanup(self) -> None:
        self.cleaned_up = True


class _Factory:
    def __init__(self) -> None:
        self.created: List[_FakeDiscovery] = []

    def __call__(self, loop: Any, parent: Any, **kwargs: Any) -> _FakeDiscovery:
        discovery = _FakeDiscovery(loop, parent, **kwargs)
        self.created.append(discovery)
        return discovery


async def _drain(service: DiscoveryService) -> None:
    while service._tasks:
        await asyncio.gather(*list(service._tasks))


@pytest.mark.asyncio
async def test_start_configures_aiolifx_discovery(registry, transport) -> None:
    factory = _Factory()
    config = Config(discovery_interval=20.0, discovery_step=4.0, broadcast_address="192.168.1.255")
    service = DiscoveryService(config, registry, transport, discovery_factory=factory)

    await service.start()
    await service.start()

    assert len(factory.created) == 1
    discovery = factory.created[0]
    assert discovery.parent is service
    assert discovery.kwargs == {
        "discovery_interval": 20.0,
        "discovery_step": 4.0,
        "broadcast_ip": "192.168.1.255",
    }
    assert discovery.started_with == {"listen_ip": "0.0.0.0", "listen_port": 0}
    assert service.running

    assert service.rescan() is True
    assert discovery.discovery_countdown == 0

    await service.stop()
    assert discovery.cleaned_up
    assert not service.running
    assert service.rescan() is False


@pytest.mark.asyncio
async def test_dry_run_does_not_open_discovery(registry, transport) -> None:
    factory = _Factory()
    service = DiscoveryService(Config(dry_run=True), registry, transport, discovery_factory=factory)

    await service.start()

    assert factory.created == []
    assert not service.running


@pytest.mark.asyncio
async def test_register_and_unregister_drive_registry(registry, transport, listener) -> None:
    config = Config(resend_max_times=5, resend_packet_delay=0.2, light_offline_tolerance=2, poll_interval=10.0)
    service = DiscoveryService(config, registry, transport, discovery_factory=_Factory())
    light = FakeConnection("D0:73:D5:00:00:0A", "10.0.0.10")

    service.register(light)
    await _drain(service)

    record = registry.get("d0:73:d5:00:00:0a")
    assert record.reachable is True
    assert record.connection is light
    assert record.address == "10.0.0.10"
    assert light.retry_count == 5
    assert light.timeout == 0.2
    assert light.unregister_timeout == 20.0

    service.unregister(light)
    await _drain(service)

    assert registry.get("d0:73:d5:00:00:0a").reachable is False
    assert listener.names() == ["registered", "online", "offline"]


@pytest.mark.asyncio
async def test_signals_keep_arrival_order(registry, transport, listener) -> None:
    service = DiscoveryService(Config(), registry, transport, discovery_factory=_Factory())
    first = FakeConnection("d1")
    second = FakeConnection("d1", "10.0.0.2")

    service.register(first)
    service.unregister(first)
    service.register(second)
    await _drain(service)

    record = registry.get("d1")
    assert record.reachable is True
    assert record.connection is second
    assert listener.names() == ["registered", "online", "offline", "online"]


@pytest.mark.asyncio
async def test_ignored_devices_are_not_registered(registry, transport) -> None:
    registry.ignore("d9")
    service = DiscoveryService(Config(), registry, transport, discovery_factory=_Factory())
    light = FakeConnection("d9")

    service.register(light)
    await _drain(service)

    assert registry.get("d9") is None
    assert not hasattr(light, "retry_count")
    assert transport.calls == []


class _AiolifxLight:
    """Registration proxy and request API of an aiolifx `Device`."""

    def __init__(self, mac_addr: str, ip_addr: str, parent: Any) -> None:
        self.mac_addr = mac_addr
        self.ip_addr = ip_addr
        self.parent = parent
        self.registered = False
        self.response = SimpleNamespace(
            color=[0, 0, 32768, 3500], power_level=65535, label=b"Porch", vendor=1, product=1
        )

    def announce(self) -> None:
        if not self.registered:
            self.registered = True
            self.parent.register(self)

    def req_with_resp(self, msg_type: Any, response_type: Any, payload: Optional[dict] = None, callb: Any = None) -> bool:
        asyncio.get_running_loop().call_soon(callb, self, self.response)
        return True


@pytest.mark.asyncio
async def test_removed_device_is_registered_again_on_next_announcement(listener) -> None:
    transport = LifxLanTransport(message_handler_timeout=1.0)
    registry = DeviceRegistry(transport)
    registry.subscribe(listener)
    service = DiscoveryService(Config(), registry, transport, discovery_factory=_Factory())
    light = _AiolifxLight("d0:73:d5:00:00:0b", "10.0.0.11", service)

    light.announce()
    await _drain(service)
    assert registry.get("d0:73:d5:00:00:0b").display_name == "Porch"

    assert await registry.remove("d0:73:d5:00:00:0b") is True
    assert light.registered is False

    light.announce()
    await _drain(service)

    record = registry.get("d0:73:d5:00:00:0b")
    assert record.reachable is True
    assert record.connection is light
    assert listener.names() == ["registered", "online", "removed", "registered", "online"]
