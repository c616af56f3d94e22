import asyncio
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from lifx_homekit_bridge.devices import Capabilities, HardwareInfo, LightState, ProbeResult
from lifx_homekit_bridge.errors import TransientIOFailure
from lifx_homekit_bridge.registry import DeviceRegistry, RegistryListener
from lifx_homekit_bridge.transport import LightTransport

COLOR_BULB = Capabilities(color=True, min_kelvin=2500, max_kelvin=9000, vendor="LIFX", model="LIFX A19")


class FakeConnection:
    """Stand-in for an aiolifx Device handle."""

    def __init__(self, mac_addr: str, ip_addr: str = "192.168.1.50") -> None:
        self.mac_addr = mac_addr
        self.ip_addr = ip_addr

    def __repr__(self) -> str:
        return f"FakeConnection({self.mac_addr}, {self.ip_addr})"


class FakeTransport(LightTransport):
    """In-memory bulbs with switchable failures and gates."""

    def __init__(self) -> None:
        self.states: Dict[str, LightState] = {}
        self.labels: Dict[str, str] = {}
        self.hardware: Dict[str, Capabilities] = {}
        self.failing: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, str]] = []
        self.commands: List[Tuple[str, str, Tuple[Any, ...]]] = []
        self.released: List[Any] = []

    def calls_for(self, operation: str) -> List[str]:
        return [device for op, device in self.calls if op == operation]

    def device_id(self, connection: Any) -> str:
        return connection.mac_addr

    def address(self, connection: Any) -> Optional[str]:
        return connection.ip_addr

    def release(self, connection: Any) -> None:
        self.released.append(connection)

    async def _call(self, operation: str, connection: Any) -> None:
        self.calls.append((operation, connection.mac_addr))
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()
        if operation in self.failing:
            raise TransientIOFailure(connection.mac_addr, f"{operation} failed")

    async def get_state(self, connection: Any) -> ProbeResult:
        await self._call("get_state", connection)
        return ProbeResult(
            state=self.states.get(connection.mac_addr, LightState()),
            label=self.labels.get(connection.mac_addr),
        )

    async def get_hardware_info(self, connection: Any) -> HardwareInfo:
        await self._call("get_hardware_info", connection)
        caps = self.hardware.get(connection.mac_addr, COLOR_BULB)
        return HardwareInfo(vendor=caps.vendor, model=caps.model, capabilities=caps)

    async def set_power(self, connection: Any, on: bool, fade_ms: int) -> None:
        await self._call("set_power", connection)
        self.commands.append(("set_power", connection.mac_addr, (on, fade_ms)))
        current = self.states.get(connection.mac_addr, LightState())
        self.states[connection.mac_addr] = replace(current, power=on)

    async def set_color(
        self,
        connection: Any,
        hue: float,
        saturation: float,
        brightness: float,
        kelvin: int,
        fade_ms: int,
    ) -> None:
        await self._call("set_color", connection)
        self.commands.append(
            ("set_color", connection.mac_addr, (hue, saturation, brightness, kelvin, fade_ms))
        )
        current = self.states.get(connection.mac_addr, LightState())
        self.states[connection.mac_addr] = replace(
            current, hue=hue, saturation=saturation, brightness=brightness, kelvin=kelvin
        )


class RecordingListener(RegistryListener):
    def __init__(self) -> None:
        self.events: List[Tuple[str, str]] = []

    def names(self, device_id: Optional[str] = None) -> List[str]:
        return [name for name, dev in self.events if device_id is None or dev == device_id]

    async def device_registered(self, record: Any) -> None:
        self.events.append(("registered", record.id))

    async def device_removed(self, device_id: str) -> None:
        self.events.append(("removed", device_id))

    async def device_online(self, record: Any) -> None:
        self.events.append(("online", record.id))

    async def device_offline(self, record: Any) -> None:
        self.events.append(("offline", record.id))

    async def state_updated(self, record: Any) -> None:
        self.events.append(("state", record.id))

    async def capabilities_resolved(self, record: Any) -> None:
        self.events.append(("capabilities", record.id))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def registry(transport: FakeTransport, listener: RecordingListener) -> DeviceRegistry:
    reg = DeviceRegistry(transport)
    reg.subscribe(listener)
    return reg


@pytest.fixture
def make_conn() -> Any:
    return FakeConnection
