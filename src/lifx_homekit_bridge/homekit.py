"""HomeKit side of the bridge, built on HAP-python.

Each registered bulb becomes a `LightAccessory` on one HAP `Bridge`. The
accessory answers characteristic reads from the registry cache and schedules
a registry refresh when that cache is stale. HomeKit writes become registry
commands; the accessory never talks to the bulb itself.
"""

from __future__ import annotations

import asyncio
import zlib
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional

from pyhap.accessory import Accessory, Bridge
from pyhap.accessory_driver import AccessoryDriver
from pyhap.const import CATEGORY_LIGHTBULB

from .config import Config
from .devices import Capabilities, DeviceRecord, LightState
from .errors import DeviceUnreachable
from .logging import get_logger
from .registry import DeviceRegistry, RegistryListener

FIRST_ACCESSORY_AID = 2
MAX_AID = 2**31 - 1

# HomeKit characteristic -> light state field
CHAR_FIELDS: Dict[str, str] = {
    "On": "power",
    "Brightness": "brightness",
    "Hue": "hue",
    "Saturation": "saturation",
    "ColorTemperature": "kelvin",
}


def kelvin_to_mired(kelvin: float) -> int:
    return int(round(1_000_000 / max(1.0, float(kelvin))))


def mired_to_kelvin(mired: float) -> int:
    return int(round(1_000_000 / max(1.0, float(mired))))


def aid_for(device_id: str, taken: Mapping[int, Any]) -> int:
    """Stable accessory id for a device, probing past ids already in use."""

    span = MAX_AID - FIRST_ACCESSORY_AID
    aid = FIRST_ACCESSORY_AID + zlib.crc32(device_id.encode("utf-8")) % span
    while aid in taken:
        aid = FIRST_ACCESSORY_AID + (aid - FIRST_ACCESSORY_AID + 1) % span
    return aid


def to_homekit(char_name: str, state: LightState, capabilities: Capabilities) -> Any:
    """Convert one light state field to the value HomeKit expects."""

    if char_name == "On":
        return bool(state.power)
    if char_name == "Brightness":
        return int(round(state.brightness))
    if char_name == "ColorTemperature":
        low = kelvin_to_mired(capabilities.max_kelvin)
        high = kelvin_to_mired(capabilities.min_kelvin)
        return max(low, min(high, kelvin_to_mired(state.kelvin)))
    return float(state.value(CHAR_FIELDS[char_name]))


def to_mutation(char_values: Mapping[str, Any]) -> Dict[str, Any]:
    """Translate a HomeKit write into a registry mutation."""

    mutation: Dict[str, Any] = {}
    for char_name, value in char_values.items():
        if char_name == "On":
            mutation["power"] = bool(value)
        elif char_name == "ColorTemperature":
            mutation["kelvin"] = mired_to_kelvin(value)
        elif char_name in CHAR_FIELDS:
            mutation[CHAR_FIELDS[char_name]] = float(value)
    return mutation


class LightAccessory(Accessory):
    """A LIFX bulb exposed as a HomeKit Lightbulb."""

    category = CATEGORY_LIGHTBULB

    def __init__(
        self,
        driver: Any,
        registry: DeviceRegistry,
        record: DeviceRecord,
        *,
        aid: Optional[int] = None,
    ) -> None:
        super().__init__(driver, record.display_name, aid=aid)
        self.registry = registry
        self.device_id = record.id
        self.logger = get_logger("lifx.homekit")
        # The characteristic set is fixed for the accessory's lifetime.
        self.capabilities = record.effective_capabilities
        self.features = self.capabilities.features()
        self._attached = record.reachable
        self._refreshing = False
        self.update_info(record)

        serv_light = self.add_preload_service(
            "Lightbulb", [name for name in self.features if name != "On"]
        )
        self.chars: Dict[str, Any] = {}
        for char_name in self.features:
            properties = None
            if char_name == "Brightness":
                properties = {"minValue": 1}
            elif char_name == "ColorTemperature":
                properties = {
                    "minValue": kelvin_to_mired(self.capabilities.max_kelvin),
                    "maxValue": kelvin_to_mired(self.capabilities.min_kelvin),
                }
            self.chars[char_name] = serv_light.configure_char(
                char_name,
                value=to_homekit(char_name, record.last_known_state, self.capabilities),
                properties=properties,
                getter_callback=partial(self._get_value, char_name),
            )
        serv_light.setter_callback = self._set_chars

    @property
    def available(self) -> bool:
        record = self.registry.get(self.device_id)
        return bool(record and record.reachable)

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        self._attached = True

    def detach(self) -> None:
        self._attached = False

    def update_info(self, record: DeviceRecord) -> None:
        caps = record.effective_capabilities
        self.set_info_service(
            manufacturer=caps.vendor or "LIFX",
            model=caps.model or "LIFX bulb",
            serial_number=record.id,
        )

    def sync(self, state: LightState) -> None:
        """Push cached state to HomeKit clients."""

        for char_name, char in self.chars.items():
            char.set_value(to_homekit(char_name, state, self.capabilities))

    def _get_value(self, char_name: str) -> Any:
        # HAP getters are synchronous: answer from the cache and schedule a
        # live read when the cached state is older than the registry TTL.
        if not self._refreshing and self.registry.needs_refresh(self.device_id):
            self._refreshing = True
            self.driver.add_job(self.refresh)
        field = CHAR_FIELDS[char_name]
        current = self.registry.cached(self.device_id, field)
        return to_homekit(char_name, LightState().apply({field: current}), self.capabilities)

    def _set_chars(self, char_values: Mapping[str, Any]) -> None:
        if not self._attached:
            self.logger.debug(
                "Ignoring HomeKit write for offline device",
                extra={"device_id": self.device_id, "values": dict(char_values)},
            )
            return
        mutation = to_mutation(char_values)
        if mutation:
            self.driver.add_job(self.send, mutation)

    async def refresh(self) -> None:
        try:
            await self.registry.refresh(self.device_id)
        finally:
            self._refreshing = False

    async def send(self, mutation: Mapping[str, Any]) -> None:
        result = await self.registry.command(self.device_id, mutation)
        if result.ok:
            return
        if isinstance(result.error, DeviceUnreachable):
            self.logger.debug("Command dropped; device offline", extra={"device_id": self.device_id})
        else:
            self.logger.warning(
                "HomeKit command failed",
                extra={"device_id": self.device_id, "error": str(result.error)},
            )


AccessoryFactory = Callable[..., LightAccessory]


class HomeKitBridge(RegistryListener):
    """Keeps the HAP bridge in step with the registry."""

    def __init__(
        self,
        driver: Any,
        registry: DeviceRegistry,
        *,
        bridge: Optional[Bridge] = None,
        name: str = "LIFX LAN",
        accessory_factory: AccessoryFactory = LightAccessory,
    ) -> None:
        self.driver = driver
        self.registry = registry
        self.bridge = bridge if bridge is not None else Bridge(driver, name)
        self.accessories: Dict[str, LightAccessory] = {}
        self.logger = get_logger("lifx.homekit")
        self._factory = accessory_factory
        self._running = False

    def mark_running(self, running: bool) -> None:
        self._running = running

    def _config_changed(self) -> None:
        if self._running:
            self.driver.config_changed()

    async def device_registered(self, record: DeviceRecord) -> None:
        if record.id in self.accessories:
            return
        aid = aid_for(record.id, self.bridge.accessories)
        accessory = self._factory(self.driver, self.registry, record, aid=aid)
        self.bridge.add_accessory(accessory)
        self.accessories[record.id] = accessory
        self.logger.info(
            "Accessory added",
            extra={"device_id": record.id, "aid": aid, "features": list(accessory.features)},
        )
        self._config_changed()

    async def device_removed(self, device_id: str) -> None:
        accessory = self.accessories.pop(device_id, None)
        if accessory is None:
            return
        self.bridge.accessories.pop(accessory.aid, None)
        self.logger.info("Accessory removed", extra={"device_id": device_id, "aid": accessory.aid})
        self._config_changed()

    async def device_online(self, record: DeviceRecord) -> None:
        accessory = self.accessories.get(record.id)
        if accessory is None:
            return
        accessory.attach()
        accessory.sync(record.last_known_state)

    async def device_offline(self, record: DeviceRecord) -> None:
        accessory = self.accessories.get(record.id)
        if accessory is not None:
            accessory.detach()

    async def state_updated(self, record: DeviceRecord) -> None:
        accessory = self.accessories.get(record.id)
        if accessory is not None:
            accessory.sync(record.last_known_state)

    async def capabilities_resolved(self, record: DeviceRecord) -> None:
        accessory = self.accessories.get(record.id)
        if accessory is None:
            return
        accessory.update_info(record)
        if record.effective_capabilities.features() != accessory.features:
            self.logger.info(
                "Capabilities changed after registration; re-pair or remove the accessory to expose them",
                extra={"device_id": record.id},
            )


class HomeKitService:
    """Runs the HAP accessory driver for the bridge."""

    def __init__(
        self,
        config: Config,
        registry: DeviceRegistry,
        *,
        driver_factory: Callable[..., Any] = AccessoryDriver,
    ) -> None:
        self.config = config
        self.registry = registry
        self.logger = get_logger("lifx.homekit")
        self._driver_factory = driver_factory
        self.driver: Optional[Any] = None
        self.bridge: Optional[HomeKitBridge] = None
        self._started = False

    async def prepare(self) -> Optional[HomeKitBridge]:
        """Build the driver and bridge and subscribe to the registry.

        Records already in the registry are added to the bridge. Returns
        None in dry-run mode or when HomeKit is disabled.
        """

        if self.bridge is not None:
            return self.bridge
        if self.config.dry_run or not self.config.homekit_enabled:
            self.logger.info("HomeKit bridge disabled; accessory server not created.")
            return None
        self.config.homekit_persist_file.parent.mkdir(parents=True, exist_ok=True)
        self.driver = self._driver_factory(
            port=self.config.homekit_port,
            persist_file=str(self.config.homekit_persist_file),
            pincode=self.config.homekit_pincode.encode("utf-8"),
            loop=asyncio.get_running_loop(),
        )
        self.bridge = HomeKitBridge(self.driver, self.registry, name=self.config.bridge_name)
        self.driver.add_accessory(self.bridge.bridge)
        self.registry.subscribe(self.bridge)
        for record in self.registry.records():
            await self.bridge.device_registered(record)
        return self.bridge

    async def start(self) -> None:
        if self._started:
            return
        if await self.prepare() is None:
            return
        assert self.driver is not None and self.bridge is not None
        await self.driver.async_start()
        self.bridge.mark_running(True)
        self._started = True
        self.logger.info(
            "HomeKit accessory server started",
            extra={
                "port": self.config.homekit_port,
                "accessories": len(self.bridge.accessories),
            },
        )

    async def stop(self) -> None:
        if not self._started or self.driver is None:
            return
        if self.bridge is not None:
            self.bridge.mark_running(False)
        await self.driver.async_stop()
        self._started = False
        self.logger.info("HomeKit accessory server stopped")
