"""LIFX LAN transport built on aiolifx device handles.

aiolifx owns packet framing, sequencing and resends. This module only turns
its callback API into awaitables and converts between HomeKit units
(hue 0-360, percentages 0-100) and the 16-bit HSBK values on the wire.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from aiolifx.msgtypes import (
    GetVersion,
    LightGet,
    LightSetColor,
    LightSetPower,
    LightState,
    StateVersion,
)
from aiolifx.products import features_map, product_map

from ..devices import (
    DEFAULT_MAX_KELVIN,
    DEFAULT_MIN_KELVIN,
    Capabilities,
    HardwareInfo,
    LightState as BulbState,
    ProbeResult,
)
from ..errors import TransientIOFailure
from ..logging import get_logger
from .base import LightTransport

MAX_UINT16 = 65535
LIFX_VENDOR_ID = 1
LIFX_VENDOR_NAME = "LIFX"

Callback = Callable[[Any, Any], None]


def hue_to_wire(hue: float) -> int:
    return int(round((hue % 360.0) / 360.0 * MAX_UINT16)) & MAX_UINT16


def hue_from_wire(value: int) -> float:
    return round(value * 360.0 / MAX_UINT16, 2)


def percent_to_wire(percent: float) -> int:
    return int(round(max(0.0, min(100.0, percent)) / 100.0 * MAX_UINT16))


def percent_from_wire(value: int) -> float:
    return round(value * 100.0 / MAX_UINT16, 2)


def capabilities_for_product(vendor: Optional[int], product: Optional[int]) -> Capabilities:
    """Map an aiolifx product id to the bridge's capability record."""

    features = features_map.get(product) or {}
    model = product_map.get(product)
    return Capabilities(
        color=bool(features.get("color", False)),
        ambient_light=bool(features.get("ambient_light", False)),
        min_kelvin=int(features.get("min_kelvin") or DEFAULT_MIN_KELVIN),
        max_kelvin=int(features.get("max_kelvin") or DEFAULT_MAX_KELVIN),
        vendor=LIFX_VENDOR_NAME if vendor == LIFX_VENDOR_ID else (str(vendor) if vendor is not None else None),
        model=str(model) if model else (f"Product {product}" if product is not None else None),
    )


class LifxLanTransport(LightTransport):
    """Transport for aiolifx `Device` handles."""

    def __init__(self, message_handler_timeout: float = 5.0) -> None:
        self._timeout = message_handler_timeout
        self.logger = get_logger("lifx.transport")

    def device_id(self, connection: Any) -> str:
        return str(connection.mac_addr)

    def address(self, connection: Any) -> Optional[str]:
        return getattr(connection, "ip_addr", None)

    def release(self, connection: Any) -> None:
        # aiolifx drops announcements from a MAC whose Device is still registered.
        if getattr(connection, "registered", False):
            connection.registered = False
            self.logger.debug(
                "Released aiolifx registration", extra={"device_id": self.device_id(connection)}
            )

    async def get_state(self, connection: Any) -> ProbeResult:
        response = await self._request(
            connection,
            "get_state",
            lambda callb: connection.req_with_resp(LightGet, LightState, callb=callb),
        )
        hue, saturation, brightness, kelvin = response.color
        state = BulbState(
            power=bool(response.power_level),
            hue=hue_from_wire(hue),
            saturation=percent_from_wire(saturation),
            brightness=percent_from_wire(brightness),
            kelvin=int(kelvin),
        )
        label = response.label
        if isinstance(label, bytes):
            label = label.decode("utf-8", errors="replace")
        label = label.strip("\x00 ") if label else None
        return ProbeResult(state=state, label=label or None)

    async def get_hardware_info(self, connection: Any) -> HardwareInfo:
        response = await self._request(
            connection,
            "get_hardware_info",
            lambda callb: connection.req_with_resp(GetVersion, StateVersion, callb=callb),
        )
        capabilities = capabilities_for_product(response.vendor, response.product)
        return HardwareInfo(
            vendor=capabilities.vendor,
            model=capabilities.model,
            capabilities=capabilities,
        )

    async def set_power(self, connection: Any, on: bool, fade_ms: int) -> None:
        payload = {"power_level": MAX_UINT16 if on else 0, "duration": int(fade_ms)}
        await self._request(
            connection,
            "set_power",
            lambda callb: connection.req_with_ack(LightSetPower, payload, callb=callb),
        )

    async def set_color(
        self,
        connection: Any,
        hue: float,
        saturation: float,
        brightness: float,
        kelvin: int,
        fade_ms: int,
    ) -> None:
        payload = {
            "color": [
                hue_to_wire(hue),
                percent_to_wire(saturation),
                percent_to_wire(brightness),
                int(kelvin),
            ],
            "duration": int(fade_ms),
        }
        await self._request(
            connection,
            "set_color",
            lambda callb: connection.req_with_ack(LightSetColor, payload, callb=callb),
        )

    async def _request(
        self,
        connection: Any,
        operation: str,
        send: Callable[[Callback], Any],
    ) -> Any:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def _callback(_device: Any, response: Any) -> None:
            if not future.done():
                future.set_result(response)

        device_id = self.device_id(connection)
        try:
            send(_callback)
            response = await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransientIOFailure(device_id, f"{operation} timed out") from exc
        except OSError as exc:
            raise TransientIOFailure(device_id, f"{operation} failed: {exc}") from exc
        if response is None:
            # aiolifx reports exhausted resends as a None response.
            raise TransientIOFailure(device_id, f"{operation} got no response")
        self.logger.debug("Transport call completed", extra={"device_id": device_id, "operation": operation})
        return response
