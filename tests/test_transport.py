import asyncio
from types import SimpleNamespace
from typing import Any, List, Optional, Tuple

import pytest
from aiolifx.msgtypes import GetVersion, LightGet, LightSetColor, LightSetPower

from lifx_homekit_bridge.errors import TransientIOFailure
from lifx_homekit_bridge.transport import lifx as lifx_transport
from lifx_homekit_bridge.transport.lifx import (
    LifxLanTransport,
    capabilities_for_product,
    hue_from_wire,
    hue_to_wire,
    percent_from_wire,
    percent_to_wire,
)


class _FakeBulb:
    """Answers aiolifx-style requests through the supplied callback."""

    def __init__(self, response: Any = None, *, silent: bool = False) -> None:
        self.mac_addr = "d0:73:d5:00:00:01"
        self.ip_addr = "192.168.1.20"
        self.response = response
        self.silent = silent
        self.sent: List[Tuple[Any, Any]] = []

    def _answer(self, callb: Any) -> None:
        if self.silent or callb is None:
            return
        asyncio.get_running_loop().call_soon(callb, self, self.response)

    def req_with_resp(self, msg_type: Any, response_type: Any, payload: Optional[dict] = None, callb: Any = None) -> bool:
        self.sent.append((msg_type, payload))
        self._answer(callb)
        return True

    def req_with_ack(self, msg_type: Any, payload: Optional[dict] = None, callb: Any = None) -> bool:
        self.sent.append((msg_type, payload))
        self._answer(callb)
        return True


def test_wire_conversions() -> None:
    assert hue_to_wire(0) == 0
    assert hue_to_wire(360) == 0
    assert hue_to_wire(180) == 32768
    assert hue_from_wire(65535) == 360.0
    assert percent_to_wire(100) == 65535
    assert percent_to_wire(150) == 65535
    assert percent_to_wire(-1) == 0
    assert percent_from_wire(32768) == 50.0


def test_capabilities_for_product(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        lifx_transport,
        "features_map",
        {27: {"color": True, "min_kelvin": 2500, "max_kelvin": 9000}, 10: {"color": False}},
    )
    monkeypatch.setattr(lifx_transport, "product_map", {27: "LIFX A19", 10: "LIFX White 800"})

    colour = capabilities_for_product(1, 27)
    white = capabilities_for_product(1, 10)
    unknown = capabilities_for_product(7, 999)

    assert colour.color is True
    assert colour.model == "LIFX A19"
    assert colour.vendor == "LIFX"
    assert white.color is False
    assert white.min_kelvin == 2500
    assert unknown.vendor == "7"
    assert unknown.model == "Product 999"


@pytest.mark.asyncio
async def test_get_state_decodes_hsbk_and_label() -> None:
    bulb = _FakeBulb(
        SimpleNamespace(color=[32768, 65535, 32768, 3500], power_level=65535, label=b"Desk\x00\x00")
    )

    probe = await LifxLanTransport().get_state(bulb)

    assert bulb.sent[0][0] is LightGet
    assert probe.label == "Desk"
    assert probe.state.power is True
    assert probe.state.hue == pytest.approx(180.0, abs=0.01)
    assert probe.state.saturation == 100.0
    assert probe.state.brightness == pytest.approx(50.0, abs=0.01)
    assert probe.state.kelvin == 3500


@pytest.mark.asyncio
async def test_get_hardware_info_maps_product(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(lifx_transport, "features_map", {27: {"color": True}})
    monkeypatch.setattr(lifx_transport, "product_map", {27: "LIFX A19"})
    bulb = _FakeBulb(SimpleNamespace(vendor=1, product=27))

    info = await LifxLanTransport().get_hardware_info(bulb)

    assert bulb.sent[0][0] is GetVersion
    assert info.model == "LIFX A19"
    assert info.capabilities.color is True


@pytest.mark.asyncio
async def test_set_calls_send_wire_payloads() -> None:
    bulb = _FakeBulb(SimpleNamespace())
    transport = LifxLanTransport()

    await transport.set_power(bulb, True, 250)
    await transport.set_color(bulb, 90.0, 50.0, 100.0, 4000, 0)

    assert bulb.sent[0] == (LightSetPower, {"power_level": 65535, "duration": 250})
    assert bulb.sent[1][0] is LightSetColor
    assert bulb.sent[1][1] == {"color": [16384, 32768, 65535, 4000], "duration": 0}


@pytest.mark.asyncio
async def test_missing_response_is_transient_failure() -> None:
    bulb = _FakeBulb(None)

    with pytest.raises(TransientIOFailure, match="no response"):
        await LifxLanTransport().set_power(bulb, False, 0)


@pytest.mark.asyncio
async def test_silent_device_times_out() -> None:
    bulb = _FakeBulb(silent=True)

    with pytest.raises(TransientIOFailure, match="timed out") as excinfo:
        await LifxLanTransport(message_handler_timeout=0.05).get_state(bulb)

    assert excinfo.value.device_id == "d0:73:d5:00:00:01"


def test_handle_identity() -> None:
    bulb = _FakeBulb()
    transport = LifxLanTransport()
    assert transport.device_id(bulb) == "d0:73:d5:00:00:01"
    assert transport.address(bulb) == "192.168.1.20"


def test_release_clears_aiolifx_registration() -> None:
    bulb = _FakeBulb()
    bulb.registered = True
    transport = LifxLanTransport()

    transport.release(bulb)
    assert bulb.registered is False

    transport.release(SimpleNamespace(mac_addr="d0:73:d5:00:00:02"))
