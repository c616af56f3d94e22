"""Base transport interface for talking to bulbs over the LAN."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..devices import HardwareInfo, ProbeResult


class LightTransport(ABC):
    """Abstract base class for device transports.

    A transport wraps whatever object the discovery library hands out for a
    device (the "connection handle") and exposes the handful of calls the
    registry needs. Every call is asynchronous and fails with
    `TransientIOFailure`; retries and packet timing belong to the transport.
    """

    @abstractmethod
    async def get_state(self, connection: Any) -> ProbeResult:
        """Read the full light state.

        Args:
            connection: Handle produced by discovery for this device.

        Returns:
            Probe result with the composite state and the reported label.
        """

    @abstractmethod
    async def get_hardware_info(self, connection: Any) -> HardwareInfo:
        """Read vendor/model information and derive capabilities."""

    @abstractmethod
    async def set_power(self, connection: Any, on: bool, fade_ms: int) -> None:
        """Switch the light on or off over `fade_ms` milliseconds."""

    @abstractmethod
    async def set_color(
        self,
        connection: Any,
        hue: float,
        saturation: float,
        brightness: float,
        kelvin: int,
        fade_ms: int,
    ) -> None:
        """Apply a full HSBK colour over `fade_ms` milliseconds.

        Args:
            hue: 0-360 degrees
            saturation: 0-100 percent
            brightness: 0-100 percent
            kelvin: colour temperature in kelvin
            fade_ms: transition time
        """

    @abstractmethod
    def device_id(self, connection: Any) -> str:
        """Stable identifier (vendor serial) for a connection handle."""

    def address(self, connection: Any) -> Optional[str]:
        """Network address currently used by the handle, if known."""
        return None

    def release(self, connection: Any) -> None:
        """Release resources held by a handle that is being discarded."""
        return None
