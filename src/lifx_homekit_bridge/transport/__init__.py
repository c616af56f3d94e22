"""Device transports."""

from __future__ import annotations

from .base import LightTransport
from .lifx import LifxLanTransport

__all__ = [
    "LightTransport",
    "LifxLanTransport",
]
