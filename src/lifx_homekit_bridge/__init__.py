"""Bridge that exposes LIFX LAN bulbs as HomeKit accessories."""

__all__ = ["config", "logging", "devices", "registry", "discovery", "homekit"]
__version__ = "1.0.0"
