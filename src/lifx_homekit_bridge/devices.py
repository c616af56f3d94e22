"""Device records and the value types mirrored from the bulbs."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

STATE_FIELDS: Tuple[str, ...] = ("power", "hue", "saturation", "brightness", "kelvin")
COLOR_FIELDS: Tuple[str, ...] = ("hue", "saturation", "brightness", "kelvin")

DEFAULT_MIN_KELVIN = 2500
DEFAULT_MAX_KELVIN = 9000


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def normalize_device_id(device_id: Any) -> str:
    return str(device_id).strip().lower()


def default_display_name(device_id: str) -> str:
    return f"LIFX {device_id}"


class DeviceStatus(str, enum.Enum):
    """Reachability as tracked by the registry."""

    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class Capabilities:
    """Feature set of a bulb model, resolved once from its hardware info."""

    color: bool = False
    ambient_light: bool = False
    min_kelvin: int = DEFAULT_MIN_KELVIN
    max_kelvin: int = DEFAULT_MAX_KELVIN
    vendor: Optional[str] = None
    model: Optional[str] = None

    def features(self) -> Tuple[str, ...]:
        """HomeKit Lightbulb characteristics exposed for this feature set."""

        chars = ["On", "Brightness", "ColorTemperature"]
        if self.color:
            chars.extend(["Hue", "Saturation"])
        return tuple(chars)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "color": self.color,
            "ambient_light": self.ambient_light,
            "min_kelvin": self.min_kelvin,
            "max_kelvin": self.max_kelvin,
            "vendor": self.vendor,
            "model": self.model,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Capabilities":
        min_kelvin = int(data.get("min_kelvin") or DEFAULT_MIN_KELVIN)
        max_kelvin = int(data.get("max_kelvin") or DEFAULT_MAX_KELVIN)
        if max_kelvin < min_kelvin:
            min_kelvin, max_kelvin = max_kelvin, min_kelvin
        return cls(
            color=bool(data.get("color", False)),
            ambient_light=bool(data.get("ambient_light", False)),
            min_kelvin=min_kelvin,
            max_kelvin=max_kelvin,
            vendor=str(data["vendor"]) if data.get("vendor") is not None else None,
            model=str(data["model"]) if data.get("model") is not None else None,
        )


# White-only, no ambient sensor: what a bulb is assumed to be until proven otherwise.
DEFAULT_CAPABILITIES = Capabilities()


@dataclass(frozen=True)
class LightState:
    """Composite light state. Always replaced as a whole, never field by field."""

    power: bool = False
    hue: float = 0.0
    saturation: float = 0.0
    brightness: float = 50.0
    kelvin: int = DEFAULT_MIN_KELVIN

    def value(self, name: str) -> Any:
        if name not in STATE_FIELDS:
            raise ValueError(f"Unknown light state field: {name}")
        return getattr(self, name)

    def apply(self, mutation: Mapping[str, Any]) -> "LightState":
        """Return a new state with `mutation` applied on top of this one."""

        unknown = set(mutation) - set(STATE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown light state field(s): {', '.join(sorted(unknown))}")
        changes: Dict[str, Any] = {}
        for key, value in mutation.items():
            if key == "power":
                changes[key] = bool(value)
            elif key == "kelvin":
                changes[key] = int(value)
            else:
                changes[key] = float(value)
        return replace(self, **changes)

    def bounded(self, capabilities: Optional[Capabilities] = None) -> "LightState":
        caps = capabilities or DEFAULT_CAPABILITIES
        return LightState(
            power=bool(self.power),
            hue=_clamp(float(self.hue), 0.0, 360.0),
            saturation=_clamp(float(self.saturation), 0.0, 100.0),
            brightness=_clamp(float(self.brightness), 1.0, 100.0),
            kelvin=int(_clamp(int(self.kelvin), caps.min_kelvin, caps.max_kelvin)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in STATE_FIELDS}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LightState":
        return cls().apply({key: value for key, value in data.items() if key in STATE_FIELDS})


DEFAULT_STATE = LightState()


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a live state read."""

    state: LightState
    label: Optional[str] = None


@dataclass(frozen=True)
class HardwareInfo:
    """Vendor/model details reported by a bulb."""

    vendor: Optional[str]
    model: Optional[str]
    capabilities: Capabilities


@dataclass
class DeviceRecord:
    """Lifecycle record for one physical bulb.

    `connection` is owned by the record and replaced wholesale whenever the
    device comes back online; it is `None` whenever `reachable` is false.
    `generation` changes with every connection change and `revision` with
    every local state write, so a live read that completes after either has
    moved on is discarded instead of overwriting newer data.
    """

    id: str
    display_name: str
    reachable: bool = False
    last_known_state: LightState = DEFAULT_STATE
    connection: Any = None
    capabilities: Optional[Capabilities] = None
    address: Optional[str] = None
    first_seen: str = field(default_factory=_now_iso)
    last_seen: Optional[str] = None
    last_refreshed: Optional[float] = None
    capability_attempted: bool = False
    generation: int = 0
    revision: int = 0
    pending_commands: int = 0

    @property
    def status(self) -> DeviceStatus:
        return DeviceStatus.ONLINE if self.reachable else DeviceStatus.OFFLINE

    @property
    def effective_capabilities(self) -> Capabilities:
        return self.capabilities or DEFAULT_CAPABILITIES

    def touch(self) -> None:
        self.last_seen = _now_iso()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "status": self.status.value,
            "reachable": self.reachable,
            "address": self.address,
            "state": self.last_known_state.as_dict(),
            "capabilities": self.effective_capabilities.as_dict(),
            "capabilities_resolved": self.capabilities is not None,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }
