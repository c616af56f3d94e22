"""Error kinds and the result wrapper returned by registry operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class BridgeError(Exception):
    """Base class for bridge error kinds."""

    def __init__(self, device_id: str, detail: str = "") -> None:
        self.device_id = device_id
        self.detail = detail
        message = f"{device_id}: {detail}" if detail else device_id
        super().__init__(message)


class DeviceUnreachable(BridgeError):
    """The device is offline; served from the cached state."""


class UnknownDevice(DeviceUnreachable):
    """No record exists for the requested device id."""


class TransientIOFailure(BridgeError):
    """A live call failed while the device was considered reachable."""


class CapabilityUnresolved(BridgeError):
    """Hardware info is not available yet; defaults are in effect."""


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Value/error pair returned instead of raising across the registry."""

    value: Optional[T] = None
    error: Optional[BridgeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T]) -> "OperationResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BridgeError, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(value=value, error=error)
