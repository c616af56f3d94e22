"""Device registry: the single map of device id to lifecycle record.

Reachability only changes through the discovery signals (`on_discovered`,
`on_online`, `on_offline`). Failed reads and commands are reported to the
caller and leave `reachable` alone, so a slow bulb never flaps between
online and offline.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from .devices import (
    COLOR_FIELDS,
    DEFAULT_CAPABILITIES,
    DEFAULT_STATE,
    STATE_FIELDS,
    Capabilities,
    DeviceRecord,
    LightState,
    default_display_name,
    normalize_device_id,
)
from .errors import (
    CapabilityUnresolved,
    DeviceUnreachable,
    OperationResult,
    TransientIOFailure,
    UnknownDevice,
)
from .logging import get_logger
from .metrics import (
    observe_device_call,
    record_capability_resolution,
    record_command,
    record_query,
    record_transition,
    set_device_counts,
)
from .transport import LightTransport


class RegistryListener:
    """Receiver for registry lifecycle notifications.

    Every hook is a coroutine and defaults to a no-op so listeners only
    override what they care about. Exceptions raised by a hook are logged by
    the registry and never reach the signal that triggered them.
    """

    async def device_registered(self, record: DeviceRecord) -> None:
        """A record was created; called once per id."""

    async def device_removed(self, device_id: str) -> None:
        """The operator removed the record."""

    async def device_online(self, record: DeviceRecord) -> None:
        """The device became reachable with a fresh connection."""

    async def device_offline(self, record: DeviceRecord) -> None:
        """The device stopped being reachable."""

    async def state_updated(self, record: DeviceRecord) -> None:
        """`last_known_state` was replaced."""

    async def capabilities_resolved(self, record: DeviceRecord) -> None:
        """Hardware info arrived for a record registered with defaults."""


class DeviceRegistry:
    """Tracks every known bulb and mediates all access to it."""

    def __init__(
        self,
        transport: LightTransport,
        *,
        state_ttl: float = 0.0,
        default_fade_ms: int = 0,
        ignored: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.state_ttl = max(0.0, state_ttl)
        self.default_fade_ms = max(0, int(default_fade_ms))
        self.logger = get_logger("lifx.registry")
        self._clock = clock
        self._records: Dict[str, DeviceRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[RegistryListener] = []
        self._ignored: Set[str] = {normalize_device_id(item) for item in ignored}

    def subscribe(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    # Ignore list

    def ignore(self, device_id: str) -> None:
        device_id = normalize_device_id(device_id)
        self._ignored.add(device_id)
        self.logger.info("Device ignored", extra={"device_id": device_id})

    def is_ignored(self, device_id: str) -> bool:
        return normalize_device_id(device_id) in self._ignored

    @property
    def ignored(self) -> List[str]:
        return sorted(self._ignored)

    # Discovery signals

    async def on_discovered(
        self,
        device_id: str,
        connection: Any,
        probed_state: Optional[LightState] = None,
        *,
        label: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        """Handle a discovery announcement for `device_id`."""

        device_id = normalize_device_id(device_id)
        if self.is_ignored(device_id):
            self.logger.debug("Ignoring signal for ignored device", extra={"device_id": device_id})
            return
        async with self._lock_for(device_id):
            record = self._records.get(device_id)
            if record is None:
                await self._create(device_id, connection, probed_state, label, address)
            elif not record.reachable:
                await self._reconnect(record, connection, probed_state, address)
            else:
                self._replace_connection(record, connection, address)
                record_transition("duplicate")
                self.logger.debug("Duplicate announcement", extra={"device_id": device_id})

    async def on_online(self, device_id: str, connection: Any, *, address: Optional[str] = None) -> None:
        """Handle an online signal; first contact is treated as discovery."""

        device_id = normalize_device_id(device_id)
        if self.is_ignored(device_id):
            self.logger.debug("Ignoring signal for ignored device", extra={"device_id": device_id})
            return
        async with self._lock_for(device_id):
            record = self._records.get(device_id)
            if record is None:
                await self._create(device_id, connection, None, None, address)
            elif not record.reachable:
                await self._reconnect(record, connection, None, address)
            else:
                self._replace_connection(record, connection, address)
                record_transition("duplicate")
                self.logger.debug("Online signal for online device", extra={"device_id": device_id})

    async def on_offline(self, device_id: str) -> None:
        device_id = normalize_device_id(device_id)
        async with self._lock_for(device_id):
            record = self._records.get(device_id)
            if record is None:
                self.logger.debug("Offline signal for unknown device", extra={"device_id": device_id})
                return
            if not record.reachable:
                self.logger.debug("Offline signal for offline device", extra={"device_id": device_id})
                return
            connection = record.connection
            record.reachable = False
            record.connection = None
            record.generation += 1
            if connection is not None:
                self.transport.release(connection)
            record_transition("offline")
            self._publish_counts()
            self.logger.info("Device offline", extra={"device_id": device_id})
            await self._emit("device_offline", record)

    async def restore(
        self,
        device_id: str,
        display_name: Optional[str] = None,
        state: Optional[LightState] = None,
        capabilities: Optional[Capabilities] = None,
        address: Optional[str] = None,
        last_seen: Optional[str] = None,
    ) -> bool:
        """Seed an offline record from the accessory cache.

        Returns False when the id is ignored or already known.
        """

        device_id = normalize_device_id(device_id)
        if self.is_ignored(device_id):
            return False
        async with self._lock_for(device_id):
            if device_id in self._records:
                return False
            record = DeviceRecord(
                id=device_id,
                display_name=display_name or default_display_name(device_id),
                reachable=False,
                capabilities=capabilities,
                address=address,
                last_seen=last_seen,
            )
            record.last_known_state = (state or DEFAULT_STATE).bounded(record.effective_capabilities)
            self._records[device_id] = record
            record_transition("restored")
            self._publish_counts()
            self.logger.debug("Restored cached device", extra={"device_id": device_id})
            await self._emit("device_registered", record)
            return True

    async def remove(self, device_id: str) -> bool:
        """Forget a device; returns whether a record existed."""

        device_id = normalize_device_id(device_id)
        async with self._lock_for(device_id):
            record = self._records.pop(device_id, None)
            if record is None:
                return False
            record.generation += 1
            if record.connection is not None:
                self.transport.release(record.connection)
            record.connection = None
            record.reachable = False
            record_transition("removed")
            self._publish_counts()
            self.logger.info("Device removed", extra={"device_id": device_id})
            await self._emit("device_removed", device_id)
            return True

    # Operations

    async def query(self, device_id: str, field: str) -> OperationResult[Any]:
        """Return one field of the light state, reading live when allowed."""

        if field not in STATE_FIELDS:
            raise ValueError(f"Unknown light state field: {field}")
        result = await self.refresh(device_id)
        value = result.value.value(field) if result.value is not None else None
        return OperationResult(value=value, error=result.error)

    async def refresh(self, device_id: str) -> OperationResult[LightState]:
        """Return the whole light state, replacing it from the device when allowed."""

        device_id = normalize_device_id(device_id)
        record = self._records.get(device_id)
        if record is None:
            record_query("unknown")
            return OperationResult.failure(UnknownDevice(device_id, "not registered"))
        if not record.reachable:
            record_query("offline")
            self.logger.debug("Serving cached state for offline device", extra={"device_id": device_id})
            return OperationResult.failure(
                DeviceUnreachable(device_id, "offline"), record.last_known_state
            )
        if record.pending_commands or self._is_fresh(record):
            record_query("cached")
            return OperationResult.success(record.last_known_state)

        generation, revision = record.generation, record.revision
        started = time.perf_counter()
        try:
            probe = await self.transport.get_state(record.connection)
        except TransientIOFailure as exc:
            observe_device_call("get_state", "failure", time.perf_counter() - started)
            record_query("failure")
            self.logger.warning(
                "State read failed; serving cached state",
                extra={"device_id": device_id, "error": str(exc)},
            )
            return OperationResult.failure(exc, record.last_known_state)
        observe_device_call("get_state", "success", time.perf_counter() - started)

        if not self._is_current(record, generation):
            record_query("discarded")
            self.logger.debug("Discarded read from a previous connection", extra={"device_id": device_id})
            if record.reachable:
                return OperationResult.success(record.last_known_state)
            return OperationResult.failure(
                DeviceUnreachable(device_id, "went offline during read"), record.last_known_state
            )
        if record.revision != revision:
            record_query("discarded")
            return OperationResult.success(record.last_known_state)

        record_query("live")
        await self._store_state(record, probe.state)
        return OperationResult.success(record.last_known_state)

    async def command(
        self,
        device_id: str,
        mutation: Mapping[str, Any],
        *,
        fade_ms: Optional[int] = None,
    ) -> OperationResult[LightState]:
        """Apply `mutation` locally, then send it to the bulb.

        The new state is visible to readers before the device acknowledges.
        On a transport failure the optimistic state stays in place and is
        corrected by the next successful read.
        """

        unknown = set(mutation) - set(STATE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown light state field(s): {', '.join(sorted(unknown))}")
        device_id = normalize_device_id(device_id)
        record = self._records.get(device_id)
        if record is None:
            record_command("unknown")
            return OperationResult.failure(UnknownDevice(device_id, "not registered"))
        if not record.reachable:
            record_command("offline")
            self.logger.debug("Dropping command for offline device", extra={"device_id": device_id})
            return OperationResult.failure(
                DeviceUnreachable(device_id, "offline"), record.last_known_state
            )
        if not mutation:
            return OperationResult.success(record.last_known_state)

        fade = self.default_fade_ms if fade_ms is None else max(0, int(fade_ms))
        generation = record.generation
        connection = record.connection
        target = record.last_known_state.apply(mutation).bounded(record.effective_capabilities)
        # Raised before the first await so concurrent reads serve the target.
        record.pending_commands += 1
        record.last_known_state = target
        record.revision += 1
        started = time.perf_counter()
        try:
            await self._emit("state_updated", record)
            if "power" in mutation:
                if not self._is_current(record, generation):
                    return self._dropped_command(record)
                await self.transport.set_power(connection, target.power, fade)
            if any(name in mutation for name in COLOR_FIELDS):
                if not self._is_current(record, generation):
                    return self._dropped_command(record)
                await self.transport.set_color(
                    connection,
                    target.hue,
                    target.saturation,
                    target.brightness,
                    target.kelvin,
                    fade,
                )
        except TransientIOFailure as exc:
            observe_device_call("command", "failure", time.perf_counter() - started)
            record_command("failure")
            self.logger.warning(
                "Command failed",
                extra={"device_id": device_id, "mutation": dict(mutation), "error": str(exc)},
            )
            return OperationResult.failure(exc, record.last_known_state)
        finally:
            record.pending_commands -= 1
        observe_device_call("command", "success", time.perf_counter() - started)
        record_command("success")
        self.logger.debug(
            "Command sent",
            extra={"device_id": device_id, "mutation": dict(mutation), "fade_ms": fade},
        )
        return OperationResult.success(record.last_known_state)

    async def resolve_capabilities(self, device_id: str) -> OperationResult[Capabilities]:
        """Return the device's capabilities, asking the bulb at most once per online session."""

        device_id = normalize_device_id(device_id)
        record = self._records.get(device_id)
        if record is None:
            return OperationResult.failure(UnknownDevice(device_id, "not registered"), DEFAULT_CAPABILITIES)
        if record.capabilities is not None:
            return OperationResult.success(record.capabilities)
        if not record.reachable:
            return OperationResult.failure(
                CapabilityUnresolved(device_id, "device offline"), DEFAULT_CAPABILITIES
            )
        if record.capability_attempted:
            return OperationResult.failure(
                CapabilityUnresolved(device_id, "retried on next reconnection"), DEFAULT_CAPABILITIES
            )
        return await self._resolve(record, notify=True)

    # Snapshots

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        return self._records.get(normalize_device_id(device_id))

    def records(self) -> List[DeviceRecord]:
        return [self._records[key] for key in sorted(self._records)]

    def cached(self, device_id: str, field: str) -> Any:
        """Last known value of `field` without touching the network."""

        record = self._records.get(normalize_device_id(device_id))
        state = record.last_known_state if record is not None else DEFAULT_STATE
        return state.value(field)

    def needs_refresh(self, device_id: str) -> bool:
        """Whether `refresh` would read the bulb right now."""

        record = self._records.get(normalize_device_id(device_id))
        if record is None or not record.reachable or record.pending_commands:
            return False
        return not self._is_fresh(record)

    def counts(self) -> Dict[str, int]:
        online = sum(1 for record in self._records.values() if record.reachable)
        return {"online": online, "offline": len(self._records) - online}

    async def close(self) -> None:
        """Release every connection handle; records keep their cached state."""

        for record in self._records.values():
            if record.connection is not None:
                self.transport.release(record.connection)
            record.connection = None
            record.reachable = False
            record.generation += 1
        self._publish_counts()

    # Internals

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    def _is_fresh(self, record: DeviceRecord) -> bool:
        if self.state_ttl <= 0 or record.last_refreshed is None:
            return False
        return self._clock() - record.last_refreshed < self.state_ttl

    def _is_current(self, record: DeviceRecord, generation: int) -> bool:
        return (
            self._records.get(record.id) is record
            and record.reachable
            and record.generation == generation
        )

    async def _create(
        self,
        device_id: str,
        connection: Any,
        probed_state: Optional[LightState],
        label: Optional[str],
        address: Optional[str],
    ) -> None:
        if probed_state is None:
            try:
                probe = await self.transport.get_state(connection)
            except TransientIOFailure as exc:
                self.logger.warning(
                    "Initial state read failed; using defaults",
                    extra={"device_id": device_id, "error": str(exc)},
                )
            else:
                probed_state = probe.state
                label = label or probe.label
        record = DeviceRecord(
            id=device_id,
            display_name=label or default_display_name(device_id),
            reachable=True,
            connection=connection,
            address=address or self.transport.address(connection),
            generation=1,
        )
        record.touch()
        if probed_state is not None:
            record.last_known_state = probed_state.bounded()
            record.last_refreshed = self._clock()
        self._records[device_id] = record
        await self._resolve(record, notify=False)
        record_transition("discovered")
        self._publish_counts()
        self.logger.info(
            "Device registered",
            extra={
                "device_id": device_id,
                "display_name": record.display_name,
                "address": record.address,
                "capabilities_resolved": record.capabilities is not None,
            },
        )
        await self._emit("device_registered", record)
        await self._emit("device_online", record)

    async def _reconnect(
        self,
        record: DeviceRecord,
        connection: Any,
        probed_state: Optional[LightState],
        address: Optional[str],
    ) -> None:
        self._replace_connection(record, connection, address)
        record.reachable = True
        record.generation += 1
        record.capability_attempted = False
        if probed_state is not None:
            record.last_known_state = probed_state.bounded(record.effective_capabilities)
            record.revision += 1
            record.last_refreshed = self._clock()
        else:
            record.last_refreshed = None
        if record.capabilities is None:
            await self._resolve(record, notify=True)
        record_transition("online")
        self._publish_counts()
        self.logger.info(
            "Device back online",
            extra={"device_id": record.id, "address": record.address},
        )
        await self._emit("device_online", record)
        if probed_state is not None:
            await self._emit("state_updated", record)

    def _replace_connection(self, record: DeviceRecord, connection: Any, address: Optional[str]) -> None:
        previous = record.connection
        record.connection = connection
        if previous is not None and previous is not connection:
            self.transport.release(previous)
        record.address = address or self.transport.address(connection) or record.address
        record.touch()

    async def _resolve(self, record: DeviceRecord, *, notify: bool) -> OperationResult[Capabilities]:
        record.capability_attempted = True
        started = time.perf_counter()
        try:
            info = await self.transport.get_hardware_info(record.connection)
        except TransientIOFailure as exc:
            observe_device_call("get_hardware_info", "failure", time.perf_counter() - started)
            record_capability_resolution("failure")
            self.logger.warning(
                "Capability lookup failed; using defaults until next reconnection",
                extra={"device_id": record.id, "error": str(exc)},
            )
            return OperationResult.failure(
                CapabilityUnresolved(record.id, exc.detail), DEFAULT_CAPABILITIES
            )
        observe_device_call("get_hardware_info", "success", time.perf_counter() - started)
        record_capability_resolution("success")
        if self._records.get(record.id) is not record:
            return OperationResult.success(info.capabilities)
        record.capabilities = info.capabilities
        record.last_known_state = record.last_known_state.bounded(info.capabilities)
        self.logger.debug(
            "Capabilities resolved",
            extra={"device_id": record.id, **info.capabilities.as_dict()},
        )
        if notify:
            await self._emit("capabilities_resolved", record)
        return OperationResult.success(info.capabilities)

    async def _store_state(self, record: DeviceRecord, state: LightState) -> None:
        bounded = state.bounded(record.effective_capabilities)
        changed = bounded != record.last_known_state
        record.last_known_state = bounded
        record.last_refreshed = self._clock()
        record.touch()
        if changed:
            record.revision += 1
            await self._emit("state_updated", record)

    def _dropped_command(self, record: DeviceRecord) -> OperationResult[LightState]:
        record_command("offline")
        self.logger.debug("Device went offline during command", extra={"device_id": record.id})
        return OperationResult.failure(
            DeviceUnreachable(record.id, "went offline during command"), record.last_known_state
        )

    def _publish_counts(self) -> None:
        counts = self.counts()
        set_device_counts(counts["online"], counts["offline"])

    async def _emit(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                await getattr(listener, hook)(*args)
            except Exception:
                self.logger.exception(
                    "Registry listener failed",
                    extra={"hook": hook, "listener": type(listener).__name__},
                )
