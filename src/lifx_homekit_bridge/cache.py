"""Persistent accessory cache.

Remembers every registered bulb between restarts so HomeKit keeps the same
accessories while the bulbs are still asleep. Restored entries start out
offline until discovery finds them again.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from .db import DatabaseManager
from .devices import Capabilities, DeviceRecord, LightState, normalize_device_id
from .logging import get_logger
from .registry import DeviceRegistry, RegistryListener


@dataclass(frozen=True)
class CachedAccessory:
    id: str
    display_name: str
    address: Optional[str]
    capabilities: Optional[Capabilities]
    state: LightState
    last_seen: Optional[str]


def _loads(value: Optional[str]) -> Optional[dict]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class AccessoryCache(RegistryListener):
    """Mirror registry records into the `accessories` table."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db
        self.logger = get_logger("lifx.cache")

    async def load(self) -> List[CachedAccessory]:
        def _select(conn: sqlite3.Connection) -> List[sqlite3.Row]:
            return conn.execute(
                "SELECT id, display_name, address, capabilities, state, last_seen "
                "FROM accessories ORDER BY id"
            ).fetchall()

        entries = []
        for row in await self.db.run(_select):
            capabilities = _loads(row["capabilities"])
            state = _loads(row["state"])
            entries.append(
                CachedAccessory(
                    id=row["id"],
                    display_name=row["display_name"],
                    address=row["address"],
                    capabilities=Capabilities.from_mapping(capabilities) if capabilities else None,
                    state=LightState.from_mapping(state) if state else LightState(),
                    last_seen=row["last_seen"],
                )
            )
        self.logger.info("Loaded cached accessories", extra={"count": len(entries)})
        return entries

    async def restore_into(self, registry: DeviceRegistry) -> int:
        """Seed `registry` with cached accessories and persisted ignores."""

        for device_id in await self.load_ignored():
            registry.ignore(device_id)
        restored = 0
        for entry in await self.load():
            if await registry.restore(
                entry.id,
                entry.display_name,
                entry.state,
                entry.capabilities,
                entry.address,
                entry.last_seen,
            ):
                restored += 1
        return restored

    async def load_ignored(self) -> List[str]:
        rows = await self.db.run(
            lambda conn: conn.execute("SELECT id FROM ignored_devices ORDER BY id").fetchall()
        )
        return [row["id"] for row in rows]

    async def add_ignored(self, device_id: str) -> None:
        device_id = normalize_device_id(device_id)

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute("INSERT OR IGNORE INTO ignored_devices (id) VALUES (?)", (device_id,))
            conn.commit()

        await self.db.run(_insert)

    async def save(self, record: DeviceRecord) -> None:
        params = (
            record.id,
            record.display_name,
            record.address,
            json.dumps(record.capabilities.as_dict()) if record.capabilities else None,
            json.dumps(record.last_known_state.as_dict()),
            record.last_seen,
        )

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO accessories (id, display_name, address, capabilities, state, last_seen)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    display_name=excluded.display_name,
                    address=COALESCE(excluded.address, accessories.address),
                    capabilities=COALESCE(excluded.capabilities, accessories.capabilities),
                    state=excluded.state,
                    last_seen=COALESCE(excluded.last_seen, accessories.last_seen)
                """,
                params,
            )
            conn.commit()

        await self.db.run(_upsert)

    async def delete(self, device_id: str) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM accessories WHERE id = ?", (device_id,))
            conn.commit()

        await self.db.run(_delete)

    async def device_registered(self, record: DeviceRecord) -> None:
        await self.save(record)

    async def device_online(self, record: DeviceRecord) -> None:
        await self.save(record)

    async def device_offline(self, record: DeviceRecord) -> None:
        await self.save(record)

    async def state_updated(self, record: DeviceRecord) -> None:
        await self.save(record)

    async def capabilities_resolved(self, record: DeviceRecord) -> None:
        await self.save(record)

    async def device_removed(self, device_id: str) -> None:
        await self.delete(device_id)
        self.logger.debug("Removed cached accessory", extra={"device_id": device_id})
