"""SQLite helpers and migrations for the accessory cache."""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from .logging import get_logger

Migration = Callable[[sqlite3.Connection], None]

SCHEMA_VERSION_KEY = "schema_version"
BUSY_TIMEOUT_MS = 5000

T = TypeVar("T")


class DatabaseCorruptionError(RuntimeError):
    """The accessory cache file could not be read as SQLite."""


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")


def _ensure_meta_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def _get_schema_version(conn: sqlite3.Connection) -> int:
    _ensure_meta_table(conn)
    row = conn.execute(
        "SELECT value FROM meta WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ).fetchone()
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migration_accessories(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS accessories (
            id TEXT PRIMARY KEY,
            display_name TEXT NOT NULL,
            address TEXT,
            capabilities TEXT,
            state TEXT,
            last_seen TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TRIGGER IF NOT EXISTS trg_accessories_updated_at
        AFTER UPDATE ON accessories
        WHEN old.updated_at = new.updated_at
        BEGIN
            UPDATE accessories SET updated_at = datetime('now') WHERE id = NEW.id;
        END;
        """
    )


def _migration_ignored_devices(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS ignored_devices (
            id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        );
        """
    )


MIGRATIONS: List[Tuple[int, Migration]] = [
    (1, _migration_accessories),
    (2, _migration_ignored_devices),
]


def apply_migrations(db_path: Path) -> int:
    """Apply any pending migrations and return the resulting schema version."""

    logger = get_logger("lifx.db")
    _ensure_parent_dir(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    _configure_connection(conn)
    try:
        current = _get_schema_version(conn)
        logger.info("Current schema version", extra={"version": current})
        for version, migration in _pending_migrations(current):
            logger.info("Applying migration", extra={"version": version})
            migration(conn)
            _set_schema_version(conn, version)
            conn.commit()
            current = version
        return current
    finally:
        conn.close()


def _pending_migrations(current_version: int) -> Iterable[Tuple[int, Migration]]:
    for version, migration in MIGRATIONS:
        if version > current_version:
            yield version, migration


class DatabaseManager:
    """One SQLite connection shared by the cache, used from worker threads.

    The accessory cache can always be rebuilt by discovery, so a corrupted
    file is moved aside instead of repaired. The next start then migrates a
    fresh, empty database.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.logger = get_logger("lifx.db")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run `operation` on the shared connection, one caller at a time."""

        if self._closed:
            raise RuntimeError("Database manager is closed")
        async with self._lock:
            try:
                return await asyncio.to_thread(self._call, operation)
            except sqlite3.DatabaseError as exc:
                if not _is_corruption(exc):
                    raise
                moved_to = await asyncio.to_thread(self._quarantine)
                raise DatabaseCorruptionError(
                    f"Accessory cache {self.db_path} is unreadable ({exc}); moved to {moved_to}"
                ) from exc

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    def _call(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            _ensure_parent_dir(self.db_path)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            _configure_connection(self._conn)
        return operation(self._conn)

    def _quarantine(self) -> Path:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%d%H%M%S")
        target = self.db_path.with_name(f"{self.db_path.name}.corrupt-{stamp}")
        self.db_path.replace(target)
        for suffix in ("-wal", "-shm"):
            with contextlib.suppress(FileNotFoundError):
                Path(f"{self.db_path}{suffix}").unlink()
        self.logger.error(
            "Accessory cache corrupted; moved aside",
            extra={"db_path": str(self.db_path), "moved_to": str(target)},
        )
        return target


def _is_corruption(exc: sqlite3.DatabaseError) -> bool:
    message = str(exc).lower()
    return any(key in message for key in ("malformed", "corrupt", "not a database"))
