"""Database models and connection management."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import aiosqlite
import structlog

logger = structlog.get_logger()

STATE_DIR = Path.home() / ".android-espresso-driver"
DEFAULT_DB_PATH = STATE_DIR / "state.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS app_cache (
    source TEXT PRIMARY KEY,
    package_hash TEXT NOT NULL,
    full_path TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_app_cache_hash ON app_cache(package_hash);
"""


@dataclass(frozen=True)
class AppArtifactCacheEntry:
    """A previously resolved package for an app reference."""

    source: str
    package_hash: str
    full_path: str

    def is_valid_for(self, package_hash: str) -> bool:
        """Trust the entry only if the hash matches and the file still exists."""
        return self.package_hash == package_hash and Path(self.full_path).exists()


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Connect to database and initialize schema."""
        self._connection = await aiosqlite.connect(self.db_path)
        await self._connection.executescript(SCHEMA)
        await self._connection.commit()
        logger.info("database_connected", path=str(self.db_path))

    async def disconnect(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("database_disconnected")

    def _require_connection(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Context manager for database transactions."""
        conn = self._require_connection()
        try:
            yield conn
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    # App cache operations

    async def get_app_cache(self, source: str) -> AppArtifactCacheEntry | None:
        """Get the cache entry for an app reference.

        Raises:
            RuntimeError: If the database is not connected
        """
        cursor = await self._require_connection().execute(
            "SELECT source, package_hash, full_path FROM app_cache WHERE source = ?",
            (source,),
        )
        row = await cursor.fetchone()
        if row:
            return AppArtifactCacheEntry(source=row[0], package_hash=row[1], full_path=row[2])
        return None

    async def save_app_cache(self, source: str, package_hash: str, full_path: str) -> None:
        """Save or replace the cache entry for an app reference."""
        now = datetime.now().isoformat()
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO app_cache (source, package_hash, full_path, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(source) DO UPDATE SET
                    package_hash = excluded.package_hash,
                    full_path = excluded.full_path,
                    created_at = excluded.created_at
                """,
                (source, package_hash, full_path, now),
            )

    async def delete_app_cache(self, source: str) -> None:
        """Drop a stale cache entry."""
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM app_cache WHERE source = ?", (source,))
