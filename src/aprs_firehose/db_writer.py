"""Frame store backed by PostgreSQL."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Sequence

import asyncpg
from asyncpg import Pool

from .config.settings import DatabaseConfig
from .exceptions import StorageError
from .models import Frame


logger = logging.getLogger(__name__)

# Errors that mean "this write did not happen" and may be retried.
_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class FrameStore(Protocol):
    """What the service and the persistence sink need from a store."""

    async def initialize(self) -> None:
        ...

    async def write_batch(self, frames: Sequence[Frame]) -> int:
        ...

    async def health_check(self) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


class PostgresFrameStore:
    """Writes frames to a single PostgreSQL table."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.table = config.table
        self.pool: Optional[Pool] = None

        self.stats = {
            "records_written": 0,
            "batches_written": 0,
            "write_errors": 0,
            "last_write_time": None
        }

        logger.info(f"PostgresFrameStore initialized for table {self.table}")

    async def initialize(self):
        """Create the connection pool and the table."""

        logger.info(f"Connecting to PostgreSQL at {self.config.host}:{self.config.port}/{self.config.name}")

        try:
            self.pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.name,
                min_size=self.config.min_pool_size,
                max_size=self.config.max_pool_size,
                command_timeout=self.config.command_timeout_seconds
            )
            await self._create_tables()
        except _DRIVER_ERRORS as e:
            logger.error(f"Failed to initialize database: {e}", exc_info=True)
            await self.close()
            raise StorageError(f"Database initialization failed: {e}") from e

        logger.info("Database connection pool initialized successfully")

    async def close(self):
        if self.pool:
            logger.info("Closing database connection pool")
            await self.pool.close()
            self.pool = None

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id UUID PRIMARY KEY,
                    source VARCHAR(32) NOT NULL,
                    destination VARCHAR(32) NOT NULL,
                    path TEXT NOT NULL,
                    payload_kind VARCHAR(16) NOT NULL,
                    aprs_format VARCHAR(32) NOT NULL,
                    payload TEXT NOT NULL,
                    decoded JSONB,
                    received_at TIMESTAMPTZ NOT NULL,
                    fingerprint CHAR(40),
                    created_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)

            # Not unique: the same report may legitimately recur after the
            # dedup horizon.
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_fingerprint
                ON {self.table}(fingerprint)
            """)

            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.table}_source_received_at
                ON {self.table}(source, received_at)
            """)

            logger.info("Database tables and indexes created successfully")

    async def write_batch(self, frames: Sequence[Frame]) -> int:
        """
        Insert a batch in one transaction.

        Rows are keyed by frame id, so replaying a batch after an ambiguous
        failure inserts nothing twice.

        Returns:
            Number of frames in the batch

        Raises:
            StorageError: if the batch was not committed
        """
        if not frames:
            return 0

        if not self.pool:
            raise StorageError("Database pool not initialized")

        rows = [self._to_row(frame) for frame in frames]
        query = f"""
            INSERT INTO {self.table}
                (id, source, destination, path, payload_kind, aprs_format,
                 payload, decoded, received_at, fingerprint)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10)
            ON CONFLICT (id) DO NOTHING
        """

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(query, rows)
        except _DRIVER_ERRORS as e:
            self.stats["write_errors"] += 1
            raise StorageError(f"Batch write of {len(frames)} frames failed: {e}") from e

        self.stats["records_written"] += len(frames)
        self.stats["batches_written"] += 1
        self.stats["last_write_time"] = datetime.now(timezone.utc)

        logger.debug(f"Wrote batch of {len(frames)} frames")
        return len(frames)

    @staticmethod
    def _to_row(frame: Frame) -> tuple:
        # PostgreSQL text cannot hold NUL bytes.
        def clean(value: str) -> str:
            return value.replace("\x00", "")

        return (
            frame.frame_id,
            clean(frame.source),
            clean(frame.destination),
            clean(frame.path_string),
            frame.payload_kind.value,
            frame.aprs_format,
            clean(frame.payload),
            clean(json.dumps(dict(frame.decoded), default=str)),
            frame.received_datetime,
            frame.fingerprint,
        )

    async def get_latest_received_at(self, source: str) -> Optional[datetime]:
        """Latest stored receive time for a station."""
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(
                    f"SELECT MAX(received_at) FROM {self.table} WHERE source = $1",
                    source
                )
        except _DRIVER_ERRORS as e:
            logger.error(f"Error getting latest receive time: {e}")
            return None

    async def get_record_count(self, source: Optional[str] = None) -> int:
        """Total stored frames, optionally for one station."""
        try:
            async with self.pool.acquire() as conn:
                if source:
                    result = await conn.fetchval(
                        f"SELECT COUNT(*) FROM {self.table} WHERE source = $1",
                        source
                    )
                else:
                    result = await conn.fetchval(f"SELECT COUNT(*) FROM {self.table}")
                return result or 0
        except _DRIVER_ERRORS as e:
            logger.error(f"Error getting record count: {e}")
            return 0

    async def health_check(self) -> Dict[str, Any]:
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stats": self.get_stats()
        }

        if not self.pool:
            health_status["status"] = "unhealthy"
            health_status["error"] = "Database pool not initialized"
            return health_status

        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except _DRIVER_ERRORS as e:
            health_status["status"] = "unhealthy"
            health_status["error"] = str(e)

        return health_status

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()

        if self.pool:
            stats["pool_stats"] = {
                "size": self.pool.get_size(),
                "max_size": self.pool.get_max_size(),
                "idle_size": self.pool.get_idle_size()
            }

        return stats
