"""
Database connection and session management using asyncpg.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
from asyncpg import Pool, Connection

from audit_ledger.config import Settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS audit_logs (
    id              BIGSERIAL PRIMARY KEY,
    event_id        UUID NOT NULL UNIQUE,
    actor_id        TEXT NOT NULL,
    actor_role      TEXT NOT NULL,
    action          TEXT NOT NULL,
    resource        TEXT NOT NULL,
    resource_id     TEXT,
    patient_id      TEXT,
    details         TEXT,
    ip_address      TEXT NOT NULL,
    user_agent      TEXT NOT NULL,
    outcome         TEXT NOT NULL CHECK (outcome IN ('SUCCESS', 'FAILURE', 'WARNING')),
    risk_level      TEXT NOT NULL CHECK (risk_level IN ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')),
    reason          TEXT,
    timestamp_utc   TIMESTAMPTZ NOT NULL,
    previous_hash   TEXT NOT NULL,
    hash_chain      TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_audit_logs_actor_time ON audit_logs (actor_id, timestamp_utc);
CREATE INDEX IF NOT EXISTS idx_audit_logs_patient_time ON audit_logs (actor_id, patient_id, timestamp_utc);
CREATE INDEX IF NOT EXISTS idx_audit_logs_time ON audit_logs (timestamp_utc);
CREATE INDEX IF NOT EXISTS idx_audit_logs_risk_time ON audit_logs (risk_level, timestamp_utc);

-- Single-row head of the chain; locked FOR UPDATE by every append.
CREATE TABLE IF NOT EXISTS ledger_state (
    id              SMALLINT PRIMARY KEY CHECK (id = 1),
    last_hash       TEXT NOT NULL,
    last_entry_id   BIGINT,
    integrity_hold  BOOLEAN NOT NULL DEFAULT false,
    hold_reason     TEXT,
    hold_set_at     TIMESTAMPTZ,
    last_updated    TIMESTAMPTZ NOT NULL DEFAULT now()
);

INSERT INTO ledger_state (id, last_hash) VALUES (1, '0') ON CONFLICT (id) DO NOTHING;

CREATE TABLE IF NOT EXISTS retention_checkpoints (
    id                BIGSERIAL PRIMARY KEY,
    gap_start_hash    TEXT NOT NULL,
    gap_end_hash      TEXT NOT NULL,
    first_deleted_id  BIGINT NOT NULL,
    last_deleted_id   BIGINT NOT NULL,
    deleted_count     INTEGER NOT NULL,
    created_at        TIMESTAMPTZ NOT NULL,
    checkpoint_hash   TEXT NOT NULL,
    signature         TEXT,
    verify_key        TEXT
);

CREATE INDEX IF NOT EXISTS idx_retention_checkpoints_start ON retention_checkpoints (gap_start_hash);

-- Persisted rows are append-only; retention cleanup is the only deleter.
CREATE OR REPLACE FUNCTION audit_logs_block_update() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'audit_logs rows are immutable';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS audit_logs_no_update ON audit_logs;
CREATE TRIGGER audit_logs_no_update BEFORE UPDATE ON audit_logs
    FOR EACH ROW EXECUTE FUNCTION audit_logs_block_update();
"""


class Database:
    """Async PostgreSQL database connection pool manager."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._pool: Optional[Pool] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Initialize the connection pool."""
        async with self._lock:
            if self._pool is not None:
                return

            logger.info("Connecting to PostgreSQL...")

            self._pool = await asyncpg.create_pool(
                dsn=self.settings.dsn,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
                command_timeout=self.settings.db_command_timeout,
                server_settings={
                    'application_name': self.settings.app_name,
                }
            )

            logger.info("PostgreSQL connection pool created successfully")

    async def disconnect(self) -> None:
        """Close the connection pool."""
        async with self._lock:
            if self._pool is None:
                return

            logger.info("Closing PostgreSQL connection pool...")
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    async def init_schema(self) -> None:
        """Create ledger tables if they do not exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Ledger schema ensured")

    @property
    def pool(self) -> Pool:
        """Get the connection pool."""
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    async def execute(self, query: str, *args) -> str:
        """Execute a query and return status."""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> list:
        """Fetch all rows from a query."""
        async with self.pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row from a query."""
        async with self.pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        """Fetch a single value from a query."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(query, *args)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """Get a connection with transaction context."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            result = await self.fetchval("SELECT 1")
            return result == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
