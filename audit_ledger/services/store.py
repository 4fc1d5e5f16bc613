"""
Ledger persistence queries.

All SQL touching the audit tables lives here so the persister, detector
and scheduler share one view of the datastore.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional, Sequence

from asyncpg import Connection

from audit_ledger.database import Database
from audit_ledger.events import AuditEvent
from audit_ledger.ledger import GENESIS_HASH, RetentionCheckpoint

logger = logging.getLogger(__name__)

ENTRY_COLUMNS = """
    id, event_id, actor_id, actor_role, action, resource, resource_id,
    patient_id, details, ip_address, user_agent, outcome, risk_level,
    reason, timestamp_utc, previous_hash, hash_chain, created_at
"""


class AuditStore:
    """Query layer over the `audit_logs`, `ledger_state` and `retention_checkpoints` tables."""

    def __init__(self, db: Database):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        async with self.db.transaction() as conn:
            yield conn

    async def health_check(self) -> bool:
        return await self.db.health_check()

    # ========================================================================
    # Chain head
    # ========================================================================

    async def lock_head(self, conn: Connection) -> str:
        """
        Read the last persisted hash and hold its row lock until the
        transaction ends. Concurrent appenders in any process queue here.
        """
        row = await conn.fetchrow(
            "SELECT last_hash FROM ledger_state WHERE id = 1 FOR UPDATE"
        )
        return row['last_hash'] if row else GENESIS_HASH

    async def insert_entry(
        self,
        conn: Connection,
        event: AuditEvent,
        previous_hash: str,
        hash_chain: str
    ) -> Optional[int]:
        """
        Insert a ledger row.

        Returns:
            The new row id, or None if an entry with the same event_id
            already exists
        """
        record = event.to_record()
        return await conn.fetchval(
            """
            INSERT INTO audit_logs (
                event_id, actor_id, actor_role, action, resource, resource_id,
                patient_id, details, ip_address, user_agent, outcome, risk_level,
                reason, timestamp_utc, previous_hash, hash_chain
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING id
            """,
            record['event_id'],
            record['actor_id'],
            record['actor_role'],
            record['action'],
            record['resource'],
            record['resource_id'],
            record['patient_id'],
            record['details'],
            record['ip_address'],
            record['user_agent'],
            record['outcome'],
            record['risk_level'],
            record['reason'],
            record['timestamp_utc'],
            previous_hash,
            hash_chain,
        )

    async def advance_head(self, conn: Connection, hash_chain: str, entry_id: int) -> None:
        await conn.execute(
            """
            UPDATE ledger_state
            SET last_hash = $1, last_entry_id = $2, last_updated = now()
            WHERE id = 1
            """,
            hash_chain,
            entry_id
        )

    async def head(self) -> Dict[str, Any]:
        row = await self.db.fetchrow(
            """
            SELECT last_hash, last_entry_id, integrity_hold, hold_reason, hold_set_at
            FROM ledger_state WHERE id = 1
            """
        )
        if not row:
            return {"last_hash": GENESIS_HASH, "last_entry_id": None,
                    "integrity_hold": False, "hold_reason": None, "hold_set_at": None}
        return dict(row)

    # ========================================================================
    # Integrity hold
    # ========================================================================

    async def get_integrity_hold(self) -> bool:
        return bool(await self.db.fetchval(
            "SELECT integrity_hold FROM ledger_state WHERE id = 1"
        ))

    async def set_integrity_hold(self, reason: str) -> None:
        await self.db.execute(
            """
            UPDATE ledger_state
            SET integrity_hold = true, hold_reason = $1, hold_set_at = now()
            WHERE id = 1
            """,
            reason
        )

    async def clear_integrity_hold(self) -> bool:
        """Clear the hold. Returns True if it was set."""
        was_set = await self.db.fetchval(
            """
            UPDATE ledger_state
            SET integrity_hold = false, hold_reason = NULL, hold_set_at = NULL
            WHERE id = 1 AND integrity_hold
            RETURNING true
            """
        )
        return bool(was_set)

    # ========================================================================
    # Detection queries
    # ========================================================================

    async def count_actions_between(
        self,
        actor_id: str,
        action: str,
        since: datetime,
        until: datetime
    ) -> int:
        return await self.db.fetchval(
            """
            SELECT COUNT(*) FROM audit_logs
            WHERE actor_id = $1 AND action = $2
              AND timestamp_utc >= $3 AND timestamp_utc <= $4
            """,
            actor_id, action, since, until
        )

    async def count_patient_accesses_between(
        self,
        actor_id: str,
        patient_id: str,
        since: datetime,
        until: datetime
    ) -> int:
        return await self.db.fetchval(
            """
            SELECT COUNT(*) FROM audit_logs
            WHERE actor_id = $1 AND patient_id = $2
              AND action LIKE 'PATIENT\\_%'
              AND timestamp_utc >= $3 AND timestamp_utc <= $4
            """,
            actor_id, patient_id, since, until
        )

    async def distinct_ips_between(
        self,
        actor_id: str,
        since: datetime,
        until: datetime
    ) -> List[str]:
        rows = await self.db.fetch(
            """
            SELECT DISTINCT ip_address FROM audit_logs
            WHERE actor_id = $1 AND timestamp_utc >= $2 AND timestamp_utc <= $3
            ORDER BY ip_address
            """,
            actor_id, since, until
        )
        return [r['ip_address'] for r in rows]

    # ========================================================================
    # Reporting queries
    # ========================================================================

    async def aggregate_between(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Counts grouped by (action, risk_level, outcome) in the range."""
        rows = await self.db.fetch(
            """
            SELECT action, risk_level, outcome, COUNT(*) AS count
            FROM audit_logs
            WHERE timestamp_utc >= $1 AND timestamp_utc <= $2
            GROUP BY action, risk_level, outcome
            """,
            start, end
        )
        return [dict(r) for r in rows]

    async def patient_view_activity(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Per-actor PATIENT_VIEW totals in the range."""
        rows = await self.db.fetch(
            """
            SELECT actor_id,
                   COUNT(DISTINCT patient_id) AS unique_patients,
                   COUNT(DISTINCT ip_address) AS unique_ips,
                   COUNT(*) AS total_accesses
            FROM audit_logs
            WHERE action = 'PATIENT_VIEW'
              AND timestamp_utc >= $1 AND timestamp_utc <= $2
            GROUP BY actor_id
            """,
            start, end
        )
        return [dict(r) for r in rows]

    async def count_entries_before(self, cutoff: datetime) -> int:
        return await self.db.fetchval(
            "SELECT COUNT(*) FROM audit_logs WHERE timestamp_utc < $1",
            cutoff
        )

    # ========================================================================
    # Entry reads
    # ========================================================================

    async def get_entry(self, entry_id: int) -> Optional[AuditEvent]:
        row = await self.db.fetchrow(
            f"SELECT {ENTRY_COLUMNS} FROM audit_logs WHERE id = $1",
            entry_id
        )
        return AuditEvent.from_record(row) if row else None

    async def fetch_recent_entries(self, limit: int) -> List[AuditEvent]:
        """The newest `limit` entries, oldest first."""
        rows = await self.db.fetch(
            f"""
            SELECT * FROM (
                SELECT {ENTRY_COLUMNS} FROM audit_logs ORDER BY id DESC LIMIT $1
            ) recent
            ORDER BY id ASC
            """,
            limit
        )
        return [AuditEvent.from_record(r) for r in rows]

    async def fetch_entries_after(
        self,
        after_id: int,
        limit: int,
        until_id: Optional[int] = None
    ) -> List[AuditEvent]:
        """Entries with id > after_id (and <= until_id), oldest first."""
        if until_id is None:
            rows = await self.db.fetch(
                f"""
                SELECT {ENTRY_COLUMNS} FROM audit_logs
                WHERE id > $1 ORDER BY id ASC LIMIT $2
                """,
                after_id, limit
            )
        else:
            rows = await self.db.fetch(
                f"""
                SELECT {ENTRY_COLUMNS} FROM audit_logs
                WHERE id > $1 AND id <= $2 ORDER BY id ASC LIMIT $3
                """,
                after_id, until_id, limit
            )
        return [AuditEvent.from_record(r) for r in rows]

    async def max_entry_id_before(self, cutoff: datetime) -> Optional[int]:
        return await self.db.fetchval(
            "SELECT MAX(id) FROM audit_logs WHERE timestamp_utc < $1",
            cutoff
        )

    async def list_entries(
        self,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        patient_id: Optional[str] = None,
        risk_level: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[AuditEvent]:
        """Filtered listing, newest first."""
        conditions = []
        params: List[Any] = []

        for column, value in (
            ("actor_id", actor_id),
            ("action", action),
            ("patient_id", patient_id),
            ("risk_level", risk_level),
        ):
            if value:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")

        if start_time:
            params.append(start_time)
            conditions.append(f"timestamp_utc >= ${len(params)}")

        if end_time:
            params.append(end_time)
            conditions.append(f"timestamp_utc <= ${len(params)}")

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.extend([limit, offset])

        rows = await self.db.fetch(
            f"""
            SELECT {ENTRY_COLUMNS} FROM audit_logs
            WHERE {where_clause}
            ORDER BY id DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params
        )
        return [AuditEvent.from_record(r) for r in rows]

    # ========================================================================
    # Retention
    # ========================================================================

    async def delete_entries(self, conn: Connection, entry_ids: Sequence[int]) -> int:
        status = await conn.execute(
            "DELETE FROM audit_logs WHERE id = ANY($1::bigint[])",
            list(entry_ids)
        )
        # asyncpg returns e.g. "DELETE 12"
        return int(status.split()[-1])

    async def insert_checkpoint(self, conn: Connection, checkpoint: RetentionCheckpoint) -> int:
        checkpoint_id = await conn.fetchval(
            """
            INSERT INTO retention_checkpoints (
                gap_start_hash, gap_end_hash, first_deleted_id, last_deleted_id,
                deleted_count, created_at, checkpoint_hash, signature, verify_key
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING id
            """,
            checkpoint.gap_start_hash,
            checkpoint.gap_end_hash,
            checkpoint.first_deleted_id,
            checkpoint.last_deleted_id,
            checkpoint.deleted_count,
            checkpoint.created_at,
            checkpoint.checkpoint_hash,
            checkpoint.signature,
            checkpoint.verify_key,
        )
        checkpoint.id = checkpoint_id
        return checkpoint_id

    async def fetch_checkpoints(self) -> List[RetentionCheckpoint]:
        rows = await self.db.fetch(
            """
            SELECT id, gap_start_hash, gap_end_hash, first_deleted_id, last_deleted_id,
                   deleted_count, created_at, checkpoint_hash, signature, verify_key
            FROM retention_checkpoints
            ORDER BY id ASC
            """
        )
        return [RetentionCheckpoint.from_record(r) for r in rows]
