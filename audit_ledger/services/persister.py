"""
Ledger writer.

Handles event storage with hash chaining for tamper detection. Each
event is appended in its own transaction: the chain head row is locked,
the next hash is computed from it, the entry is inserted and the head
advanced. An in-process lock keeps drains from interleaving; the row lock
does the same across processes.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Sequence

from audit_ledger import metrics
from audit_ledger.errors import PersistenceError
from audit_ledger.events import AuditEvent
from audit_ledger.ledger import next_hash
from audit_ledger.services.store import AuditStore

logger = logging.getLogger(__name__)

PersistListener = Callable[[AuditEvent], Awaitable[None]]


class Persister:
    """Writes batches of events to the hash-chained ledger."""

    def __init__(self, store: AuditStore):
        self.store = store
        self._lock = asyncio.Lock()
        self._listeners: List[PersistListener] = []

    def add_listener(self, listener: PersistListener) -> None:
        """
        Register a callback run after each newly persisted event.

        Args:
            listener: Async function that takes the sealed event
        """
        self._listeners.append(listener)
        logger.info(f"Registered persist listener: {getattr(listener, '__qualname__', listener)}")

    async def persist(self, batch: Sequence[AuditEvent]) -> int:
        """
        Persist a batch in order, stopping at the first failure.

        Returns:
            Number of events from the front of the batch that are now in
            the ledger (including retried duplicates)

        Raises:
            PersistenceError: If an event cannot be written; `persisted`
                tells how many events before it were committed
        """
        persisted = 0
        async with self._lock:
            for event in batch:
                if event.persisted:
                    persisted += 1
                    continue

                try:
                    is_new = await self._append(event)
                except Exception as e:
                    logger.error(
                        f"Failed to persist audit event {event.event_id} "
                        f"({event.action}): {e}"
                    )
                    raise PersistenceError(
                        f"Persisting event {event.event_id} failed",
                        persisted=persisted,
                        cause=e
                    ) from e

                persisted += 1
                if is_new:
                    await self._notify(event)

        return persisted

    async def _append(self, event: AuditEvent) -> bool:
        """Append one event. Returns False if its event_id was already stored."""
        event.stamp()

        async with self.store.transaction() as conn:
            previous_hash = await self.store.lock_head(conn)
            chain_hash = next_hash(previous_hash, event)
            entry_id = await self.store.insert_entry(conn, event, previous_hash, chain_hash)

            if entry_id is None:
                logger.info(f"Audit event {event.event_id} already persisted; skipping")
                metrics.events_duplicate.inc()
                return False

            await self.store.advance_head(conn, chain_hash, entry_id)

        event.seal(entry_id, previous_hash, chain_hash)
        metrics.events_persisted.inc()

        if event.risk_level.escalates:
            logger.warning(
                f"High-risk audit event stored: id={entry_id}, action={event.action}, "
                f"actor={event.actor_id}, risk={event.risk_level.value}"
            )
        else:
            logger.debug(f"Audit event stored: id={entry_id}, action={event.action}")

        return True

    async def _notify(self, event: AuditEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"Persist listener failed for event {event.event_id}: {e}")
