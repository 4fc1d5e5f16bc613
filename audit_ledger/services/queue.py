"""
In-process buffer between audit producers and the ledger writer.

Producers call `enqueue` from request handlers (or worker threads); it
never awaits, never touches the datastore and never raises. One
background task drains the buffer every `queue_flush_interval_seconds`,
at most `queue_batch_size` events per cycle. HIGH and CRITICAL events
additionally wake the drain task straight away.
"""

import asyncio
import logging
import threading
import time
from collections import Counter, deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Sequence

from audit_ledger import metrics
from audit_ledger.config import Settings
from audit_ledger.errors import PersistenceError
from audit_ledger.events import AuditEvent
from audit_ledger.models import QueueStats
from audit_ledger.risk import Outcome, RiskLevel

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit_ledger.fallback")

BatchSink = Callable[[Sequence[AuditEvent]], Awaitable[int]]


class EventQueue:
    """
    Bounded FIFO of pending audit events with a single drain task.

    Overflow policy: past `max_size` the oldest event of the lowest risk
    level present is dropped (LOW before MEDIUM). HIGH and CRITICAL events
    may exceed `max_size` but not `hard_max_size`; past that the oldest
    HIGH event goes first, then the oldest CRITICAL one.
    """

    def __init__(self, sink: BatchSink, settings: Settings):
        self._sink = sink
        self.flush_interval = settings.queue_flush_interval_seconds
        self.batch_size = settings.queue_batch_size
        self.max_size = settings.queue_max_size
        self.hard_max_size = max(settings.queue_hard_max_size, self.max_size)
        self.failure_alert_threshold = settings.persist_failure_alert_threshold

        self._buffer: Deque[AuditEvent] = deque()
        self._buffer_lock = threading.Lock()
        self._drain_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._dropped_pending: Counter = Counter()
        self.dropped_total = 0
        self.escalations_total = 0
        self.consecutive_failures = 0
        self._degraded = False
        self._last_cycle_failed = False

    # ========================================================================
    # Producer side
    # ========================================================================

    def enqueue(self, event: AuditEvent) -> None:
        """Accept an event without blocking. Never raises."""
        try:
            event.stamp()
            with self._buffer_lock:
                dropped = self._admit(event)
                depth = len(self._buffer)

            metrics.events_enqueued.labels(risk_level=event.risk_level.value).inc()
            metrics.queue_depth.set(depth)
            self._record_drops(dropped)

            if event.risk_level.escalates:
                self._request_drain()
        except Exception as e:
            metrics.ingestion_failures.inc()
            fallback_logger.critical(
                f"Audit event could not be queued: action={getattr(event, 'action', '?')} "
                f"actor={getattr(event, 'actor_id', '?')} error={e}"
            )

    @property
    def depth(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    def _admit(self, event: AuditEvent) -> List[AuditEvent]:
        """Append under the buffer lock, applying the overflow policy."""
        if len(self._buffer) < self.max_size:
            self._buffer.append(event)
            return []

        lowest = min(e.risk_level.rank for e in self._buffer)
        if event.risk_level.rank < lowest and not event.risk_level.escalates:
            return [event]

        self._buffer.append(event)
        return self._enforce_bound()

    def _enforce_bound(self) -> List[AuditEvent]:
        """Drop lowest-risk, oldest events until within bound. Caller holds the lock."""
        dropped = []
        while len(self._buffer) > self.max_size:
            lowest = min(e.risk_level.rank for e in self._buffer)
            if lowest >= RiskLevel.HIGH.rank and len(self._buffer) <= self.hard_max_size:
                break
            for index, queued in enumerate(self._buffer):
                if queued.risk_level.rank == lowest:
                    del self._buffer[index]
                    dropped.append(queued)
                    break
        return dropped

    def _record_drops(self, dropped: List[AuditEvent]) -> None:
        for event in dropped:
            self.dropped_total += 1
            self._dropped_pending[event.risk_level.value] += 1
            metrics.events_dropped.labels(risk_level=event.risk_level.value).inc()
            log = fallback_logger.critical if event.risk_level.escalates else fallback_logger.error
            log(
                f"Audit queue full; dropped {event.risk_level.value} event "
                f"{event.event_id} action={event.action} actor={event.actor_id}"
            )

    def _request_drain(self) -> None:
        self.escalations_total += 1
        metrics.escalations.inc()
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._wakeup.set)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start the drain task on the running event loop."""
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._running = True
        self._task = asyncio.create_task(self._run(), name="audit-queue-drain")
        logger.info(
            f"Audit queue started (interval={self.flush_interval}s, "
            f"batch={self.batch_size}, max={self.max_size}, hard_max={self.hard_max_size})"
        )

    async def stop(self, drain: bool = True) -> None:
        """Stop the drain task and, by default, flush what is left."""
        self._running = False
        self._wakeup.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=max(self.flush_interval, 1.0) * 2)
            except asyncio.TimeoutError:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        if drain:
            await self.drain_all()

        remaining = self.depth
        if remaining:
            fallback_logger.critical(f"Audit queue stopped with {remaining} undelivered events")
        self._loop = None
        logger.info("Audit queue stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            if not self._running:
                break
            try:
                await self.flush()
            except Exception as e:
                logger.exception(f"Audit drain cycle crashed: {e}")

    # ========================================================================
    # Drain side
    # ========================================================================

    async def flush(self) -> int:
        """
        Run one drain cycle: take up to `batch_size` events and persist them.

        Drain cycles are mutually exclusive. On failure the events that were
        not persisted go back to the front of the queue.

        Returns:
            Number of events persisted in this cycle
        """
        async with self._drain_lock:
            batch = self._take_batch()
            if not batch:
                self._last_cycle_failed = False
                return 0

            started = time.monotonic()
            try:
                persisted = await self._sink(batch)
            except PersistenceError as e:
                self._on_failure(batch[e.persisted:], e)
                return e.persisted
            except Exception as e:
                self._on_failure(batch, e)
                return 0
            finally:
                metrics.drain_duration.observe(time.monotonic() - started)

            if persisted < len(batch):
                self._requeue(batch[persisted:])

            self._on_success()
            return persisted

    async def drain_all(self) -> int:
        """Flush until the queue is empty or a cycle fails."""
        total = 0
        while self.depth:
            total += await self.flush()
            if self._last_cycle_failed:
                break
        return total

    def _take_batch(self) -> List[AuditEvent]:
        with self._buffer_lock:
            count = min(self.batch_size, len(self._buffer))
            batch = [self._buffer.popleft() for _ in range(count)]
            metrics.queue_depth.set(len(self._buffer))
        return batch

    def _requeue(self, events: Sequence[AuditEvent]) -> None:
        with self._buffer_lock:
            self._buffer.extendleft(reversed(events))
            dropped = self._enforce_bound()
            metrics.queue_depth.set(len(self._buffer))
        self._record_drops(dropped)

    def _on_failure(self, remainder: Sequence[AuditEvent], error: Exception) -> None:
        self._last_cycle_failed = True
        self._requeue(remainder)
        self.consecutive_failures += 1
        metrics.persist_failures.inc()
        logger.error(
            f"Failed to process audit batch ({self.consecutive_failures} consecutive): "
            f"{error}; requeued {len(remainder)} events"
        )

        if self.consecutive_failures >= self.failure_alert_threshold and not self._degraded:
            self._degraded = True
            metrics.persistence_degraded.set(1)
            logger.critical(
                f"Audit persistence failing for {self.consecutive_failures} consecutive cycles; "
                f"{self.depth} events pending"
            )

    def _on_success(self) -> None:
        self._last_cycle_failed = False
        followups: List[AuditEvent] = []

        if self.consecutive_failures:
            details = {"failed_cycles": self.consecutive_failures, "pending": self.depth}
            if self._degraded:
                followups.append(AuditEvent.system(
                    "AUDIT_PERSISTENCE_DEGRADED", details, Outcome.WARNING,
                    reason="Persistence failures exceeded the alert threshold"
                ))
            followups.append(AuditEvent.system(
                "AUDIT_PERSISTENCE_RECOVERED", details, Outcome.WARNING
            ))
            logger.warning(f"Audit persistence recovered after {self.consecutive_failures} failed cycles")
            self.consecutive_failures = 0
            self._degraded = False
            metrics.persistence_degraded.set(0)

        if self._dropped_pending:
            dropped: Dict[str, int] = dict(self._dropped_pending)
            self._dropped_pending.clear()
            followups.append(AuditEvent.system(
                "AUDIT_QUEUE_OVERFLOW",
                {"dropped": dropped, "max_size": self.max_size, "hard_max_size": self.hard_max_size},
                Outcome.WARNING,
                reason="Queue bound reached; events were dropped"
            ))

        for event in followups:
            self.enqueue(event)

    def stats(self) -> QueueStats:
        return QueueStats(
            depth=self.depth,
            max_size=self.max_size,
            hard_max_size=self.hard_max_size,
            dropped_total=self.dropped_total,
            escalations_total=self.escalations_total,
            consecutive_failures=self.consecutive_failures,
            running=self.running,
        )
