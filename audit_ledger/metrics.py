"""
Prometheus metrics for the audit pipeline.
"""

from prometheus_client import Counter, Gauge, Histogram

events_enqueued = Counter(
    'audit_events_enqueued_total',
    'Events accepted into the in-memory queue',
    ['risk_level']
)
events_persisted = Counter(
    'audit_events_persisted_total',
    'Events written to the ledger'
)
events_duplicate = Counter(
    'audit_events_duplicate_total',
    'Retried events already present in the ledger'
)
events_dropped = Counter(
    'audit_events_dropped_total',
    'Events dropped by the queue overflow policy',
    ['risk_level']
)
ingestion_failures = Counter(
    'audit_ingestion_failures_total',
    'Events that could not be accepted into the queue'
)
persist_failures = Counter(
    'audit_persist_failures_total',
    'Drain cycles that failed to persist their batch'
)
escalations = Counter(
    'audit_escalations_total',
    'Out-of-band drains requested by HIGH/CRITICAL events'
)
queue_depth = Gauge(
    'audit_queue_depth',
    'Events waiting in the in-memory queue'
)
persistence_degraded = Gauge(
    'audit_persistence_degraded',
    '1 while consecutive persistence failures exceed the alert threshold'
)
integrity_hold = Gauge(
    'audit_integrity_hold',
    '1 while automated deletion is halted after an integrity violation'
)
drain_duration = Histogram(
    'audit_drain_seconds',
    'Duration of one drain cycle'
)
detector_alerts = Counter(
    'audit_detector_alerts_total',
    'Suspicious activity alerts raised',
    ['rule']
)
job_runs = Counter(
    'audit_job_runs_total',
    'Compliance job runs',
    ['job', 'status']
)
