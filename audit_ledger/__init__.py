"""
Hospital Audit Ledger
=====================

The audit/compliance pipeline of the hospital administration backend:
- Tamper-evident hash-chained ledger in PostgreSQL
- Non-blocking, batched event ingestion with risk escalation
- Heuristic misuse detection over recent history
- Scheduled retention, reporting and ledger maintenance jobs
"""

__version__ = "1.0.0"
__author__ = "Hospital Platform Team"
