"""
Exception hierarchy for the audit pipeline.
"""

from typing import Optional


class AuditLedgerError(Exception):
    """Base exception for audit pipeline failures."""
    pass


class ImmutableEventError(AuditLedgerError):
    """Raised when a persisted event is modified."""
    pass


class PersistenceError(AuditLedgerError):
    """
    Raised when a batch cannot be fully written to the ledger.

    `persisted` is the number of events from the batch that were
    committed before the failure.
    """

    def __init__(self, message: str, persisted: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.persisted = persisted
        self.cause = cause


class IntegrityViolationError(AuditLedgerError):
    """Raised when a stored hash does not match its recomputed value."""

    def __init__(self, message: str, entry_id: Optional[int] = None):
        super().__init__(message)
        self.entry_id = entry_id


class IntegrityHoldError(AuditLedgerError):
    """Raised when automated deletion is attempted while the integrity hold is set."""
    pass


class JobTimeoutError(AuditLedgerError):
    """Raised when a scheduled job exceeds its execution timeout."""
    pass


class UnknownJobError(AuditLedgerError):
    """Raised when a job name is not registered with the scheduler."""
    pass
