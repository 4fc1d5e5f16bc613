"""
Audit service: the interface request handlers and other collaborators use.

Wires the pipeline together:

    collaborator -> record_* -> EventQueue -> Persister -> ledger
                                                  |
                                  SuspiciousActivityDetector -> EventQueue

plus the ComplianceScheduler. One instance is built per application and
tied to its lifespan.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import Request

from audit_ledger import access, metrics
from audit_ledger.config import Settings
from audit_ledger.crypto import optional_signing_key, verify_key_hex
from audit_ledger.events import (
    ANONYMOUS_ACTOR,
    UNKNOWN,
    UNKNOWN_ROLE,
    AuditEvent,
    utc_now,
)
from audit_ledger.ledger import GENESIS_HASH, verify_chain
from audit_ledger.models import AccessReview, ChainVerificationResult, ComplianceReport, JobResult
from audit_ledger.risk import Outcome
from audit_ledger.services.detector import SuspiciousActivityDetector
from audit_ledger.services.persister import Persister
from audit_ledger.services.queue import EventQueue, fallback_logger
from audit_ledger.services.reports import ComplianceReporter
from audit_ledger.services.scheduler import ComplianceScheduler
from audit_ledger.services.store import AuditStore

logger = logging.getLogger(__name__)

MAX_REPORTED_INVALID_IDS = 100


class AuditService:
    """Owns the audit pipeline components for one application."""

    def __init__(self, store: AuditStore, settings: Settings):
        self.settings = settings
        self.store = store
        self.signing_key = optional_signing_key(settings.checkpoint_signing_key)
        self.trusted_verify_key = verify_key_hex(self.signing_key) if self.signing_key else None

        self.persister = Persister(store)
        self.queue = EventQueue(self.persister.persist, settings)
        self.detector = SuspiciousActivityDetector(store, self.queue.enqueue, settings)
        self.persister.add_listener(self.detector.on_persisted)
        self.reporter = ComplianceReporter(store, settings)
        self.scheduler = ComplianceScheduler(
            store, self.queue.enqueue, self.reporter, settings, self.signing_key
        )
        self.started_at: Optional[datetime] = None

    async def start(self) -> None:
        self.queue.start()
        if self.settings.enable_scheduler:
            self.scheduler.start()

        if await self.store.get_integrity_hold():
            metrics.integrity_hold.set(1)
            logger.critical("Integrity hold is set; automated deletion remains halted")

        self.started_at = utc_now()
        logger.info("Audit service started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.queue.stop(drain=True)
        logger.info("Audit service stopped")

    # ========================================================================
    # Recording
    # ========================================================================

    def record_event(
        self,
        actor_id: Optional[str],
        actor_role: Optional[str],
        action: str,
        resource: str,
        resource_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        outcome: Union[Outcome, str] = Outcome.SUCCESS,
        reason: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Record an event without waiting for the ledger. Never raises.

        Returns:
            The queued event, or None if it could not be built
        """
        try:
            event = AuditEvent(
                actor_id=actor_id or ANONYMOUS_ACTOR,
                actor_role=actor_role or UNKNOWN_ROLE,
                action=action,
                resource=resource,
                resource_id=resource_id,
                patient_id=patient_id,
                details=details,
                ip_address=ip_address or UNKNOWN,
                user_agent=user_agent or UNKNOWN,
                outcome=outcome,
                reason=reason,
            )
        except Exception as e:
            metrics.ingestion_failures.inc()
            fallback_logger.critical(
                f"Audit event could not be built: action={action} actor={actor_id} error={e}"
            )
            return None

        self.queue.enqueue(event)
        return event

    def record_auth_event(
        self,
        actor_id: Optional[str],
        action: str,
        outcome: Union[Outcome, str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
        actor_role: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """Record LOGIN, LOGOUT, FAILED_LOGIN, PASSWORD_CHANGE and similar as AUTH_*."""
        return self.record_event(
            actor_id=actor_id,
            actor_role=actor_role,
            action=_prefixed("AUTH_", action),
            resource="authentication",
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            outcome=outcome,
            reason=reason,
        )

    def record_patient_access(
        self,
        actor_id: Optional[str],
        actor_role: Optional[str],
        patient_id: str,
        access_type: str,
        outcome: Union[Outcome, str] = Outcome.SUCCESS,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """Record access to a patient's data as PATIENT_<access_type>."""
        return self.record_event(
            actor_id=actor_id,
            actor_role=actor_role,
            action=_prefixed("PATIENT_", access_type),
            resource="patient_data",
            resource_id=patient_id,
            patient_id=patient_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            outcome=outcome,
            reason=reason,
        )

    def record_system_event(
        self,
        name: str,
        details: Optional[Dict[str, Any]] = None,
        outcome: Union[Outcome, str] = Outcome.SUCCESS,
        reason: Optional[str] = None
    ) -> Optional[AuditEvent]:
        try:
            event = AuditEvent.system(name, details, outcome, reason=reason)
        except Exception as e:
            metrics.ingestion_failures.inc()
            fallback_logger.critical(f"System audit event {name} could not be built: {e}")
            return None
        self.queue.enqueue(event)
        return event

    def record_data_export(
        self,
        actor_id: Optional[str],
        actor_role: Optional[str],
        data_type: str,
        record_count: int,
        export_format: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        endpoint: Optional[str] = None
    ) -> Optional[AuditEvent]:
        return self.record_event(
            actor_id=actor_id,
            actor_role=actor_role,
            action="DATA_EXPORT",
            resource=data_type,
            details={
                "record_count": record_count,
                "export_format": export_format,
                "endpoint": endpoint,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # ========================================================================
    # Access control
    # ========================================================================

    def check_access(self, actor_role: Optional[str], resource_category: str) -> bool:
        return access.check_access(actor_role, resource_category)

    def authorize_access(
        self,
        actor_id: Optional[str],
        actor_role: Optional[str],
        resource_category: str,
        patient_id: Optional[str] = None,
        access_type: str = "READ",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Check access and record the decision.

        A denial is always recorded as a FAILURE PATIENT_ACCESS_DENIED
        event; an allowed access is recorded when it names a patient.
        """
        allowed = self.check_access(actor_role, resource_category)

        if not allowed:
            self.record_patient_access(
                actor_id, actor_role, patient_id or UNKNOWN, "ACCESS_DENIED",
                outcome=Outcome.FAILURE,
                reason="Insufficient permissions",
                ip_address=ip_address,
                user_agent=user_agent,
                details={"resource_category": resource_category, **(details or {})},
            )
            logger.warning(
                f"Access denied: actor={actor_id} role={actor_role} category={resource_category}"
            )
        elif patient_id:
            self.record_patient_access(
                actor_id, actor_role, patient_id, access_type,
                ip_address=ip_address,
                user_agent=user_agent,
                details=details,
            )

        return allowed

    # ========================================================================
    # Reporting and ledger maintenance
    # ========================================================================

    async def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        return await self.reporter.generate(start, end)

    async def review_patient_access(self, days: int = 30) -> AccessReview:
        return await self.reporter.review_patient_access(days)

    async def verify_chain(self, limit: Optional[int] = None) -> ChainVerificationResult:
        """
        Verify the ledger.

        Args:
            limit: Verify only the newest `limit` entries; None walks the
                whole ledger from genesis page by page

        Returns:
            ChainVerificationResult; a failure also sets the integrity hold
        """
        checkpoints = await self.store.fetch_checkpoints()

        if limit is not None:
            entries = await self.store.fetch_recent_entries(limit)
            result = verify_chain(entries, checkpoints, anchor=None,
                                  trusted_verify_key=self.trusted_verify_key)
        else:
            result = await self._verify_full(checkpoints)

        if result.is_valid:
            logger.info(f"Chain verified: {result.entries_checked} entries")
        else:
            await self.scheduler.flag_integrity_violation(result, "manual_verification")
        return result

    async def _verify_full(self, checkpoints) -> ChainVerificationResult:
        page_size = self.settings.retention_page_size
        running = GENESIS_HASH
        after_id = 0
        checked = 0
        gaps = 0
        invalid: List[int] = []
        error_message = None

        while True:
            page = await self.store.fetch_entries_after(after_id, page_size)
            if not page:
                break

            result = verify_chain(page, checkpoints, anchor=running,
                                  trusted_verify_key=self.trusted_verify_key)
            checked += result.entries_checked
            gaps += result.gaps_bridged
            invalid.extend(result.invalid_entry_ids)
            error_message = error_message or result.error_message

            running = result.head_hash
            after_id = page[-1].entry_id

        return ChainVerificationResult(
            is_valid=not invalid,
            entries_checked=checked,
            first_invalid_entry_id=invalid[0] if invalid else None,
            invalid_entry_ids=invalid[:MAX_REPORTED_INVALID_IDS],
            gaps_bridged=gaps,
            anchor_hash=GENESIS_HASH,
            head_hash=running,
            error_message=error_message,
        )

    async def clear_integrity_hold(self, actor_id: str) -> bool:
        """Lift the integrity hold after manual review. Returns True if it was set."""
        cleared = await self.store.clear_integrity_hold()
        if cleared:
            metrics.integrity_hold.set(0)
            self.record_system_event(
                "AUDIT_INTEGRITY_HOLD_CLEARED",
                {"cleared_by": actor_id},
                Outcome.WARNING,
            )
            logger.warning(f"Integrity hold cleared by {actor_id}")
        return cleared

    async def run_job(self, name: str) -> JobResult:
        return await self.scheduler.run_job(name)


def _prefixed(prefix: str, action: str) -> str:
    action = action.upper()
    return action if action.startswith(prefix) else f"{prefix}{action}"


def get_audit_service(request: Request) -> AuditService:
    """Dependency injection for the application's audit service."""
    return request.app.state.audit


def get_app_settings(request: Request) -> Settings:
    """Dependency injection for the settings the application was built with."""
    return request.app.state.settings
