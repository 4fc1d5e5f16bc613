"""
Admin endpoints for compliance reporting, chain verification and job control.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from audit_ledger.auth import Identity, require_admin
from audit_ledger.errors import UnknownJobError
from audit_ledger.events import ensure_utc, utc_now
from audit_ledger.models import (
    AccessReview,
    ChainVerificationResult,
    ComplianceReport,
    JobResult,
    QueueStats,
)
from audit_ledger.service import AuditService, get_audit_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ============================================================================
# Compliance
# ============================================================================

@router.get("/compliance-report", response_model=ComplianceReport)
async def compliance_report(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """
    Aggregate the ledger over a date range.

    **Query Parameters:**
    - `start`: Period start (ISO 8601); defaults to seven days before `end`
    - `end`: Period end (ISO 8601); defaults to now

    **Authentication:** Bearer token (ADMIN) or X-Admin-Token
    """
    end = ensure_utc(end) if end else utc_now()
    start = ensure_utc(start) if start else end - timedelta(days=7)

    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    return await audit.generate_compliance_report(start, end)


@router.get("/access-review", response_model=AccessReview)
async def access_review(
    days: int = Query(default=30, ge=1, le=366),
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """Review per-actor patient record access over the trailing `days`."""
    return await audit.review_patient_access(days)


# ============================================================================
# Chain Verification
# ============================================================================

@router.post("/verify-chain", response_model=ChainVerificationResult)
async def verify_chain(
    limit: Optional[int] = Query(default=None, ge=1),
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """
    Verify the hash chain.

    Without `limit` the whole ledger is walked from genesis; with it only
    the newest `limit` entries are checked. Gaps left by retention cleanup
    are accepted only where a valid checkpoint covers them. A failed
    verification sets the integrity hold.
    """
    logger.info(f"Chain verification requested by {admin.actor_id} (limit={limit})")
    return await audit.verify_chain(limit)


@router.get("/ledger")
async def ledger_state(
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """
    Current chain head, integrity hold state and retention checkpoints.

    **Authentication:** Bearer token (ADMIN) or X-Admin-Token
    """
    head = await audit.store.head()
    checkpoints = await audit.store.fetch_checkpoints()
    return {
        **head,
        "checkpoints": [c.to_dict() for c in checkpoints],
    }


@router.post("/integrity-hold/clear")
async def clear_integrity_hold(
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """
    Resume automated deletion after an integrity violation was reviewed.

    **Authentication:** Bearer token (ADMIN) or X-Admin-Token
    """
    cleared = await audit.clear_integrity_hold(admin.actor_id)
    return {"status": "cleared" if cleared else "not_set"}


# ============================================================================
# Jobs & Queue
# ============================================================================

@router.post("/jobs/{name}/run", response_model=JobResult)
async def run_job(
    name: str,
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """
    Run a compliance job now.

    Jobs: `retention_cleanup`, `compliance_report`, `ledger_maintenance`.
    A job already in progress is not started twice; the result then has
    status `skipped`.
    """
    try:
        result = await audit.run_job(name)
    except UnknownJobError as e:
        raise HTTPException(status_code=404, detail=str(e))

    logger.info(f"Job {name} run by {admin.actor_id}: {result.status}")
    return result


@router.get("/jobs")
async def list_jobs(
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """Registered jobs with their last results."""
    scheduler = audit.scheduler
    return {
        "jobs": [
            {
                "name": job.name,
                "frequency": job.schedule.frequency,
                "last_result": scheduler.last_results.get(job.name),
            }
            for job in scheduler.jobs.values()
        ]
    }


@router.get("/queue", response_model=QueueStats)
async def queue_stats(
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    return audit.queue.stats()
