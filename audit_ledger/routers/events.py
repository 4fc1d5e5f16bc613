"""
Event recording and retrieval endpoints - /v1/events
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from audit_ledger.auth import (
    Identity,
    get_client_ip,
    get_user_agent,
    require_admin,
    require_caller,
    resolve_actor,
)
from audit_ledger.models import EventDetail, EventResponse, EventSubmission
from audit_ledger.risk import RiskLevel
from audit_ledger.service import AuditService, get_audit_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["events"])


@router.post("/events", response_model=EventResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_event(
    submission: EventSubmission,
    request: Request,
    caller: Identity = Depends(require_caller),
    audit: AuditService = Depends(get_audit_service)
):
    """
    Record an audit event.

    The event is queued and written to the ledger asynchronously; the
    response only confirms acceptance. HIGH and CRITICAL events are
    flushed straight away.

    **Authentication:** Bearer token (records as the token's actor) or
    X-Admin-Token (a backend service; may set `actor_id`, `actor_role`,
    `ip_address` and `user_agent` for the actor it reports on).
    SYSTEM_* actions and the system actor are reserved for the pipeline.
    The risk level is always derived server-side.
    """
    actor = resolve_actor(caller, submission.actor_id, submission.actor_role)

    ip_address = get_client_ip(request)
    user_agent = get_user_agent(request)
    if caller.service:
        ip_address = submission.ip_address or ip_address
        user_agent = submission.user_agent or user_agent

    event = audit.record_event(
        actor_id=actor.actor_id,
        actor_role=actor.role,
        action=submission.action,
        resource=submission.resource,
        resource_id=submission.resource_id,
        patient_id=submission.patient_id,
        details=submission.details,
        ip_address=ip_address,
        user_agent=user_agent,
        outcome=submission.outcome,
        reason=submission.reason,
    )

    if event is None:
        raise HTTPException(status_code=500, detail="Event could not be recorded")

    return EventResponse(
        status="accepted",
        event_id=event.event_id,
        risk_level=event.risk_level
    )


@router.get("/events/{entry_id}", response_model=EventDetail)
async def get_event(
    entry_id: int,
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """Retrieve a single persisted ledger entry by id."""
    event = await audit.store.get_entry(entry_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return event.to_dict()


@router.get("/events")
async def list_events(
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    patient_id: Optional[str] = None,
    risk_level: Optional[RiskLevel] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1),
    offset: int = Query(default=0, ge=0),
    admin: Identity = Depends(require_admin),
    audit: AuditService = Depends(get_audit_service)
):
    """
    List ledger entries, newest first.

    **Query Parameters:**
    - `actor_id`, `action`, `patient_id`, `risk_level`: exact filters
    - `start_time` / `end_time`: bounds on the event timestamp (ISO 8601)
    - `limit`: Maximum number of entries to return (default: 100, max: 1000)
    - `offset`: Number of entries to skip (for pagination)
    """
    limit = min(limit, 1000)

    events = await audit.store.list_entries(
        actor_id=actor_id,
        action=action.upper() if action else None,
        patient_id=patient_id,
        risk_level=risk_level.value if risk_level else None,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        offset=offset,
    )

    return {
        "events": [e.to_dict() for e in events],
        "count": len(events),
        "limit": limit,
        "offset": offset
    }
