"""
Minimum-necessary access checks - POST /v1/access/check
"""

from fastapi import APIRouter, Depends, Request

from audit_ledger.auth import Identity, get_client_ip, get_user_agent, require_caller, resolve_actor
from audit_ledger.models import AccessCheckRequest, AccessCheckResponse
from audit_ledger.service import AuditService, get_audit_service

router = APIRouter(prefix="/v1/access", tags=["access"])


@router.post("/check", response_model=AccessCheckResponse)
async def check_access(
    check: AccessCheckRequest,
    request: Request,
    caller: Identity = Depends(require_caller),
    audit: AuditService = Depends(get_audit_service)
):
    """
    Decide whether a role may touch a resource category.

    Bearer callers are checked as their own token role. Service callers
    (X-Admin-Token) name the actor and role being checked.

    Denials are recorded as FAILURE `PATIENT_ACCESS_DENIED` events;
    allowed checks that name a patient are recorded as patient access.
    """
    actor = resolve_actor(caller, check.actor_id, check.actor_role)
    allowed = audit.authorize_access(
        actor_id=actor.actor_id,
        actor_role=actor.role,
        resource_category=check.resource_category,
        patient_id=check.patient_id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        details={"endpoint": request.url.path, "method": request.method},
    )

    return AccessCheckResponse(
        allowed=allowed,
        actor_role=actor.role,
        resource_category=check.resource_category
    )
