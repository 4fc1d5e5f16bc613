"""
Request identity: bearer tokens issued by the hospital API and the
service-to-service admin token.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from audit_ledger.config import Settings
from audit_ledger.crypto import constant_time_compare
from audit_ledger.events import ANONYMOUS_ACTOR, SYSTEM_ACTOR, SYSTEM_ROLE, UNKNOWN, UNKNOWN_ROLE
from audit_ledger.risk import Outcome
from audit_ledger.service import get_app_settings

logger = logging.getLogger(__name__)

# Tokens are issued elsewhere; tokenUrl only documents where.
oauth2_scheme_optional = OAuth2PasswordBearer(tokenUrl="/v1/auth/login", auto_error=False)
admin_token_header = APIKeyHeader(name="X-Admin-Token", auto_error=False)

ADMIN_ROLE = "ADMIN"
SERVICE_ACTOR = "service_admin"
DEFAULT_TOKEN_MINUTES = 30


# ============================================================================
# Models
# ============================================================================

class Identity(BaseModel):
    """
    Who is calling.

    `service` marks a backend service authenticated with X-Admin-Token;
    only such callers may record events on behalf of other actors.
    """
    actor_id: str = ANONYMOUS_ACTOR
    role: str = UNKNOWN_ROLE
    authenticated: bool = False
    service: bool = False


# ============================================================================
# JWT Functions
# ============================================================================

def create_access_token(
    subject: str,
    role: str,
    settings: Settings,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token in the format the hospital API issues.

    Args:
        subject: Actor id
        role: Actor role
        settings: Supplies the shared secret and algorithm
        expires_delta: Token lifetime

    Returns:
        Encoded JWT token
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=DEFAULT_TOKEN_MINUTES))
    payload: Dict[str, Any] = {"sub": subject, "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Optional[Identity]:
    """
    Decode and validate a JWT access token.

    Returns:
        Identity if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        return None

    subject = payload.get("sub")
    if subject is None:
        return None

    return Identity(
        actor_id=str(subject),
        role=str(payload.get("role") or UNKNOWN_ROLE).upper(),
        authenticated=True,
    )


# ============================================================================
# Request helpers
# ============================================================================

def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or UNKNOWN


def service_identity(x_admin_token: Optional[str], settings: Settings) -> Optional[Identity]:
    """Identity for a valid X-Admin-Token, None otherwise."""
    if x_admin_token and constant_time_compare(x_admin_token, settings.admin_token):
        return Identity(actor_id=SERVICE_ACTOR, role=ADMIN_ROLE, authenticated=True, service=True)
    return None


# ============================================================================
# Dependencies
# ============================================================================

async def get_request_identity(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme_optional),
    settings: Settings = Depends(get_app_settings)
) -> Identity:
    """
    Identity from the bearer token, or anonymous when none is sent.

    Raises:
        HTTPException: If a token is sent but does not validate; the
            failure is recorded as AUTH_FAILED_LOGIN
    """
    if not token:
        return Identity()

    identity = decode_access_token(token, settings)
    if identity is None:
        audit = getattr(request.app.state, "audit", None)
        if audit is not None:
            audit.record_auth_event(
                ANONYMOUS_ACTOR, "FAILED_LOGIN", Outcome.FAILURE,
                ip_address=get_client_ip(request),
                user_agent=get_user_agent(request),
                reason="Invalid session token",
                details={"endpoint": request.url.path, "method": request.method},
            )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return identity


async def require_admin(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme_optional),
    x_admin_token: Optional[str] = Depends(admin_token_header),
    settings: Settings = Depends(get_app_settings)
) -> Identity:
    """
    Dependency that accepts either an ADMIN bearer token or X-Admin-Token.

    Priority:
    1. JWT Bearer token (preferred)
    2. X-Admin-Token header (service-to-service)
    """
    if token:
        identity = decode_access_token(token, settings)
        if identity is not None:
            if identity.role != ADMIN_ROLE:
                logger.warning(f"Non-admin actor {identity.actor_id} attempted admin action")
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Admin privileges required"
                )
            return identity

    service = service_identity(x_admin_token, settings)
    if service is not None:
        return service

    logger.warning(f"Unauthenticated admin request from {get_client_ip(request)}")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Use Bearer token or X-Admin-Token",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_caller(
    request: Request,
    identity: Identity = Depends(get_request_identity),
    x_admin_token: Optional[str] = Depends(admin_token_header),
    settings: Settings = Depends(get_app_settings)
) -> Identity:
    """
    Dependency for endpoints that write to the ledger.

    Accepts a bearer token (the caller records as itself) or X-Admin-Token
    (a backend service that may record on behalf of others). Anonymous
    requests are rejected.
    """
    if identity.authenticated:
        return identity

    service = service_identity(x_admin_token, settings)
    if service is not None:
        return service

    logger.warning(f"Unauthenticated ledger write from {get_client_ip(request)}")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Use Bearer token or X-Admin-Token",
        headers={"WWW-Authenticate": "Bearer"},
    )


def resolve_actor(
    identity: Identity,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None
) -> Identity:
    """
    The actor a request records as.

    Service callers may name any actor. Everyone else records as
    themselves and may only repeat their own id and role.

    Raises:
        HTTPException: 403 if a non-service caller names someone else or
            the caller's token carries the reserved system identity
    """
    if identity.service:
        return Identity(
            actor_id=actor_id or identity.actor_id,
            role=(actor_role or identity.role).upper(),
            authenticated=True,
            service=True,
        )

    if actor_id is not None and actor_id != identity.actor_id:
        logger.warning(f"Actor {identity.actor_id} tried to record as {actor_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="actor_id does not match the authenticated caller"
        )

    if actor_role is not None and actor_role.upper() != identity.role:
        logger.warning(f"Actor {identity.actor_id} ({identity.role}) tried to record as role {actor_role}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="actor_role does not match the authenticated caller"
        )

    if identity.actor_id.lower() == SYSTEM_ACTOR or identity.role == SYSTEM_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="The system identity is reserved for the audit pipeline"
        )

    return identity
