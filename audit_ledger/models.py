"""
Pydantic models for request/response validation.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from audit_ledger.events import SYSTEM_ACTOR, SYSTEM_ROLE
from audit_ledger.risk import Outcome, RiskLevel

_TAG_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')
SYSTEM_ACTION_PREFIX = "SYSTEM_"


def reject_reserved_actor(actor_id: Optional[str]) -> Optional[str]:
    if actor_id is not None and actor_id.strip().lower() == SYSTEM_ACTOR:
        raise ValueError('The system actor is reserved for the audit pipeline')
    return actor_id


def reject_reserved_role(actor_role: Optional[str]) -> Optional[str]:
    if actor_role is not None and actor_role.strip().upper() == SYSTEM_ROLE:
        raise ValueError('The SYSTEM role is reserved for the audit pipeline')
    return actor_role


class ComplianceStatus(str, Enum):
    COMPLIANT = "COMPLIANT"
    MONITORING_REQUIRED = "MONITORING_REQUIRED"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"


# ============================================================================
# Event Models
# ============================================================================

class EventSubmission(BaseModel):
    """Request model for recording an audit event."""

    action: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Action tag of the event",
        examples=["PATIENT_VIEW", "BILLING_UPDATE", "AUTH_LOGIN"]
    )

    resource: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Resource category",
        examples=["patient_data", "billing", "authentication"]
    )

    actor_id: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Acting user; only service callers may name someone other than themselves"
    )

    actor_role: Optional[str] = Field(
        default=None,
        max_length=50,
        description="Acting role; only service callers may name a role other than their own"
    )

    resource_id: Optional[str] = Field(default=None, max_length=200)
    patient_id: Optional[str] = Field(default=None, max_length=200)

    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Structured context; secrets and request bodies are redacted"
    )

    outcome: Outcome = Outcome.SUCCESS
    reason: Optional[str] = Field(default=None, max_length=1000)

    ip_address: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Originating client IP forwarded by a service caller"
    )
    user_agent: Optional[str] = Field(default=None, max_length=500)

    @field_validator('action', 'resource')
    @classmethod
    def validate_tag(cls, v: str) -> str:
        """Allow only alphanumeric characters and underscores."""
        if not _TAG_PATTERN.match(v):
            raise ValueError('Must contain only alphanumeric characters and underscores')
        return v

    @field_validator('action')
    @classmethod
    def validate_action(cls, v: str) -> str:
        """SYSTEM_* events are raised by the pipeline only."""
        if v.upper().startswith(SYSTEM_ACTION_PREFIX):
            raise ValueError('SYSTEM_* actions are reserved for the audit pipeline')
        return v

    @field_validator('actor_id')
    @classmethod
    def validate_actor_id(cls, v: Optional[str]) -> Optional[str]:
        return reject_reserved_actor(v)

    @field_validator('actor_role')
    @classmethod
    def validate_actor_role(cls, v: Optional[str]) -> Optional[str]:
        return reject_reserved_role(v)


class EventResponse(BaseModel):
    """Response model for event submission."""

    status: str = Field(..., examples=["accepted"])
    event_id: str
    risk_level: RiskLevel


class EventDetail(BaseModel):
    """Persisted ledger entry."""

    id: int
    event_id: str
    actor_id: str
    actor_role: str
    action: str
    resource: str
    resource_id: Optional[str] = None
    patient_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: str
    user_agent: str
    outcome: Outcome
    risk_level: RiskLevel
    reason: Optional[str] = None
    timestamp: datetime
    previous_hash: str
    hash_chain: str


# ============================================================================
# Access Models
# ============================================================================

class AccessCheckRequest(BaseModel):
    """Minimum-necessary access check issued by the request pipeline."""

    resource_category: str = Field(..., min_length=1, max_length=100)
    actor_id: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Actor being checked; service callers only"
    )
    actor_role: Optional[str] = Field(
        default=None,
        max_length=50,
        description="Role to check; service callers only, others are checked as their token role"
    )
    patient_id: Optional[str] = None

    @field_validator('actor_id')
    @classmethod
    def validate_actor_id(cls, v: Optional[str]) -> Optional[str]:
        return reject_reserved_actor(v)

    @field_validator('actor_role')
    @classmethod
    def validate_actor_role(cls, v: Optional[str]) -> Optional[str]:
        return reject_reserved_role(v)


class AccessCheckResponse(BaseModel):
    allowed: bool
    actor_role: str
    resource_category: str


# ============================================================================
# Ledger Models
# ============================================================================

class ChainVerificationResult(BaseModel):
    """Result of chain integrity verification."""

    is_valid: bool
    entries_checked: int
    first_invalid_entry_id: Optional[int] = None
    invalid_entry_ids: List[int] = Field(default_factory=list)
    gaps_bridged: int = 0
    anchor_hash: Optional[str] = None
    head_hash: Optional[str] = None
    error_message: Optional[str] = None


class QueueStats(BaseModel):
    depth: int
    max_size: int
    hard_max_size: int
    dropped_total: int
    escalations_total: int
    consecutive_failures: int
    running: bool


# ============================================================================
# Compliance Models
# ============================================================================

class ReportPeriod(BaseModel):
    start: datetime
    end: datetime


class ComplianceReport(BaseModel):
    """Read-only aggregation of the ledger over a date range."""

    report_period: ReportPeriod
    total_events: int
    events_by_action: Dict[str, int]
    events_by_risk: Dict[str, int]
    events_by_outcome: Dict[str, int]
    patient_access_events: int
    high_risk_events: int
    failure_rate: float = Field(..., description="Percentage of FAILURE outcomes")
    compliance_status: ComplianceStatus
    generated_at: datetime
    version: str = "1.0"


class AccessViolation(BaseModel):
    actor_id: str
    unique_patients: int
    unique_ips: int
    total_accesses: int


class AccessReview(BaseModel):
    """Per-actor review of patient record access over a trailing period."""

    check_date: datetime
    period_start: datetime
    period_end: datetime
    total_actors: int
    potential_violations: int
    violation_details: List[AccessViolation]
    recommended_actions: List[str]


class JobResult(BaseModel):
    """Outcome of one scheduled or manual job run."""

    job: str
    status: str = Field(..., examples=["success", "failed", "skipped"])
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# ============================================================================
# Health Check Models
# ============================================================================

class HealthStatus(BaseModel):
    """Health check response."""

    status: str = Field(..., examples=["healthy", "unhealthy"])
    version: str
    database: str = Field(..., examples=["connected", "disconnected"])
    queue_depth: int
    integrity_hold: bool
    uptime_seconds: float
    timestamp: datetime
