"""
The AuditEvent record and its serialization contract.

An event is mutable until it is persisted. Sealing it (assigning the
ledger identifier and chain hash) freezes every field. The risk level is
never assigned directly; it follows action, outcome and actor role.
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from audit_ledger.crypto import canonicalize_event
from audit_ledger.errors import ImmutableEventError
from audit_ledger.risk import Outcome, RiskLevel, classify_risk, normalize_outcome

ANONYMOUS_ACTOR = "anonymous"
SYSTEM_ACTOR = "system"
UNKNOWN_ROLE = "UNKNOWN"
SYSTEM_ROLE = "SYSTEM"
UNKNOWN = "unknown"

REDACTED = "[REDACTED]"
TRUNCATED = "[TRUNCATED]"
MAX_DETAIL_DEPTH = 8

_SENSITIVE_KEY = re.compile(
    r"pass(word|wd)|secret|token|authorization|cookie|api[_-]?key|"
    r"ssn|social[_-]?security|credit[_-]?card|card[_-]?number|cvv",
    re.IGNORECASE,
)
_BODY_KEYS = frozenset({"body", "request_body", "raw_body", "payload"})
_RISK_INPUTS = frozenset({"action", "outcome", "actor_role"})


def sanitize_details(details: Any, _depth: int = 0) -> Any:
    """
    Make a details payload safe for the ledger.

    Secret-looking keys and raw request bodies are redacted, values are
    coerced to JSON-native types, and nesting is cut off at MAX_DETAIL_DEPTH.
    """
    if _depth > MAX_DETAIL_DEPTH:
        return TRUNCATED

    if isinstance(details, Mapping):
        clean = {}
        for key, value in details.items():
            key = str(key)
            if _SENSITIVE_KEY.search(key) or key.lower() in _BODY_KEYS:
                clean[key] = REDACTED
            else:
                clean[key] = sanitize_details(value, _depth + 1)
        return clean

    if isinstance(details, (list, tuple, set, frozenset)):
        return [sanitize_details(item, _depth + 1) for item in details]

    if details is None or isinstance(details, (bool, int, float, str)):
        return details

    if isinstance(details, Enum):
        return details.value
    if isinstance(details, datetime):
        return format_timestamp(details)
    if isinstance(details, date):
        return details.isoformat()

    return str(details)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


@dataclass
class AuditEvent:
    """One tamper-evidence-tracked record of a sensitive action."""

    actor_id: str
    actor_role: str
    action: str
    resource: str
    outcome: Outcome = Outcome.SUCCESS
    ip_address: str = UNKNOWN
    user_agent: str = UNKNOWN
    resource_id: Optional[str] = None
    patient_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    risk_level: RiskLevel = field(init=False)
    entry_id: Optional[int] = field(default=None, init=False)
    previous_hash: Optional[str] = field(default=None, init=False)
    hash_chain: Optional[str] = field(default=None, init=False)

    def __post_init__(self):
        self.actor_id = self.actor_id or ANONYMOUS_ACTOR
        self.actor_role = (self.actor_role or UNKNOWN_ROLE).upper()
        self.action = self.action.upper()
        self.outcome = normalize_outcome(self.outcome)
        self.ip_address = self.ip_address or UNKNOWN
        self.user_agent = self.user_agent or UNKNOWN
        if self.details is not None:
            self.details = sanitize_details(self.details)
        if self.timestamp is not None:
            self.timestamp = ensure_utc(self.timestamp)
        self.risk_level = classify_risk(self.action, self.outcome, self.actor_role)

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("hash_chain") is not None:
            raise ImmutableEventError(
                f"Audit event {self.event_id} is persisted and cannot be modified"
            )
        if "risk_level" not in self.__dict__:
            object.__setattr__(self, name, value)
            return

        if name == "risk_level":
            raise ImmutableEventError(
                f"Audit event {self.event_id}: risk_level is derived and cannot be assigned"
            )
        if name == "outcome":
            value = normalize_outcome(value)
        elif name == "action":
            value = str(value).upper()
        elif name == "actor_role":
            value = (value or UNKNOWN_ROLE).upper()
        object.__setattr__(self, name, value)

        if name in _RISK_INPUTS:
            object.__setattr__(
                self, "risk_level", classify_risk(self.action, self.outcome, self.actor_role)
            )

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def system(
        cls,
        name: str,
        details: Optional[Dict[str, Any]] = None,
        outcome: Union[Outcome, str] = Outcome.SUCCESS,
        reason: Optional[str] = None,
    ) -> "AuditEvent":
        """Build a SYSTEM_* event raised by the pipeline or its jobs."""
        action = name.upper()
        if not action.startswith("SYSTEM_"):
            action = f"SYSTEM_{action}"
        return cls(
            actor_id=SYSTEM_ACTOR,
            actor_role=SYSTEM_ROLE,
            action=action,
            resource="system",
            outcome=outcome,
            ip_address="localhost",
            user_agent="system",
            details=details,
            reason=reason,
        )

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "AuditEvent":
        """Rebuild a sealed event from a stored ledger row."""
        details = record.get("details")
        if isinstance(details, str):
            details = json.loads(details)

        event = cls(
            actor_id=record["actor_id"],
            actor_role=record["actor_role"],
            action=record["action"],
            resource=record["resource"],
            outcome=record["outcome"],
            ip_address=record["ip_address"],
            user_agent=record["user_agent"],
            resource_id=record.get("resource_id"),
            patient_id=record.get("patient_id"),
            details=details,
            reason=record.get("reason"),
            timestamp=record["timestamp_utc"],
            event_id=str(record["event_id"]),
        )
        # Stored values win over normalised ones so verification sees the row as written.
        for column in ("actor_id", "actor_role", "action", "ip_address", "user_agent"):
            object.__setattr__(event, column, record[column])
        object.__setattr__(event, "risk_level", RiskLevel(record["risk_level"]))
        object.__setattr__(event, "details", details)
        event.seal(record["id"], record["previous_hash"], record["hash_chain"])
        return event

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def canonical_payload(self) -> Dict[str, Any]:
        """Every hashed field; the chain fields and ledger id are excluded."""
        return {
            "event_id": self.event_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "patient_id": self.patient_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "outcome": self.outcome.value,
            "risk_level": self.risk_level.value,
            "reason": self.reason,
            "timestamp": format_timestamp(self.timestamp),
        }

    def canonical_json(self) -> str:
        return canonicalize_event(self.canonical_payload())

    def to_record(self) -> Dict[str, Any]:
        """Column values for the ledger row."""
        return {
            "event_id": self.event_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "patient_id": self.patient_id,
            "details": canonicalize_event(self.details) if self.details is not None else None,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "outcome": self.outcome.value,
            "risk_level": self.risk_level.value,
            "reason": self.reason,
            "timestamp_utc": self.timestamp,
        }

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view used by the HTTP layer."""
        data = self.canonical_payload()
        data.update(
            id=self.entry_id,
            previous_hash=self.previous_hash,
            hash_chain=self.hash_chain,
        )
        return data

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def persisted(self) -> bool:
        return self.hash_chain is not None

    def stamp(self, when: Optional[datetime] = None) -> None:
        """Set the enqueue timestamp unless one is already present."""
        if self.timestamp is None:
            self.timestamp = ensure_utc(when) if when else utc_now()

    def seal(self, entry_id: Optional[int], previous_hash: str, hash_chain: str) -> None:
        if self.persisted:
            raise ImmutableEventError(f"Audit event {self.event_id} is already sealed")
        object.__setattr__(self, "entry_id", entry_id)
        object.__setattr__(self, "previous_hash", previous_hash)
        object.__setattr__(self, "hash_chain", hash_chain)
