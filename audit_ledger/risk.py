"""
Deterministic risk classification for audit events.

Every path that creates an AuditEvent goes through `classify_risk`;
there is exactly one rule table and callers cannot override its result.
"""

from enum import Enum
from typing import Dict, Optional, Union


class Outcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    WARNING = "WARNING"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank

    @property
    def escalates(self) -> bool:
        """HIGH and CRITICAL events trigger an immediate drain."""
        return self.at_least(RiskLevel.HIGH)


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}

# Alerts raised by the pipeline itself. Their severity depends on the
# action alone, so they go first.
ALERT_ACTION_LEVELS: Dict[str, RiskLevel] = {
    "SYSTEM_SUSPICIOUS_LOGIN_ATTEMPTS": RiskLevel.CRITICAL,
    "SYSTEM_AUDIT_INTEGRITY_VIOLATION": RiskLevel.CRITICAL,
    "SYSTEM_AUTH_RATE_LIMIT_EXCEEDED": RiskLevel.CRITICAL,
    "SYSTEM_UNUSUAL_PATIENT_ACCESS_PATTERN": RiskLevel.HIGH,
    "SYSTEM_MULTIPLE_IP_ACCESS": RiskLevel.HIGH,
    "SYSTEM_RATE_LIMIT_EXCEEDED": RiskLevel.HIGH,
    "SYSTEM_AUDIT_QUEUE_OVERFLOW": RiskLevel.HIGH,
    "SYSTEM_AUDIT_PERSISTENCE_DEGRADED": RiskLevel.HIGH,
}

HIGH_RISK_MARKERS = ("DELETE", "EXPORT")
MEDIUM_RISK_MARKERS = ("UPDATE", "CREATE")
PRIVILEGED_ROLES = frozenset({"ADMIN", "SYSTEM"})


def normalize_outcome(outcome: Union[Outcome, str, None]) -> Outcome:
    """Coerce an outcome value; anything unrecognised counts as SUCCESS."""
    if isinstance(outcome, Outcome):
        return outcome
    try:
        return Outcome(str(outcome).upper())
    except ValueError:
        return Outcome.SUCCESS


def classify_risk(
    action: str,
    outcome: Union[Outcome, str, None],
    actor_role: Optional[str]
) -> RiskLevel:
    """
    Classify an event. Rules are evaluated in order; first match wins.

    0. pipeline alert actions -> their fixed level
    1. outcome FAILURE -> HIGH
    2. action contains DELETE or EXPORT -> HIGH
    3. action contains UPDATE or CREATE -> MEDIUM
    4. actor role ADMIN or SYSTEM -> MEDIUM
    5. LOW
    """
    action_key = (action or "").upper()
    role_key = (actor_role or "").upper()

    alert_level = ALERT_ACTION_LEVELS.get(action_key)
    if alert_level is not None:
        return alert_level

    if normalize_outcome(outcome) is Outcome.FAILURE:
        return RiskLevel.HIGH

    if any(marker in action_key for marker in HIGH_RISK_MARKERS):
        return RiskLevel.HIGH

    if any(marker in action_key for marker in MEDIUM_RISK_MARKERS):
        return RiskLevel.MEDIUM

    if role_key in PRIVILEGED_ROLES:
        return RiskLevel.MEDIUM

    return RiskLevel.LOW
