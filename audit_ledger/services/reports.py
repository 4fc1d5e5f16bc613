"""
Compliance reporting over the ledger.

Reports are read-only aggregations; they never write to the chain.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Mapping, Optional

from audit_ledger.config import Settings
from audit_ledger.events import ensure_utc, utc_now
from audit_ledger.models import (
    AccessReview,
    AccessViolation,
    ComplianceReport,
    ComplianceStatus,
    ReportPeriod,
)
from audit_ledger.risk import Outcome, RiskLevel
from audit_ledger.services.store import AuditStore

logger = logging.getLogger(__name__)

PATIENT_ACTION_PREFIX = "PATIENT_"

# Per-actor limits for the patient access review
MAX_UNIQUE_PATIENTS = 50
MAX_UNIQUE_IPS = 5
MAX_TOTAL_ACCESSES = 200

REVIEW_ACTIONS = [
    "Review user access patterns",
    "Verify legitimate business need for extensive patient access",
    "Consider implementing role-based access controls",
    "Monitor for data breach indicators",
]
NO_ISSUES = ["No compliance issues detected"]


def assess_compliance_status(
    high_risk_events: int,
    failure_rate: float,
    settings: Settings
) -> ComplianceStatus:
    """
    Classify a reporting period.

    NEEDS_ATTENTION above the attention thresholds, MONITORING_REQUIRED
    above the monitoring thresholds, COMPLIANT otherwise. Both bounds are
    strict.
    """
    if (high_risk_events > settings.report_high_risk_attention
            or failure_rate > settings.report_failure_rate_attention):
        return ComplianceStatus.NEEDS_ATTENTION

    if (high_risk_events > settings.report_high_risk_monitoring
            or failure_rate > settings.report_failure_rate_monitoring):
        return ComplianceStatus.MONITORING_REQUIRED

    return ComplianceStatus.COMPLIANT


def build_compliance_report(
    rows: Iterable[Mapping[str, Any]],
    start: datetime,
    end: datetime,
    settings: Settings,
    generated_at: Optional[datetime] = None
) -> ComplianceReport:
    """
    Fold (action, risk_level, outcome, count) aggregate rows into a report.

    Args:
        rows: Output of `AuditStore.aggregate_between`
        start: Period start (inclusive)
        end: Period end (inclusive)
        settings: Supplies the status thresholds

    Returns:
        ComplianceReport for the period
    """
    by_action: Dict[str, int] = {}
    by_risk: Dict[str, int] = {}
    by_outcome: Dict[str, int] = {}
    total = 0
    patient_access = 0
    high_risk = 0
    failures = 0

    for row in rows:
        count = int(row["count"])
        action = row["action"]
        risk = row["risk_level"]
        outcome = row["outcome"]

        total += count
        by_action[action] = by_action.get(action, 0) + count
        by_risk[risk] = by_risk.get(risk, 0) + count
        by_outcome[outcome] = by_outcome.get(outcome, 0) + count

        if action.startswith(PATIENT_ACTION_PREFIX):
            patient_access += count
        if RiskLevel(risk).escalates:
            high_risk += count
        if outcome == Outcome.FAILURE.value:
            failures += count

    failure_rate = round(failures / total * 100, 2) if total else 0.0

    return ComplianceReport(
        report_period=ReportPeriod(start=start, end=end),
        total_events=total,
        events_by_action=by_action,
        events_by_risk=by_risk,
        events_by_outcome=by_outcome,
        patient_access_events=patient_access,
        high_risk_events=high_risk,
        failure_rate=failure_rate,
        compliance_status=assess_compliance_status(high_risk, failure_rate, settings),
        generated_at=generated_at or utc_now(),
    )


def build_access_review(
    rows: Iterable[Mapping[str, Any]],
    start: datetime,
    end: datetime
) -> AccessReview:
    """Flag actors whose PATIENT_VIEW activity exceeds the review limits."""
    rows = list(rows)
    violations = [
        AccessViolation(
            actor_id=row["actor_id"],
            unique_patients=row["unique_patients"],
            unique_ips=row["unique_ips"],
            total_accesses=row["total_accesses"],
        )
        for row in rows
        if row["unique_patients"] > MAX_UNIQUE_PATIENTS
        or row["unique_ips"] > MAX_UNIQUE_IPS
        or row["total_accesses"] > MAX_TOTAL_ACCESSES
    ]

    return AccessReview(
        check_date=end,
        period_start=start,
        period_end=end,
        total_actors=len(rows),
        potential_violations=len(violations),
        violation_details=violations,
        recommended_actions=list(REVIEW_ACTIONS if violations else NO_ISSUES),
    )


class ComplianceReporter:
    """Runs report queries against the store."""

    def __init__(self, store: AuditStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def generate(self, start: datetime, end: datetime) -> ComplianceReport:
        start, end = ensure_utc(start), ensure_utc(end)
        if start > end:
            raise ValueError("Report start must not be after its end")

        rows = await self.store.aggregate_between(start, end)
        report = build_compliance_report(rows, start, end, self.settings)
        logger.info(
            f"Compliance report {start.date()}..{end.date()}: "
            f"{report.total_events} events, status={report.compliance_status.value}"
        )
        return report

    async def weekly(self, now: Optional[datetime] = None) -> ComplianceReport:
        end = now or utc_now()
        return await self.generate(end - timedelta(days=7), end)

    async def review_patient_access(
        self,
        days: int = 30,
        now: Optional[datetime] = None
    ) -> AccessReview:
        end = now or utc_now()
        start = end - timedelta(days=days)
        rows = await self.store.patient_view_activity(start, end)
        review = build_access_review(rows, start, end)
        if review.potential_violations:
            logger.warning(
                f"Patient access review flagged {review.potential_violations} "
                f"of {review.total_actors} actors"
            )
        return review
