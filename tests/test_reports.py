"""
Tests for compliance reporting.
"""

from datetime import datetime, timedelta, timezone

import pytest

from audit_ledger.models import ComplianceStatus
from audit_ledger.risk import Outcome
from audit_ledger.services.reports import (
    NO_ISSUES,
    REVIEW_ACTIONS,
    ComplianceReporter,
    assess_compliance_status,
    build_access_review,
    build_compliance_report,
)

START = datetime(2025, 6, 1, tzinfo=timezone.utc)
END = datetime(2025, 6, 8, tzinfo=timezone.utc)


def row(action, risk, outcome, count):
    return {"action": action, "risk_level": risk, "outcome": outcome, "count": count}


class TestComplianceStatus:
    """Tests for status thresholds; both bounds are strict."""

    @pytest.mark.parametrize("high,rate,expected", [
        (0, 0.0, ComplianceStatus.COMPLIANT),
        (5, 5.0, ComplianceStatus.COMPLIANT),
        (6, 0.0, ComplianceStatus.MONITORING_REQUIRED),
        (0, 5.01, ComplianceStatus.MONITORING_REQUIRED),
        (10, 10.0, ComplianceStatus.MONITORING_REQUIRED),
        (11, 0.0, ComplianceStatus.NEEDS_ATTENTION),
        (0, 10.5, ComplianceStatus.NEEDS_ATTENTION),
    ])
    def test_thresholds(self, settings, high, rate, expected):
        assert assess_compliance_status(high, rate, settings) is expected


class TestBuildComplianceReport:
    """Tests for folding aggregate rows into a report."""

    def test_totals(self, settings):
        report = build_compliance_report([
            row("PATIENT_VIEW", "LOW", "SUCCESS", 80),
            row("PATIENT_VIEW", "HIGH", "FAILURE", 4),
            row("DATA_EXPORT", "HIGH", "SUCCESS", 2),
            row("BILLING_UPDATE", "MEDIUM", "SUCCESS", 14),
        ], START, END, settings)

        assert report.total_events == 100
        assert report.events_by_action == {"PATIENT_VIEW": 84, "DATA_EXPORT": 2, "BILLING_UPDATE": 14}
        assert report.events_by_risk == {"LOW": 80, "HIGH": 6, "MEDIUM": 14}
        assert report.events_by_outcome == {"SUCCESS": 96, "FAILURE": 4}
        assert report.patient_access_events == 84
        assert report.high_risk_events == 6
        assert report.failure_rate == 4.0
        assert report.compliance_status is ComplianceStatus.MONITORING_REQUIRED
        assert report.report_period.start == START

    def test_critical_counts_as_high_risk(self, settings):
        report = build_compliance_report([
            row("SYSTEM_AUDIT_INTEGRITY_VIOLATION", "CRITICAL", "FAILURE", 1),
        ], START, END, settings)
        assert report.high_risk_events == 1

    def test_failure_rate_is_rounded(self, settings):
        report = build_compliance_report([
            row("AUTH_LOGIN", "LOW", "SUCCESS", 2),
            row("AUTH_FAILED_LOGIN", "HIGH", "FAILURE", 1),
        ], START, END, settings)
        assert report.failure_rate == 33.33
        assert report.compliance_status is ComplianceStatus.NEEDS_ATTENTION

    def test_empty_period(self, settings):
        report = build_compliance_report([], START, END, settings)
        assert report.total_events == 0
        assert report.failure_rate == 0.0
        assert report.compliance_status is ComplianceStatus.COMPLIANT


class TestAccessReview:
    """Tests for the per-actor patient access review."""

    def activity(self, actor, patients=1, ips=1, total=1):
        return {
            "actor_id": actor,
            "unique_patients": patients,
            "unique_ips": ips,
            "total_accesses": total,
        }

    def test_no_violations(self):
        review = build_access_review([self.activity("doctor-1", 50, 5, 200)], START, END)
        assert review.potential_violations == 0
        assert review.recommended_actions == NO_ISSUES
        assert review.total_actors == 1

    def test_each_limit_flags(self):
        review = build_access_review([
            self.activity("many-patients", patients=51),
            self.activity("many-ips", ips=6),
            self.activity("many-accesses", total=201),
            self.activity("normal"),
        ], START, END)

        assert review.potential_violations == 3
        assert [v.actor_id for v in review.violation_details] == [
            "many-patients", "many-ips", "many-accesses"
        ]
        assert review.recommended_actions == REVIEW_ACTIONS


class TestComplianceReporter:
    """Tests for report queries against the store."""

    @pytest.mark.asyncio
    async def test_generate_from_ledger(self, store, persister, settings, make_event):
        inside = START + timedelta(days=1)
        await persister.persist([
            make_event(timestamp=inside),
            make_event(timestamp=inside, outcome=Outcome.FAILURE),
            make_event(timestamp=END + timedelta(days=1)),
        ])

        report = await ComplianceReporter(store, settings).generate(START, END)

        assert report.total_events == 2
        assert report.failure_rate == 50.0
        assert report.high_risk_events == 1

    @pytest.mark.asyncio
    async def test_rejects_inverted_range(self, store, settings):
        with pytest.raises(ValueError):
            await ComplianceReporter(store, settings).generate(END, START)

    @pytest.mark.asyncio
    async def test_weekly_covers_seven_days(self, store, settings):
        report = await ComplianceReporter(store, settings).weekly(now=END)
        assert report.report_period.start == END - timedelta(days=7)
        assert report.report_period.end == END

    @pytest.mark.asyncio
    async def test_review_patient_access(self, store, persister, settings, make_event):
        now = datetime.now(timezone.utc)
        await persister.persist([
            make_event(patient_id=f"patient-{i}", timestamp=now - timedelta(days=1))
            for i in range(51)
        ])

        review = await ComplianceReporter(store, settings).review_patient_access(30, now=now)

        assert review.potential_violations == 1
        assert review.violation_details[0].unique_patients == 51
