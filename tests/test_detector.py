"""
Tests for suspicious activity detection.
"""

from datetime import datetime, timedelta, timezone

import pytest

from audit_ledger.events import AuditEvent
from audit_ledger.risk import Outcome, RiskLevel
from audit_ledger.services.detector import SuspiciousActivityDetector

BASE = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def detector(store, persister, settings, alerts):
    detector = SuspiciousActivityDetector(store, alerts.append, settings)
    persister.add_listener(detector.on_persisted)
    return detector


def failed_login(actor_id="user-1", minute=0, ip="10.0.0.1"):
    return AuditEvent(
        actor_id=actor_id,
        actor_role="NURSE",
        action="AUTH_FAILED_LOGIN",
        resource="authentication",
        outcome=Outcome.FAILURE,
        ip_address=ip,
        timestamp=BASE + timedelta(minutes=minute),
    )


def patient_view(patient_id="patient-1", actor_id="doctor-1", minute=0, ip="10.0.0.1"):
    return AuditEvent(
        actor_id=actor_id,
        actor_role="DOCTOR",
        action="PATIENT_VIEW",
        resource="patient_data",
        patient_id=patient_id,
        ip_address=ip,
        timestamp=BASE + timedelta(minutes=minute),
    )


class TestFailedLogins:
    """Tests for the failed login rule."""

    @pytest.mark.asyncio
    async def test_threshold_raises_one_critical_alert(self, detector, persister, alerts):
        await persister.persist([failed_login(minute=i) for i in range(5)])

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.action == "SYSTEM_SUSPICIOUS_LOGIN_ATTEMPTS"
        assert alert.risk_level is RiskLevel.CRITICAL
        assert alert.details["user_id"] == "user-1"
        assert alert.details["failure_count"] == 5

    @pytest.mark.asyncio
    async def test_below_threshold(self, detector, persister, alerts):
        await persister.persist([failed_login(minute=i) for i in range(4)])
        assert alerts == []

    @pytest.mark.asyncio
    async def test_no_duplicate_alert_within_window(self, detector, persister, alerts):
        await persister.persist([failed_login(minute=i) for i in range(5)])
        await persister.persist([failed_login(minute=6)])

        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_old_failures_fall_out_of_window(self, detector, persister, alerts):
        await persister.persist([failed_login(minute=i) for i in range(4)])
        await persister.persist([failed_login(minute=120)])

        assert alerts == []

    @pytest.mark.asyncio
    async def test_later_failures_are_outside_window(self, detector, persister, alerts):
        """The window ends at the analysed event's own timestamp."""
        await persister.persist([failed_login(minute=30 + i) for i in range(4)])
        await persister.persist([failed_login(minute=0)])

        assert alerts == []

    @pytest.mark.asyncio
    async def test_alert_again_after_window(self, detector, persister, alerts):
        await persister.persist([failed_login(minute=i) for i in range(5)])
        await persister.persist([failed_login(minute=70 + i) for i in range(5)])

        assert len(alerts) == 2

    @pytest.mark.asyncio
    async def test_actors_are_counted_separately(self, detector, persister, alerts):
        batch = [failed_login(actor_id=f"user-{i % 2}", minute=i) for i in range(8)]
        await persister.persist(batch)
        assert alerts == []


class TestPatientAccess:
    """Tests for the repeated patient access rule."""

    @pytest.mark.asyncio
    async def test_threshold_raises_high_alert(self, detector, persister, alerts):
        await persister.persist([patient_view(minute=i) for i in range(20)])

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.action == "SYSTEM_UNUSUAL_PATIENT_ACCESS_PATTERN"
        assert alert.risk_level is RiskLevel.HIGH
        assert alert.details["patient_id"] == "patient-1"
        assert alert.details["access_count"] == 20

    @pytest.mark.asyncio
    async def test_different_patients_do_not_add_up(self, detector, persister, alerts):
        await persister.persist([patient_view(patient_id=f"patient-{i}", minute=i) for i in range(25)])
        assert alerts == []

    @pytest.mark.asyncio
    async def test_each_patient_alerts_separately(self, detector, persister, alerts):
        await persister.persist([patient_view(minute=i) for i in range(20)])
        await persister.persist([patient_view(patient_id="patient-2", minute=i) for i in range(20)])

        assert [a.details["patient_id"] for a in alerts] == ["patient-1", "patient-2"]


class TestDistinctIps:
    """Tests for the multiple IP rule."""

    @pytest.mark.asyncio
    async def test_three_addresses_raise_alert(self, detector, persister, alerts):
        await persister.persist([
            patient_view(patient_id=f"patient-{i}", minute=i, ip=f"10.0.0.{i}") for i in range(3)
        ])

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.action == "SYSTEM_MULTIPLE_IP_ACCESS"
        assert alert.risk_level is RiskLevel.HIGH
        assert alert.details["ip_addresses"] == ["10.0.0.0", "10.0.0.1", "10.0.0.2"]

    @pytest.mark.asyncio
    async def test_addresses_seen_later_are_not_counted(self, detector, store, persister, alerts):
        await persister.persist([
            patient_view(patient_id=f"patient-{i}", minute=30 + i, ip=f"10.0.0.{i + 1}") for i in range(2)
        ])
        await persister.persist([patient_view(patient_id="patient-9", minute=0, ip="10.0.0.9")])

        assert alerts == []
        assert await store.distinct_ips_between("doctor-1", BASE - timedelta(hours=1), BASE) == ["10.0.0.9"]

    @pytest.mark.asyncio
    async def test_anonymous_actor_is_ignored(self, detector, persister, alerts):
        await persister.persist([
            patient_view(actor_id="anonymous", patient_id=f"p-{i}", minute=i, ip=f"10.0.1.{i}")
            for i in range(5)
        ])
        assert alerts == []


class TestDetectorGuards:
    """Tests for actors the detector skips and error isolation."""

    @pytest.mark.asyncio
    async def test_system_events_are_not_analysed(self, detector, persister, alerts):
        events = []
        for i in range(5):
            event = AuditEvent.system("AUTH_FAILED_LOGIN_CHECK", outcome=Outcome.FAILURE)
            event.stamp(BASE + timedelta(minutes=i))
            events.append(event)
        await persister.persist(events)
        assert alerts == []

    @pytest.mark.asyncio
    async def test_store_errors_are_contained(self, detector, store, persister, alerts, monkeypatch):
        async def broken(*args, **kwargs):
            raise ConnectionError("query failed")

        monkeypatch.setattr(store, "count_actions_between", broken)

        assert await persister.persist([failed_login()]) == 1
        assert alerts == []
