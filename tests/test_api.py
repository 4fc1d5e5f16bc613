"""
Integration tests for API endpoints.

The app runs against the in-memory store; the audit pipeline is driven
directly (flush) instead of by the background task.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from audit_ledger.auth import create_access_token
from audit_ledger.main import create_app


@pytest.fixture
def app(settings, audit_service):
    return create_app(settings, audit=audit_service)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": "test-admin-token"}


def bearer(settings, subject, role):
    return {"Authorization": f"Bearer {create_access_token(subject, role, settings)}"}


def queued_actions(audit_service):
    return [event.action for event in audit_service.queue._buffer]


class TestEventSubmission:
    """Tests for POST /v1/events."""

    @pytest.mark.asyncio
    async def test_anonymous_submission_is_rejected(self, client, audit_service):
        response = await client.post("/v1/events", json={
            "action": "AUTH_LOGIN",
            "resource": "authentication",
        })

        assert response.status_code == 401
        assert audit_service.queue.depth == 0

    @pytest.mark.asyncio
    async def test_service_records_on_behalf_of_actor(self, client, audit_service, admin_headers):
        response = await client.post("/v1/events", headers=admin_headers, json={
            "action": "AUTH_FAILED_LOGIN",
            "resource": "authentication",
            "actor_id": "anonymous",
            "outcome": "FAILURE",
            "ip_address": "198.51.100.4",
            "user_agent": "hospital-web/2.1",
        })

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "accepted"
        event = audit_service.queue._buffer[0]
        assert event.event_id == body["event_id"]
        assert event.actor_id == "anonymous"
        assert event.ip_address == "198.51.100.4"
        assert event.user_agent == "hospital-web/2.1"

    @pytest.mark.asyncio
    async def test_user_cannot_record_as_someone_else(self, client, settings, audit_service):
        headers = bearer(settings, "nurse-1", "NURSE")
        for _ in range(5):
            response = await client.post("/v1/events", headers=headers, json={
                "action": "AUTH_FAILED_LOGIN",
                "resource": "authentication",
                "actor_id": "doctor-9",
                "outcome": "FAILURE",
            })
            assert response.status_code == 403

        response = await client.post("/v1/events", headers=headers, json={
            "action": "PATIENT_VIEW",
            "resource": "patient_data",
            "actor_role": "ADMIN",
        })
        assert response.status_code == 403
        assert audit_service.queue.depth == 0

    @pytest.mark.asyncio
    async def test_user_may_repeat_own_identity(self, client, settings, audit_service):
        response = await client.post("/v1/events", headers=bearer(settings, "nurse-1", "NURSE"), json={
            "action": "PATIENT_VIEW",
            "resource": "patient_data",
            "actor_id": "nurse-1",
            "actor_role": "nurse",
            "ip_address": "198.51.100.4",
        })

        assert response.status_code == 202
        event = audit_service.queue._buffer[0]
        assert event.actor_id == "nurse-1"
        assert event.ip_address != "198.51.100.4"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"action": "SYSTEM_AUDIT_INTEGRITY_VIOLATION"},
        {"action": "system_suspicious_login_attempts"},
        {"action": "PATIENT_VIEW", "actor_id": "system"},
        {"action": "PATIENT_VIEW", "actor_role": "SYSTEM"},
    ])
    async def test_pipeline_identity_is_reserved(self, client, audit_service, admin_headers, body):
        response = await client.post(
            "/v1/events",
            headers=admin_headers,
            json={"resource": "patient_data", **body},
        )

        assert response.status_code == 422
        assert audit_service.queue.depth == 0

    @pytest.mark.asyncio
    async def test_system_token_is_rejected(self, client, settings, audit_service):
        response = await client.post(
            "/v1/events",
            json={"action": "PATIENT_VIEW", "resource": "patient_data"},
            headers=bearer(settings, "system", "SYSTEM"),
        )

        assert response.status_code == 403
        assert audit_service.queue.depth == 0

    @pytest.mark.asyncio
    async def test_actor_comes_from_token(self, client, settings, audit_service):
        response = await client.post(
            "/v1/events",
            json={"action": "PATIENT_DELETE", "resource": "patient_data", "patient_id": "p-1"},
            headers={**bearer(settings, "doctor-7", "doctor"), "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        )

        assert response.status_code == 202
        assert response.json()["risk_level"] == "HIGH"
        event = audit_service.queue._buffer[0]
        assert event.actor_id == "doctor-7"
        assert event.actor_role == "DOCTOR"
        assert event.ip_address == "203.0.113.9"

    @pytest.mark.asyncio
    async def test_client_cannot_choose_risk(self, client, admin_headers):
        response = await client.post("/v1/events", headers=admin_headers, json={
            "action": "PATIENT_VIEW",
            "resource": "patient_data",
            "risk_level": "LOW",
            "outcome": "FAILURE",
        })
        assert response.json()["risk_level"] == "HIGH"

    @pytest.mark.asyncio
    async def test_invalid_action_rejected(self, client, admin_headers):
        response = await client.post("/v1/events", headers=admin_headers, json={
            "action": "DROP TABLE",
            "resource": "patient_data",
        })
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_token_is_recorded(self, client, audit_service):
        response = await client.post(
            "/v1/events",
            json={"action": "PATIENT_VIEW", "resource": "patient_data"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401
        assert queued_actions(audit_service) == ["AUTH_FAILED_LOGIN"]
        assert audit_service.queue._buffer[0].reason == "Invalid session token"


class TestEventRetrieval:
    """Tests for GET /v1/events."""

    @pytest.mark.asyncio
    async def test_requires_admin(self, client, settings):
        assert (await client.get("/v1/events")).status_code == 401

        response = await client.get("/v1/events", headers=bearer(settings, "nurse-1", "NURSE"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_list_and_get(self, client, audit_service, admin_headers):
        audit_service.record_patient_access("doctor-1", "DOCTOR", "patient-1", "VIEW")
        audit_service.record_patient_access("doctor-2", "DOCTOR", "patient-2", "VIEW")
        await audit_service.queue.flush()

        response = await client.get("/v1/events?actor_id=doctor-2", headers=admin_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["events"][0]["patient_id"] == "patient-2"

        response = await client.get("/v1/events/1", headers=admin_headers)
        assert response.status_code == 200
        detail = response.json()
        assert detail["id"] == 1
        assert detail["previous_hash"] == "0"
        assert len(detail["hash_chain"]) == 64

    @pytest.mark.asyncio
    async def test_admin_jwt_accepted(self, client, settings):
        response = await client.get("/v1/events", headers=bearer(settings, "admin-1", "ADMIN"))
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_entry(self, client, admin_headers):
        response = await client.get("/v1/events/999", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_limit_is_clamped(self, client, admin_headers):
        response = await client.get("/v1/events?limit=5000", headers=admin_headers)
        assert response.json()["limit"] == 1000


class TestAccessCheck:
    """Tests for POST /v1/access/check."""

    @pytest.mark.asyncio
    async def test_denied(self, client, settings, audit_service):
        response = await client.post(
            "/v1/access/check",
            json={"resource_category": "billing", "patient_id": "patient-1"},
            headers=bearer(settings, "nurse-1", "NURSE"),
        )

        assert response.status_code == 200
        assert response.json() == {
            "allowed": False,
            "actor_role": "NURSE",
            "resource_category": "billing",
        }
        assert queued_actions(audit_service) == ["PATIENT_ACCESS_DENIED"]

    @pytest.mark.asyncio
    async def test_allowed(self, client, settings, audit_service):
        response = await client.post(
            "/v1/access/check",
            json={"resource_category": "patients", "patient_id": "patient-1"},
            headers=bearer(settings, "doctor-1", "DOCTOR"),
        )

        assert response.json()["allowed"] is True
        assert queued_actions(audit_service) == ["PATIENT_READ"]

    @pytest.mark.asyncio
    async def test_anonymous_check_is_rejected(self, client, audit_service):
        response = await client.post(
            "/v1/access/check",
            json={"resource_category": "billing", "actor_role": "ADMIN"},
        )

        assert response.status_code == 401
        assert audit_service.queue.depth == 0

    @pytest.mark.asyncio
    async def test_user_cannot_claim_another_role(self, client, settings, audit_service):
        response = await client.post(
            "/v1/access/check",
            json={"resource_category": "billing", "actor_role": "ADMIN"},
            headers=bearer(settings, "nurse-1", "NURSE"),
        )

        assert response.status_code == 403
        assert audit_service.queue.depth == 0

    @pytest.mark.asyncio
    async def test_service_checks_named_actor(self, client, audit_service, admin_headers):
        response = await client.post(
            "/v1/access/check",
            json={
                "resource_category": "billing",
                "actor_id": "nurse-2",
                "actor_role": "nurse",
                "patient_id": "patient-1",
            },
            headers=admin_headers,
        )

        assert response.json()["allowed"] is False
        assert response.json()["actor_role"] == "NURSE"
        event = audit_service.queue._buffer[0]
        assert event.action == "PATIENT_ACCESS_DENIED"
        assert event.actor_id == "nurse-2"


class TestAdminEndpoints:
    """Tests for /v1/admin."""

    @pytest.mark.asyncio
    async def test_compliance_report(self, client, audit_service, admin_headers):
        audit_service.record_auth_event("user-1", "LOGIN", "SUCCESS")
        await audit_service.queue.flush()

        response = await client.get("/v1/admin/compliance-report", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total_events"] == 1
        assert body["compliance_status"] == "COMPLIANT"

    @pytest.mark.asyncio
    async def test_compliance_report_rejects_inverted_range(self, client, admin_headers):
        response = await client.get(
            "/v1/admin/compliance-report",
            params={"start": "2025-02-01T00:00:00Z", "end": "2025-01-01T00:00:00Z"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_access_review(self, client, admin_headers):
        response = await client.get("/v1/admin/access-review?days=7", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["recommended_actions"] == ["No compliance issues detected"]

    @pytest.mark.asyncio
    async def test_verify_chain(self, client, audit_service, admin_headers):
        audit_service.record_event("doctor-1", "DOCTOR", "PATIENT_VIEW", "patient_data")
        await audit_service.queue.flush()

        response = await client.post("/v1/admin/verify-chain", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["is_valid"] is True
        assert response.json()["entries_checked"] == 1

    @pytest.mark.asyncio
    async def test_ledger_state(self, client, audit_service, store, admin_headers):
        audit_service.record_event("doctor-1", "DOCTOR", "PATIENT_VIEW", "patient_data")
        await audit_service.queue.flush()

        response = await client.get("/v1/admin/ledger", headers=admin_headers)

        body = response.json()
        assert body["last_entry_id"] == 1
        assert body["last_hash"] == store.rows[1]["hash_chain"]
        assert body["integrity_hold"] is False
        assert body["checkpoints"] == []

    @pytest.mark.asyncio
    async def test_clear_hold(self, client, store, admin_headers):
        response = await client.post("/v1/admin/integrity-hold/clear", headers=admin_headers)
        assert response.json() == {"status": "not_set"}

        await store.set_integrity_hold("test")
        response = await client.post("/v1/admin/integrity-hold/clear", headers=admin_headers)
        assert response.json() == {"status": "cleared"}

    @pytest.mark.asyncio
    async def test_run_job(self, client, admin_headers):
        response = await client.post("/v1/admin/jobs/compliance_report/run", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "success"

        response = await client.get("/v1/admin/jobs", headers=admin_headers)
        jobs = {job["name"]: job for job in response.json()["jobs"]}
        assert set(jobs) == {"retention_cleanup", "compliance_report", "ledger_maintenance"}
        assert jobs["compliance_report"]["last_result"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_unknown_job(self, client, admin_headers):
        response = await client.post("/v1/admin/jobs/defragment/run", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_queue_stats(self, client, audit_service, admin_headers):
        audit_service.record_event("doctor-1", "DOCTOR", "PATIENT_VIEW", "patient_data")

        response = await client.get("/v1/admin/queue", headers=admin_headers)

        assert response.json()["depth"] == 1
        assert response.json()["max_size"] == 100
        assert response.json()["hard_max_size"] == 20000

    @pytest.mark.asyncio
    async def test_wrong_admin_token(self, client):
        response = await client.get("/v1/admin/queue", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 401


class TestHealth:
    """Tests for monitoring endpoints."""

    @pytest.mark.asyncio
    async def test_healthy(self, client):
        response = await client.get("/health")
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["integrity_hold"] is False

    @pytest.mark.asyncio
    async def test_degraded_under_hold(self, client, store):
        await store.set_integrity_hold("test")
        response = await client.get("/health")
        assert response.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_database_down(self, client, store):
        store.healthy = False

        assert (await client.get("/health")).json()["status"] == "unhealthy"
        assert (await client.get("/health/ready")).status_code == 503

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health/live")
        assert response.json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "audit_events_enqueued_total" in response.text

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")
        assert response.json()["status"] == "running"
