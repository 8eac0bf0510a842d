"""
Tests for the Funnel Session API.

Exercises the HTTP surface with FastAPI's TestClient against a temporary
session store and in-memory collaborators.
"""

import sqlite3
from datetime import timedelta

import pytest

from database.funnel_session_persistence import utcnow
from funnel.collaborators import EnrollmentService
from funnel.models import InvitePaymentStatus
from tests.helpers.funnel_builders import build_funnel, step
from web import dependencies

USER = {"X-User-Id": "user_1"}


def create(api_client, **body):
    response = api_client.post("/api/funnel/session", json={"funnelId": "funnel_1", **body})
    assert response.status_code == 201, response.text
    return response.json()["sessionId"]


def link(api_client, session_id, headers=USER, **body):
    return api_client.post(
        "/api/funnel/session/link-user",
        json={"sessionId": session_id, **body},
        headers=headers,
    )


class TestCreateSession:

    def test_create_session(self, api_client):
        session_id = create(api_client, inviteCode="INV", referrerId="ref_1")
        assert session_id.startswith("flow_")

    def test_payment_status_from_invite(self, api_client, funnel_store):
        funnel_store.add_invite("funnel_1", "PAID", InvitePaymentStatus.PRE_PAID)

        response = api_client.post("/api/funnel/session", json={"funnelId": "funnel_1", "inviteCode": "PAID"})

        assert response.status_code == 201
        assert response.json()["paymentStatus"] == "pre_paid"

    def test_payment_status_defaults(self, api_client, funnel_store):
        plain = api_client.post("/api/funnel/session", json={"funnelId": "funnel_1", "inviteCode": "UNKNOWN"})
        assert plain.json()["paymentStatus"] == "required"

        funnel_store.add_funnel(build_funnel([step("a", "info")], funnel_id="gift", defaultPaymentStatus="free"))
        free = api_client.post("/api/funnel/session", json={"funnelId": "gift"})
        assert free.json()["paymentStatus"] == "free"

        session_id = free.json()["sessionId"]
        fetched = api_client.get("/api/funnel/session", params={"sessionId": session_id})
        assert fetched.json()["session"]["paymentStatus"] == "free"

    def test_unknown_funnel(self, api_client):
        response = api_client.post("/api/funnel/session", json={"funnelId": "nope"})
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "FunnelNotFound"

    def test_inactive_funnel(self, api_client, funnel_store):
        funnel_store.add_funnel(build_funnel([step("a", "info")], funnel_id="old", isActive=False))
        response = api_client.post("/api/funnel/session", json={"funnelId": "old"})
        assert response.status_code == 404

    def test_invite_only_requires_valid_invite(self, api_client, funnel_store):
        funnel_store.add_funnel(build_funnel([step("a", "info")], funnel_id="vip", accessType="invite_only"))
        funnel_store.add_invite("vip", "GOOD", InvitePaymentStatus.PRE_PAID)

        assert api_client.post("/api/funnel/session", json={"funnelId": "vip"}).status_code == 403
        assert api_client.post(
            "/api/funnel/session", json={"funnelId": "vip", "inviteCode": "BAD"}
        ).status_code == 403
        assert api_client.post(
            "/api/funnel/session", json={"funnelId": "vip", "inviteCode": "GOOD"}
        ).status_code == 201

    def test_request_id_header(self, api_client):
        response = api_client.post(
            "/api/funnel/session",
            json={"funnelId": "funnel_1"},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"


class TestGetSession:

    def test_get_session_camel_case(self, api_client):
        session_id = create(api_client)
        response = api_client.get("/api/funnel/session", params={"sessionId": session_id})

        assert response.status_code == 200
        body = response.json()
        assert body["expired"] is False
        assert body["session"]["id"] == session_id
        assert body["session"]["funnelId"] == "funnel_1"
        assert body["session"]["currentStepIndex"] == 0
        assert body["session"]["data"] == {}

    def test_get_unknown_session(self, api_client):
        response = api_client.get("/api/funnel/session", params={"sessionId": "flow_nope"})
        assert response.status_code == 404

    def test_get_expired_session(self, api_client, persistence):
        session_id = create(api_client)
        past = (utcnow() - timedelta(minutes=1)).isoformat()
        with sqlite3.connect(persistence.db_path) as conn:
            conn.execute("UPDATE flow_sessions SET expires_at = ?", (past,))
            conn.commit()

        response = api_client.get("/api/funnel/session", params={"sessionId": session_id})
        assert response.status_code == 200
        assert response.json()["expired"] is True


class TestPatchSession:

    def test_patch_merges_data(self, api_client):
        session_id = create(api_client)
        api_client.patch(f"/api/funnel/session/{session_id}", json={"data": {"goal": "fitness"}})
        response = api_client.patch(
            f"/api/funnel/session/{session_id}",
            json={"completedStepIndex": 0, "currentStepIndex": 1, "data": {"age": 40}},
        )

        assert response.status_code == 200
        session = response.json()["session"]
        assert session["data"] == {"goal": "fitness", "age": 40}
        assert session["currentStepIndex"] == 1
        assert session["highestCompletedStepIndex"] == 0

    def test_patch_bad_index(self, api_client):
        session_id = create(api_client)
        response = api_client.patch(f"/api/funnel/session/{session_id}", json={"currentStepIndex": 42})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "InvalidStepIndex"

    def test_patch_unknown_session(self, api_client):
        response = api_client.patch("/api/funnel/session/flow_nope", json={"data": {"a": 1}})
        assert response.status_code == 404

    def test_patch_completed_session(self, api_client):
        session_id = create(api_client)
        link(api_client, session_id)
        api_client.post("/api/funnel/complete", json={"sessionId": session_id}, headers=USER)

        response = api_client.patch(f"/api/funnel/session/{session_id}", json={"data": {"a": 1}})
        assert response.status_code == 409


class TestLinkUser:

    def test_requires_authentication(self, api_client):
        session_id = create(api_client)
        assert link(api_client, session_id, headers={}).status_code == 401

    def test_missing_session_id(self, api_client):
        response = api_client.post("/api/funnel/session/link-user", json={}, headers=USER)
        assert response.status_code == 400

    def test_link_is_idempotent(self, api_client):
        session_id = create(api_client)

        first = link(api_client, session_id)
        second = link(api_client, session_id)

        assert first.status_code == 200
        assert first.json()["alreadyLinked"] is False
        assert second.json()["alreadyLinked"] is True

    def test_link_to_other_user(self, api_client):
        session_id = create(api_client)
        link(api_client, session_id)
        response = link(api_client, session_id, headers={"X-User-Id": "user_2"})
        assert response.status_code == 403

    def test_cross_tenant_conflict(self, api_client, identity):
        identity.memberships["user_1"] = {"org_other"}
        session_id = create(api_client)

        response = link(api_client, session_id)
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "CrossTenantConflict"
        assert detail["choices"] == ["continue_and_join", "sign_out_and_retry"]
        assert detail["currentOrganizationIds"] == ["org_other"]

        confirmed = link(api_client, session_id, confirmJoin=True)
        assert confirmed.status_code == 200
        assert confirmed.json()["joinedOrganization"] is True
        assert identity.memberships["user_1"] == {"org_other", "org_1"}


class TestCompleteFunnel:

    def test_requires_authentication(self, api_client):
        session_id = create(api_client)
        response = api_client.post("/api/funnel/complete", json={"sessionId": session_id})
        assert response.status_code == 401

    def test_missing_session_id(self, api_client):
        response = api_client.post("/api/funnel/complete", json={}, headers=USER)
        assert response.status_code == 400

    def test_unknown_session(self, api_client):
        response = api_client.post("/api/funnel/complete", json={"sessionId": "flow_nope"}, headers=USER)
        assert response.status_code == 404

    def test_unlinked_session(self, api_client):
        session_id = create(api_client)
        response = api_client.post("/api/funnel/complete", json={"sessionId": session_id}, headers=USER)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "SessionNotLinked"

    def test_other_users_session(self, api_client):
        session_id = create(api_client)
        link(api_client, session_id)
        response = api_client.post(
            "/api/funnel/complete", json={"sessionId": session_id}, headers={"X-User-Id": "user_2"}
        )
        assert response.status_code == 403

    def test_complete_twice_enrolls_once(self, api_client, enrollment):
        session_id = create(api_client)
        api_client.patch(
            f"/api/funnel/session/{session_id}",
            json={"data": {"goal": "fitness", "stripePaymentIntentId": "pi_123"}},
        )
        link(api_client, session_id)

        first = api_client.post("/api/funnel/complete", json={"sessionId": session_id}, headers=USER)
        second = api_client.post("/api/funnel/complete", json={"sessionId": session_id}, headers=USER)

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["redirectUrl"] == second.json()["redirectUrl"]
        assert first.json()["alreadyCompleted"] is False
        assert second.json()["alreadyCompleted"] is True
        assert first.json()["enrollmentId"] == second.json()["enrollmentId"]
        assert len(enrollment.requests) == 1
        assert enrollment.requests[0].payment_references == {"stripePaymentIntentId": "pi_123"}

    def test_enrollment_failure_is_retryable(self, app, api_client):
        class FlakyEnrollment(EnrollmentService):
            def __init__(self):
                self.calls = 0

            async def finalize(self, request):
                from funnel.collaborators import EnrollmentResult
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("billing unavailable")
                return EnrollmentResult(enrollment_id="enr_ok", redirect_url="/portal")

        flaky = FlakyEnrollment()
        app.dependency_overrides[dependencies.get_enrollment_service] = lambda: flaky

        session_id = create(api_client)
        link(api_client, session_id)

        failed = api_client.post("/api/funnel/complete", json={"sessionId": session_id}, headers=USER)
        assert failed.status_code == 502
        assert failed.json()["detail"]["retryable"] is True

        retried = api_client.post("/api/funnel/complete", json={"sessionId": session_id}, headers=USER)
        assert retried.status_code == 200
        assert retried.json()["redirectUrl"] == "/portal"
        assert retried.json()["enrollmentId"] == "enr_ok"


class TestHealth:

    def test_health(self, api_client):
        response = api_client.get("/api/funnel/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
