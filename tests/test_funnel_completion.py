"""
Tests for funnel completion.

Covers the server-side exactly-once ledger and the client handler that
flushes answers, finalizes, and clears the cached pointer.
"""

import asyncio

import httpx
import pytest

from funnel.client import FunnelSessionClient
from funnel.collaborators import EnrollmentResult, EnrollmentService
from funnel.completion import CompletionHandler, collect_payment_references
from funnel.errors import (
    CompletionFailedError,
    CompletionInProgressError,
    EnrollmentError,
    SessionNotFoundError,
    SessionNotLinkedError,
    SessionOwnershipError,
)
from funnel.pointer_cache import InMemoryPointerCache
from services.funnel_completion_service import FunnelCompletionService, extract_user_data
from tests.helpers.funnel_builders import build_funnel, step


class FailingEnrollment(EnrollmentService):
    def __init__(self, failures=1):
        self.failures = failures
        self.calls = 0

    async def finalize(self, request):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("billing provider unavailable")
        return EnrollmentResult(enrollment_id="enr_retry")


class SlowEnrollment(EnrollmentService):
    def __init__(self):
        self.calls = 0
        self.release = asyncio.Event()

    async def finalize(self, request):
        self.calls += 1
        await self.release.wait()
        return EnrollmentResult(enrollment_id="enr_slow", redirect_url="/welcome")


@pytest.fixture
def linked_session(persistence, funnel):
    session = persistence.create_session(funnel)
    persistence.patch_session(session.id, current_step_index=2, data={"goal": "fitness", "stripePaymentIntentId": "pi_1"})
    persistence.link_user(session.id, "user_1")
    return session


@pytest.fixture
def service(persistence, funnel_store, enrollment):
    return FunnelCompletionService(persistence, funnel_store, enrollment, default_redirect_url="/home")


class TestPaymentReferences:

    def test_collects_known_keys(self):
        data = {"stripePaymentIntentId": "pi_1", "stripeSubscriptionId": "", "goal": "x"}
        assert collect_payment_references(data) == {"stripePaymentIntentId": "pi_1"}

    def test_extract_user_data_drops_blank_values(self):
        assert extract_user_data({"goal": "run", "identity": "", "other": 1}) == {"goal": "run"}


class TestFunnelCompletionService:

    @pytest.mark.asyncio
    async def test_complete_enrolls_once(self, service, enrollment, linked_session):
        first = await service.complete(linked_session.id, "user_1")
        second = await service.complete(linked_session.id, "user_1")

        assert first.enrollment_id == "enr_1"
        assert first.already_completed is False
        assert second.already_completed is True
        assert second.enrollment_id == first.enrollment_id
        assert second.redirect_url == first.redirect_url == "/home"
        assert len(enrollment.requests) == 1

    @pytest.mark.asyncio
    async def test_enrollment_request_carries_answers(self, service, enrollment, linked_session):
        await service.complete(linked_session.id, "user_1", payment_references={"stripeCheckoutSessionId": "cs_1"})

        request = enrollment.requests[0]
        assert request.user_id == "user_1"
        assert request.organization_id == "org_1"
        assert request.program_id == "program_1"
        assert request.data["userData"] == {"goal": "fitness"}
        assert request.payment_references == {
            "stripePaymentIntentId": "pi_1",
            "stripeCheckoutSessionId": "cs_1",
        }

    @pytest.mark.asyncio
    async def test_session_marked_completed(self, service, persistence, linked_session):
        await service.complete(linked_session.id, "user_1")

        session = persistence.get_session(linked_session.id).session
        assert session.is_complete
        assert session.current_step_index == session.step_count

    @pytest.mark.asyncio
    async def test_success_step_redirect(self, persistence, enrollment):
        from funnel.collaborators import InMemoryFunnelStore
        funnel = build_funnel([step("q", "question"), step("done", "success", skipSuccessRedirect="/dashboard")])
        session = persistence.create_session(funnel)
        persistence.link_user(session.id, "user_1")
        service = FunnelCompletionService(persistence, InMemoryFunnelStore([funnel]), enrollment)

        outcome = await service.complete(session.id, "user_1")

        assert outcome.redirect_url == "/dashboard"

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        with pytest.raises(SessionNotFoundError):
            await service.complete("flow_missing", "user_1")

    @pytest.mark.asyncio
    async def test_unlinked_session(self, service, persistence, funnel):
        session = persistence.create_session(funnel)
        with pytest.raises(SessionNotLinkedError):
            await service.complete(session.id, "user_1")

    @pytest.mark.asyncio
    async def test_other_users_session(self, service, linked_session):
        with pytest.raises(SessionOwnershipError):
            await service.complete(linked_session.id, "user_2")

    @pytest.mark.asyncio
    async def test_failure_releases_claim(self, persistence, funnel_store, linked_session):
        enrollment = FailingEnrollment(failures=1)
        service = FunnelCompletionService(persistence, funnel_store, enrollment)

        with pytest.raises(EnrollmentError) as exc_info:
            await service.complete(linked_session.id, "user_1")
        assert exc_info.value.retryable is True
        assert persistence.get_completion(linked_session.id) is None

        outcome = await service.complete(linked_session.id, "user_1")
        assert outcome.enrollment_id == "enr_retry"
        assert enrollment.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_completion_rejected(self, persistence, funnel_store, linked_session):
        enrollment = SlowEnrollment()
        service = FunnelCompletionService(persistence, funnel_store, enrollment)

        first = asyncio.create_task(service.complete(linked_session.id, "user_1"))
        while enrollment.calls == 0:
            await asyncio.sleep(0)

        with pytest.raises(CompletionInProgressError):
            await service.complete(linked_session.id, "user_1")

        enrollment.release.set()
        outcome = await first
        assert outcome.redirect_url == "/welcome"
        assert enrollment.calls == 1


class TestCompletionHandler:

    @pytest.mark.asyncio
    async def test_complete_clears_pointer(self, funnel, enrollment, linked_session, make_session_client):
        cache = InMemoryPointerCache()
        cache.set(funnel.id, linked_session.id)

        async with make_session_client(user_id="user_1") as client:
            handler = CompletionHandler(funnel.id, client, cache)
            result = await handler.complete(linked_session.id, {"goal": "fitness"})

        assert result.redirect_url == "/"
        assert result.enrollment_id == "enr_1"
        assert cache.get(funnel.id) is None
        assert enrollment.requests[0].payment_references == {"stripePaymentIntentId": "pi_1"}

    @pytest.mark.asyncio
    async def test_retry_is_idempotent(self, funnel, enrollment, linked_session, make_session_client):
        cache = InMemoryPointerCache()

        async with make_session_client(user_id="user_1") as client:
            handler = CompletionHandler(funnel.id, client, cache)
            first = await handler.complete(linked_session.id, {"goal": "fitness"})
            second = await handler.complete(linked_session.id, {"goal": "fitness"})

        assert second.already_completed is True
        assert second.redirect_url == first.redirect_url
        assert len(enrollment.enrollments) == 1

    @pytest.mark.asyncio
    async def test_final_answers_flushed(self, funnel, persistence, enrollment, linked_session, make_session_client):
        async with make_session_client(user_id="user_1") as client:
            handler = CompletionHandler(funnel.id, client, InMemoryPointerCache())
            await handler.complete(linked_session.id, {"goal": "fitness", "lastAnswer": "yes"})

        assert persistence.get_session(linked_session.id).session.data["lastAnswer"] == "yes"
        assert enrollment.requests[0].data["lastAnswer"] == "yes"

    @pytest.mark.asyncio
    async def test_custom_redirect_wins(self, funnel, linked_session, make_session_client):
        async with make_session_client(user_id="user_1") as client:
            handler = CompletionHandler(funnel.id, client, InMemoryPointerCache())
            result = await handler.complete(linked_session.id, {}, custom_redirect="/custom")

        assert result.redirect_url == "/custom"

    @pytest.mark.asyncio
    async def test_failure_keeps_pointer(self, funnel, app, persistence, funnel_store, linked_session, make_session_client):
        from web import dependencies
        app.dependency_overrides[dependencies.get_enrollment_service] = lambda: FailingEnrollment(failures=1)

        cache = InMemoryPointerCache()
        cache.set(funnel.id, linked_session.id)

        async with make_session_client(user_id="user_1") as client:
            handler = CompletionHandler(funnel.id, client, cache)
            with pytest.raises(CompletionFailedError) as exc_info:
                await handler.complete(linked_session.id, {"goal": "fitness"})

        assert exc_info.value.details["statusCode"] == 502
        assert cache.get(funnel.id) == linked_session.id

    @pytest.mark.asyncio
    async def test_unreachable_server(self, funnel):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        cache = InMemoryPointerCache()
        cache.set(funnel.id, "flow_abc")
        client = FunnelSessionClient(base_url="http://api", timeout=1.0, transport=httpx.MockTransport(handler))
        async with client:
            with pytest.raises(CompletionFailedError):
                await CompletionHandler(funnel.id, client, cache).complete("flow_abc", {"goal": "x"})

        assert cache.get(funnel.id) == "flow_abc"
