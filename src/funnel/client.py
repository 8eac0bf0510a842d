"""
Async client for the funnel session API.

Every non-success answer, and every transport failure, is raised as
FunnelApiError; ``status_code`` is None for network errors and timeouts.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from funnel.errors import FunnelApiError
from funnel.models import FunnelSession, InvitePaymentStatus

logger = logging.getLogger(__name__)

API_PREFIX = "/api/funnel"
USER_ID_HEADER = "X-User-Id"


@dataclass
class CreatedSession:
    """A freshly created session and the payment status resolved for it."""
    session_id: str
    payment_status: InvitePaymentStatus = InvitePaymentStatus.REQUIRED


@dataclass
class SessionSnapshot:
    """A session as read back from the server."""
    session: FunnelSession
    expired: bool = False


class FunnelSessionClient:
    """
    HTTP client for the session API.

    Args:
        base_url: API base URL (defaults to FUNNEL_API_BASE_URL)
        timeout: Request timeout in seconds
        user_id: Authenticated user, sent as X-User-Id once known
        transport: Optional httpx transport (e.g. ASGITransport in tests)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        user_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if base_url is None or timeout is None:
            from config.settings import get_funnel_settings
            settings = get_funnel_settings()
            base_url = base_url or settings.api_base_url
            timeout = timeout if timeout is not None else settings.request_timeout_seconds

        self.user_id = user_id
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "FunnelSessionClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # =========================================================================
    # SESSION ENDPOINTS
    # =========================================================================

    async def create_session(
        self,
        funnel_id: str,
        invite_code: Optional[str] = None,
        referrer_id: Optional[str] = None,
    ) -> CreatedSession:
        """Create a session; returns its id and resolved payment status."""
        body: Dict[str, Any] = {"funnelId": funnel_id}
        if invite_code:
            body["inviteCode"] = invite_code
        if referrer_id:
            body["referrerId"] = referrer_id

        payload = await self._request("POST", "/session", json=body)
        session_id = payload.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise FunnelApiError("Session API returned no sessionId", status_code=201, details=payload)
        try:
            payment_status = InvitePaymentStatus(payload.get("paymentStatus") or InvitePaymentStatus.REQUIRED)
        except ValueError as e:
            raise FunnelApiError(f"Unknown paymentStatus: {e}", status_code=201, details=payload) from e
        return CreatedSession(session_id=session_id, payment_status=payment_status)

    async def get_session(self, session_id: str) -> SessionSnapshot:
        payload = await self._request("GET", "/session", params={"sessionId": session_id})
        try:
            session = FunnelSession.model_validate(payload["session"])
        except (KeyError, TypeError, ValueError) as e:
            raise FunnelApiError(f"Malformed session payload: {e}", status_code=200) from e
        return SessionSnapshot(session=session, expired=bool(payload.get("expired", False)))

    async def patch_session(
        self,
        session_id: str,
        current_step_index: Optional[int] = None,
        completed_step_index: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a progress patch; ``data`` is merged server-side."""
        body: Dict[str, Any] = {}
        if current_step_index is not None:
            body["currentStepIndex"] = current_step_index
        if completed_step_index is not None:
            body["completedStepIndex"] = completed_step_index
        if data:
            body["data"] = data
        return await self._request("PATCH", f"/session/{session_id}", json=body)

    async def link_user(self, session_id: str, confirm_join: bool = False) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/session/link-user",
            json={"sessionId": session_id, "confirmJoin": confirm_join},
        )

    async def complete(
        self,
        session_id: str,
        payment_references: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"sessionId": session_id}
        if payment_references:
            body["paymentReferences"] = payment_references
        return await self._request("POST", "/complete", json=body)

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = {}
        if self.user_id:
            headers[USER_ID_HEADER] = self.user_id

        try:
            response = await self._http.request(method, f"{API_PREFIX}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out")
            raise FunnelApiError(f"{method} {path} timed out") from e
        except httpx.RequestError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise FunnelApiError(f"{method} {path} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            detail = payload.get("detail") if isinstance(payload, dict) else None
            if not isinstance(detail, dict):
                detail = {"message": str(detail) if detail else response.reason_phrase}
            raise FunnelApiError(
                detail.get("message") or f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                details=detail,
            )

        return payload if isinstance(payload, dict) else {}
