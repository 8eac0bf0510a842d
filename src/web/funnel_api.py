"""
Funnel Session API

Endpoints backing the funnel client:
- Create a flow session for a funnel
- Read a session for restoration after reload or OAuth redirect
- Patch progress and answer data (merge semantics)
- Link a session to the authenticated user
- Complete the funnel (exactly-once enrollment)

JSON bodies use camelCase keys.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from config.settings import get_settings
from database.funnel_session_persistence import FunnelSessionPersistence, LookupStatus
from funnel.collaborators import FunnelDefinitionStore
from funnel.errors import (
    CompletionInProgressError,
    CrossTenantConflictError,
    EnrollmentError,
    FunnelAccessError,
    FunnelError,
    FunnelNotFoundError,
    InvalidStepIndexError,
    SessionCompletedError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionNotLinkedError,
    SessionOwnershipError,
)
from funnel.models import CamelModel, FunnelAccessType, FunnelSession, InvitePaymentStatus
from services.funnel_completion_service import FunnelCompletionService
from services.session_linking_service import SessionLinkingService
from web.dependencies import (
    get_completion_service,
    get_current_user_id,
    get_funnel_store,
    get_linking_service,
    get_persistence,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/funnel", tags=["funnel-sessions"])


# =============================================================================
# Request/Response Models
# =============================================================================

class CreateSessionRequest(CamelModel):
    funnel_id: str
    invite_code: Optional[str] = None
    referrer_id: Optional[str] = None


class CreateSessionResponse(CamelModel):
    session_id: str
    payment_status: InvitePaymentStatus = InvitePaymentStatus.REQUIRED


class SessionResponse(CamelModel):
    session: FunnelSession
    expired: bool = False


class PatchSessionRequest(CamelModel):
    """Progress patch. ``data`` is merged into the stored answers."""
    current_step_index: Optional[int] = None
    completed_step_index: Optional[int] = None
    data: Optional[Dict[str, Any]] = None


class PatchSessionResponse(CamelModel):
    success: bool = True
    session: FunnelSession


class LinkUserRequest(CamelModel):
    session_id: Optional[str] = None
    confirm_join: bool = False


class LinkUserResponse(CamelModel):
    success: bool = True
    already_linked: bool = False
    joined_organization: bool = False


class CompleteFunnelRequest(CamelModel):
    session_id: Optional[str] = None
    payment_references: Optional[Dict[str, str]] = None


class CompleteFunnelResponse(CamelModel):
    success: bool = True
    redirect_url: str
    already_completed: bool = False
    enrollment_id: Optional[str] = None


# =============================================================================
# Error mapping
# =============================================================================

_ERROR_STATUS = (
    (SessionNotFoundError, status.HTTP_404_NOT_FOUND),
    (FunnelNotFoundError, status.HTTP_404_NOT_FOUND),
    (SessionExpiredError, status.HTTP_410_GONE),
    (SessionCompletedError, status.HTTP_409_CONFLICT),
    (CrossTenantConflictError, status.HTTP_409_CONFLICT),
    (CompletionInProgressError, status.HTTP_409_CONFLICT),
    (InvalidStepIndexError, status.HTTP_400_BAD_REQUEST),
    (SessionNotLinkedError, status.HTTP_400_BAD_REQUEST),
    (SessionOwnershipError, status.HTTP_403_FORBIDDEN),
    (FunnelAccessError, status.HTTP_403_FORBIDDEN),
    (EnrollmentError, status.HTTP_502_BAD_GATEWAY),
)


def _error_name(error: FunnelError) -> str:
    name = type(error).__name__
    return name[:-len("Error")] if name.endswith("Error") else name


def http_error(error: FunnelError) -> HTTPException:
    """Translate a funnel error into an HTTPException."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break

    detail: Dict[str, Any] = {
        "error": _error_name(error),
        "message": error.message,
        "retryable": error.retryable,
    }
    detail.update(error.details)
    if isinstance(error, CrossTenantConflictError):
        detail["choices"] = list(error.choices)
    return HTTPException(status_code=status_code, detail=detail)


def _missing_session_id() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": "InvalidRequest", "message": "sessionId is required"},
    )


# =============================================================================
# Sessions
# =============================================================================

@router.post("/session", response_model=CreateSessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    request: CreateSessionRequest,
    funnels: FunnelDefinitionStore = Depends(get_funnel_store),
    persistence: FunnelSessionPersistence = Depends(get_persistence),
):
    """
    Create a fresh flow session at step 0.

    Invite-only funnels require a valid invite code. The session carries
    the invite's payment status, or the funnel default without a valid
    invite; the response echoes it so the client can skip payment steps.
    """
    funnel = funnels.get_funnel(request.funnel_id)
    if funnel is None or not funnel.is_active:
        raise http_error(FunnelNotFoundError(f"Funnel {request.funnel_id} not found"))

    invite_status = None
    if request.invite_code:
        invite_status = funnels.get_invite_status(funnel.id, request.invite_code)

    if funnel.access_type == FunnelAccessType.INVITE_ONLY:
        if invite_status is None:
            raise http_error(FunnelAccessError(f"Funnel {funnel.id} requires a valid invite"))

    session = persistence.create_session(
        funnel,
        invite_code=request.invite_code,
        referrer_id=request.referrer_id,
        payment_status=invite_status,
    )
    return CreateSessionResponse(session_id=session.id, payment_status=session.payment_status)


@router.get("/session", response_model=SessionResponse)
async def get_session(
    session_id: str = Query(..., alias="sessionId"),
    persistence: FunnelSessionPersistence = Depends(get_persistence),
):
    """
    Load a session for restoration.

    Expired sessions are returned with ``expired: true``; unknown ids are 404.
    """
    lookup = persistence.get_session(session_id)
    if lookup.status == LookupStatus.NOT_FOUND:
        raise http_error(SessionNotFoundError(f"Session {session_id} not found"))
    return SessionResponse(session=lookup.session, expired=lookup.status == LookupStatus.EXPIRED)


@router.patch("/session/{session_id}", response_model=PatchSessionResponse)
async def patch_session(
    session_id: str,
    request: PatchSessionRequest,
    persistence: FunnelSessionPersistence = Depends(get_persistence),
):
    """Record progress. Answer data is merged, never replaced."""
    try:
        session = persistence.patch_session(
            session_id,
            current_step_index=request.current_step_index,
            completed_step_index=request.completed_step_index,
            data=request.data,
        )
    except FunnelError as e:
        logger.info(f"Rejected patch of session {session_id}: {e.message}")
        raise http_error(e)
    return PatchSessionResponse(session=session)


@router.post("/session/link-user", response_model=LinkUserResponse)
async def link_user(
    request: LinkUserRequest,
    user_id: str = Depends(get_current_user_id),
    linking: SessionLinkingService = Depends(get_linking_service),
):
    """
    Link a session to the authenticated user.

    Safe to call repeatedly. A cross-tenant identity gets 409 with the
    choices the user must pick from; re-send with ``confirmJoin: true`` to
    join the funnel's organization.
    """
    if not request.session_id:
        raise _missing_session_id()

    try:
        result = await linking.link(request.session_id, user_id, confirm_join=request.confirm_join)
    except FunnelError as e:
        raise http_error(e)

    return LinkUserResponse(
        already_linked=result.already_linked,
        joined_organization=result.joined_organization,
    )


# =============================================================================
# Completion
# =============================================================================

@router.post("/complete", response_model=CompleteFunnelResponse)
async def complete_funnel(
    request: CompleteFunnelRequest,
    user_id: str = Depends(get_current_user_id),
    completion: FunnelCompletionService = Depends(get_completion_service),
):
    """
    Finalize the funnel: enroll the user and settle payment exactly once.

    Retries with the same session id return the recorded result.
    """
    if not request.session_id:
        raise _missing_session_id()

    try:
        outcome = await completion.complete(
            request.session_id,
            user_id,
            payment_references=request.payment_references,
        )
    except FunnelError as e:
        raise http_error(e)

    return CompleteFunnelResponse(
        redirect_url=outcome.redirect_url,
        already_completed=outcome.already_completed,
        enrollment_id=outcome.enrollment_id,
    )


@router.get("/health")
async def health():
    """Liveness probe."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": settings.name,
        "version": settings.version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
