"""
FastAPI Dependency Injection for the funnel session API.

Provides dependency injection for:
- FunnelSessionPersistence (session store + completion ledger)
- FunnelDefinitionStore (read-only funnel definitions)
- EnrollmentService / IdentityProvider collaborators
- FunnelCompletionService / SessionLinkingService
- The authenticated user id

Tests swap collaborators with ``app.dependency_overrides``.

Usage in endpoints:
    @router.post("/complete")
    async def complete(
        service: FunnelCompletionService = Depends(get_completion_service)
    ):
        ...
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from config.settings import get_funnel_settings
from database.funnel_session_persistence import (
    FunnelSessionPersistence,
    get_funnel_session_persistence,
)
from funnel.collaborators import (
    EnrollmentService,
    FunnelDefinitionStore,
    IdentityProvider,
    InMemoryEnrollmentService,
    InMemoryFunnelStore,
    InMemoryIdentityProvider,
)
from services.funnel_completion_service import FunnelCompletionService
from services.session_linking_service import SessionLinkingService

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


def get_persistence() -> FunnelSessionPersistence:
    """Get the session store."""
    return get_funnel_session_persistence()


@lru_cache(maxsize=1)
def get_funnel_store() -> FunnelDefinitionStore:
    """Get singleton funnel definition store."""
    funnels_path = get_funnel_settings().funnels_path
    if funnels_path is None:
        logger.warning("FUNNEL_FUNNELS_PATH not set; serving no funnel definitions")
        return InMemoryFunnelStore()
    return InMemoryFunnelStore.from_json_file(funnels_path)


# Local collaborators; deployments override these with real integrations
@lru_cache(maxsize=1)
def get_enrollment_service() -> EnrollmentService:
    """Get singleton enrollment service."""
    return InMemoryEnrollmentService()


@lru_cache(maxsize=1)
def get_identity_provider() -> IdentityProvider:
    """Get singleton identity provider."""
    return InMemoryIdentityProvider()


def get_completion_service(
    persistence: FunnelSessionPersistence = Depends(get_persistence),
    funnels: FunnelDefinitionStore = Depends(get_funnel_store),
    enrollment: EnrollmentService = Depends(get_enrollment_service),
) -> FunnelCompletionService:
    """Get FunnelCompletionService with injected collaborators."""
    return FunnelCompletionService(
        persistence,
        funnels,
        enrollment,
        default_redirect_url=get_funnel_settings().default_redirect_url,
    )


def get_linking_service(
    persistence: FunnelSessionPersistence = Depends(get_persistence),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> SessionLinkingService:
    """Get SessionLinkingService with injected collaborators."""
    return SessionLinkingService(persistence, identity)


def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """
    Authenticated user id, set by the upstream auth gateway.

    Raises:
        HTTPException 401 when the request is unauthenticated
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "message": "Authentication required"},
        )
    return x_user_id
