"""
Session Linking Service.

Links an anonymous flow session to the user who authenticated in a popup or
redirect-based signup. Safe to call repeatedly; a second call for the same
user is a no-op.

An identity that already belongs to other organizations, and not to the one
running the funnel, is never merged silently: the caller gets a
CrossTenantConflictError and must confirm the join explicitly.
"""

from dataclasses import dataclass

from database.funnel_session_persistence import FunnelSessionPersistence, LookupStatus
from funnel.collaborators import IdentityProvider
from funnel.errors import (
    CrossTenantConflictError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionOwnershipError,
)
from funnel.models import FunnelSession
from services.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class LinkResult:
    session: FunnelSession
    already_linked: bool
    joined_organization: bool = False


class SessionLinkingService:
    """Idempotent session-to-user linking with tenant checks."""

    def __init__(self, persistence: FunnelSessionPersistence, identity: IdentityProvider):
        self.persistence = persistence
        self.identity = identity

    async def link(self, session_id: str, user_id: str, confirm_join: bool = False) -> LinkResult:
        """
        Link ``session_id`` to ``user_id``.

        Args:
            session_id: Flow session id
            user_id: Authenticated user id
            confirm_join: The user chose to join the funnel's organization

        Raises:
            SessionNotFoundError, SessionExpiredError, SessionOwnershipError,
            CrossTenantConflictError
        """
        lookup = self.persistence.get_session(session_id)
        if lookup.status == LookupStatus.NOT_FOUND:
            raise SessionNotFoundError(f"Session {session_id} not found")

        session = lookup.session
        if session.user_id == user_id:
            return LinkResult(session=session, already_linked=True)
        if session.user_id is not None:
            raise SessionOwnershipError(f"Session {session_id} is linked to another user")
        if lookup.status == LookupStatus.EXPIRED:
            raise SessionExpiredError(f"Session {session_id} expired")

        joined = False
        organization_id = session.organization_id
        if organization_id:
            memberships = await self.identity.get_user_organizations(user_id)
            if organization_id not in memberships:
                if memberships and not confirm_join:
                    logger.info(
                        f"User {user_id} belongs to {len(memberships)} other organization(s); "
                        f"asking before joining {organization_id}"
                    )
                    raise CrossTenantConflictError(
                        "This account already belongs to another organization",
                        organization_id=organization_id,
                        current_organization_ids=tuple(memberships),
                    )
                await self.identity.add_user_to_organization(user_id, organization_id)
                joined = True
                logger.info(f"Added user {user_id} to organization {organization_id}")

        linked, already_linked = self.persistence.link_user(session_id, user_id)
        return LinkResult(session=linked, already_linked=already_linked, joined_organization=joined)
