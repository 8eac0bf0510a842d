"""
Funnel error taxonomy.

- session-corrupt: malformed/expired/unknown client pointer; recovered by
  creating a fresh session and never shown to the user
- persistence-failed: a background patch failed; logged only
- linking-failed: session could not be linked to the signed-in user;
  shown with a retry action
- completion-failed: finalize failed; blocks forward progress, shown with a
  retry action
"""

from typing import Any, Dict, Optional, Tuple


class FunnelError(Exception):
    """Base class for funnel engine errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# -----------------------------------------------------------------------------
# Session store errors (server side)
# -----------------------------------------------------------------------------

class SessionNotFoundError(FunnelError):
    """No session record with this id."""


class SessionExpiredError(FunnelError):
    """The session passed its absolute expiry."""


class SessionCompletedError(FunnelError):
    """The session was already finalized and no longer accepts patches."""


class InvalidStepIndexError(FunnelError):
    """A patch carried a step index outside the funnel."""


class SessionOwnershipError(FunnelError):
    """The session is linked to a different user."""


class SessionNotLinkedError(FunnelError):
    """Completion requested before the session was linked to a user."""


class CompletionInProgressError(FunnelError):
    """Another request is finalizing this session right now."""

    retryable = True


class FunnelNotFoundError(FunnelError):
    """The funnel id is unknown to the step definition store."""


class FunnelAccessError(FunnelError):
    """The funnel is inactive or requires an invite."""


class EnrollmentError(FunnelError):
    """The enrollment collaborator failed to finalize."""

    retryable = True


# -----------------------------------------------------------------------------
# Client errors
# -----------------------------------------------------------------------------

class FunnelApiError(FunnelError):
    """Session API answered with a non-success status or was unreachable."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code

    @property
    def is_network_error(self) -> bool:
        return self.status_code is None


class SessionCorruptError(FunnelError):
    """Cached session pointer is unusable; recovered silently."""


class PersistenceFailedError(FunnelError):
    """Background session patch failed; logged only."""


class SessionCreationError(FunnelError):
    """A fresh session could not be created. The only fatal recovery error."""

    retryable = True


class LinkingFailedError(FunnelError):
    """Linking the session to the authenticated user failed."""

    retryable = True


class CompletionFailedError(FunnelError):
    """Finalizing the funnel failed. Forward progress stops until retried."""

    retryable = True


class FunnelBusyError(FunnelError):
    """Step interaction attempted while completion is in flight."""


class CrossTenantConflictError(FunnelError):
    """The authenticated identity belongs to another organization."""

    CONTINUE_AND_JOIN = "continue_and_join"
    SIGN_OUT_AND_RETRY = "sign_out_and_retry"

    def __init__(
        self,
        message: str,
        organization_id: Optional[str] = None,
        current_organization_ids: Tuple[str, ...] = (),
    ):
        super().__init__(message, {
            "organizationId": organization_id,
            "currentOrganizationIds": list(current_organization_ids),
        })
        self.organization_id = organization_id
        self.current_organization_ids = tuple(current_organization_ids)

    @property
    def choices(self) -> Tuple[str, str]:
        return (self.CONTINUE_AND_JOIN, self.SIGN_OUT_AND_RETRY)
