"""
Funnel Completion Service.

Server half of funnel completion. Converts a finished flow session into an
enrollment exactly once:

1. The session must exist, be linked to a user, and belong to the caller.
2. A recorded completion is returned unchanged on every retry.
3. Otherwise the session is claimed in the completion ledger, the enrollment
   collaborator is called once, and the result is recorded.

A failed finalize releases the claim so the user can retry.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from database.funnel_session_persistence import (
    CompletionRecord,
    CompletionStatus,
    FunnelSessionPersistence,
)
from funnel.collaborators import (
    EnrollmentRequest,
    EnrollmentService,
    FunnelDefinitionStore,
)
from funnel.completion import collect_payment_references
from funnel.errors import (
    CompletionInProgressError,
    EnrollmentError,
    SessionNotFoundError,
    SessionNotLinkedError,
    SessionOwnershipError,
)
from funnel.models import FunnelSession
from services.logging_config import get_logger

logger = get_logger(__name__)

# Answer-data fields copied onto the enrollment as user profile data
USER_DATA_FIELDS = (
    "goal",
    "goalTargetDate",
    "goalSummary",
    "identity",
    "workdayStyle",
    "businessStage",
    "obstacles",
    "goalImpact",
    "supportNeeds",
)


def extract_user_data(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Profile fields captured by goal and identity steps."""
    return {key: data[key] for key in USER_DATA_FIELDS if data.get(key) not in (None, "")}


@dataclass
class CompletionOutcome:
    """Result of a completion request."""
    session_id: str
    enrollment_id: Optional[str]
    redirect_url: str
    already_completed: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


class FunnelCompletionService:
    """
    Exactly-once finalize keyed on session id.

    Args:
        persistence: Session store with the completion ledger
        funnels: Step definition store (for the success-step redirect)
        enrollment: Enrollment + billing collaborator
        default_redirect_url: Redirect used when nothing else is configured
    """

    def __init__(
        self,
        persistence: FunnelSessionPersistence,
        funnels: FunnelDefinitionStore,
        enrollment: EnrollmentService,
        default_redirect_url: str = "/",
    ):
        self.persistence = persistence
        self.funnels = funnels
        self.enrollment = enrollment
        self.default_redirect_url = default_redirect_url

    async def complete(
        self,
        session_id: str,
        user_id: str,
        payment_references: Optional[Mapping[str, str]] = None,
    ) -> CompletionOutcome:
        """
        Finalize a flow session for ``user_id``.

        Raises:
            SessionNotFoundError: Unknown session id
            SessionNotLinkedError: Session has no linked user yet
            SessionOwnershipError: Session is linked to another user
            CompletionInProgressError: Another request holds the claim
            EnrollmentError: The enrollment collaborator failed
        """
        session = self._load_owned_session(session_id, user_id)

        existing = self.persistence.get_completion(session_id)
        if existing is not None and existing.status == CompletionStatus.COMPLETED:
            logger.info(f"Session {session_id} already completed, returning recorded result")
            return self._outcome_from_record(existing, already_completed=True)

        claimed, record = self.persistence.claim_completion(session_id)
        if not claimed:
            if record.status == CompletionStatus.COMPLETED:
                return self._outcome_from_record(record, already_completed=True)
            raise CompletionInProgressError(
                f"Completion of session {session_id} is already in progress",
                {"sessionId": session_id},
            )

        request = self._build_request(session, user_id, payment_references)
        try:
            result = await self.enrollment.finalize(request)
        except Exception as e:
            self.persistence.release_completion(session_id)
            logger.error(f"Enrollment failed for session {session_id}: {e}", exc_info=True)
            raise EnrollmentError(
                f"Failed to finalize session {session_id}",
                {"sessionId": session_id, "reason": str(e)},
            ) from e

        redirect_url = result.redirect_url or self._funnel_redirect(session)
        record = self.persistence.record_completion(
            session_id,
            enrollment_id=result.enrollment_id,
            redirect_url=redirect_url,
            result=result.details,
        )
        logger.info(f"Completed funnel {session.funnel_id} for user {user_id} (session {session_id})")
        return self._outcome_from_record(record, already_completed=False)

    def _load_owned_session(self, session_id: str, user_id: str) -> FunnelSession:
        lookup = self.persistence.get_session(session_id)
        if lookup.session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        # Expired sessions may still be finalized; expiry bounds resumability only
        session = lookup.session
        if session.user_id is None:
            raise SessionNotLinkedError(f"Session {session_id} is not linked to a user")
        if session.user_id != user_id:
            raise SessionOwnershipError(f"Session {session_id} belongs to another user")
        return session

    def _build_request(
        self,
        session: FunnelSession,
        user_id: str,
        payment_references: Optional[Mapping[str, str]],
    ) -> EnrollmentRequest:
        references = collect_payment_references(session.data)
        references.update({k: v for k, v in (payment_references or {}).items() if v})

        data = dict(session.data)
        user_data = extract_user_data(session.data)
        if user_data:
            data["userData"] = user_data

        return EnrollmentRequest(
            session_id=session.id,
            user_id=user_id,
            funnel_id=session.funnel_id,
            organization_id=session.organization_id,
            program_id=session.program_id,
            invite_code=session.invite_code,
            data=data,
            payment_references=references,
        )

    def _funnel_redirect(self, session: FunnelSession) -> str:
        funnel = self.funnels.get_funnel(session.funnel_id)
        if funnel is not None:
            success = funnel.first_success_config()
            if success is not None and success.skip_success_redirect:
                return success.skip_success_redirect
        return self.default_redirect_url

    def _outcome_from_record(self, record: CompletionRecord, already_completed: bool) -> CompletionOutcome:
        return CompletionOutcome(
            session_id=record.session_id,
            enrollment_id=record.enrollment_id,
            redirect_url=record.redirect_url or self.default_redirect_url,
            already_completed=already_completed,
            details=record.result,
        )
