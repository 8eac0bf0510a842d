"""
External collaborators of the funnel engine.

The engine reads funnel definitions, finalizes enrollments and resolves
identities through these interfaces. In-memory implementations back local
development and tests.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from funnel.models import Funnel, FunnelStep, InvitePaymentStatus, OFFER_STEP_TYPES

logger = logging.getLogger(__name__)


# =============================================================================
# STEP DEFINITION STORE
# =============================================================================

class FunnelDefinitionStore(ABC):
    """Read-only source of funnel definitions."""

    @abstractmethod
    def get_funnel(self, funnel_id: str) -> Optional[Funnel]:
        """Return the funnel, or None if unknown."""

    def get_invite_status(self, funnel_id: str, invite_code: str) -> Optional[InvitePaymentStatus]:
        """Payment status of a valid invite, or None if the code is invalid."""
        return None


class InMemoryFunnelStore(FunnelDefinitionStore):
    """Funnel definitions held in memory, loaded from dicts or models."""

    def __init__(self, funnels: Iterable[Any] = ()):
        self._funnels: Dict[str, Funnel] = {}
        self._invites: Dict[tuple, InvitePaymentStatus] = {}
        for funnel in funnels:
            self.add_funnel(funnel)

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryFunnelStore":
        """
        Load funnel definitions from a JSON file.

        The file holds either a list of funnels or ``{"funnels": [...],
        "invites": [{"funnelId", "code", "paymentStatus"}]}``.
        """
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)

        if isinstance(payload, list):
            payload = {"funnels": payload}

        store = cls(payload.get("funnels", []))
        for invite in payload.get("invites", []):
            store.add_invite(
                invite["funnelId"],
                invite["code"],
                InvitePaymentStatus(invite.get("paymentStatus", InvitePaymentStatus.REQUIRED.value)),
            )
        logger.info(f"Loaded {len(store._funnels)} funnel definitions from {path}")
        return store

    def add_funnel(self, funnel: Any) -> Funnel:
        if not isinstance(funnel, Funnel):
            funnel = Funnel.model_validate(funnel)
        self._funnels[funnel.id] = funnel
        return funnel

    def add_invite(
        self,
        funnel_id: str,
        invite_code: str,
        payment_status: InvitePaymentStatus = InvitePaymentStatus.REQUIRED,
    ) -> None:
        self._invites[(funnel_id, invite_code)] = payment_status

    def get_funnel(self, funnel_id: str) -> Optional[Funnel]:
        return self._funnels.get(funnel_id)

    def get_invite_status(self, funnel_id: str, invite_code: str) -> Optional[InvitePaymentStatus]:
        return self._invites.get((funnel_id, invite_code))


# =============================================================================
# ENROLLMENT / BILLING
# =============================================================================

@dataclass
class EnrollmentRequest:
    """Everything the enrollment service needs to finalize one session."""
    session_id: str
    user_id: str
    funnel_id: str
    organization_id: Optional[str]
    program_id: Optional[str]
    invite_code: Optional[str]
    data: Dict[str, Any]
    payment_references: Dict[str, str] = field(default_factory=dict)


@dataclass
class EnrollmentResult:
    enrollment_id: str
    redirect_url: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class EnrollmentService(ABC):
    """
    Enrollment + charge collaborator.

    Implementations must be idempotent keyed on ``request.session_id``.
    """

    @abstractmethod
    async def finalize(self, request: EnrollmentRequest) -> EnrollmentResult:
        """Enroll the user and settle payment for the session."""


class InMemoryEnrollmentService(EnrollmentService):
    """Records enrollments in memory, idempotent on session id."""

    def __init__(self):
        self.enrollments: Dict[str, EnrollmentResult] = {}
        self.requests: List[EnrollmentRequest] = []

    async def finalize(self, request: EnrollmentRequest) -> EnrollmentResult:
        self.requests.append(request)
        existing = self.enrollments.get(request.session_id)
        if existing:
            return existing
        result = EnrollmentResult(enrollment_id=f"enr_{len(self.enrollments) + 1}")
        self.enrollments[request.session_id] = result
        return result


# =============================================================================
# IDENTITY PROVIDER
# =============================================================================

class IdentityProvider(ABC):
    """Managed auth provider: memberships of an authenticated user."""

    @abstractmethod
    async def get_user_organizations(self, user_id: str) -> List[str]:
        """Organization ids the user is a member of."""

    @abstractmethod
    async def add_user_to_organization(self, user_id: str, organization_id: str) -> None:
        """Add the user to an organization as a member."""


class InMemoryIdentityProvider(IdentityProvider):

    def __init__(self, memberships: Optional[Mapping[str, Iterable[str]]] = None):
        self.memberships: Dict[str, Set[str]] = {
            user_id: set(orgs) for user_id, orgs in (memberships or {}).items()
        }

    async def get_user_organizations(self, user_id: str) -> List[str]:
        return sorted(self.memberships.get(user_id, set()))

    async def add_user_to_organization(self, user_id: str, organization_id: str) -> None:
        self.memberships.setdefault(user_id, set()).add(organization_id)


# =============================================================================
# OFFER AVAILABILITY
# =============================================================================

class OfferAvailability(ABC):
    """Whether an upsell/downsell product can still be sold."""

    @abstractmethod
    async def is_available(self, step: FunnelStep) -> bool:
        """False when the offer's cohort has passed or no cohort is open."""


class AlwaysAvailable(OfferAvailability):

    async def is_available(self, step: FunnelStep) -> bool:
        return True


async def unavailable_offer_ids(funnel: Funnel, availability: Optional[OfferAvailability]) -> Set[str]:
    """Collect offer step ids the availability check rejects."""
    if availability is None:
        return set()
    unavailable = set()
    for step in funnel.steps:
        if step.type not in OFFER_STEP_TYPES:
            continue
        try:
            available = await availability.is_available(step)
        except Exception as e:
            # Offer stays in the funnel when availability cannot be checked
            logger.error(f"Failed to check availability of offer step {step.id}: {e}")
            continue
        if not available:
            logger.info(f"Skipping offer step {step.id}: offer no longer available")
            unavailable.add(step.id)
    return unavailable
