"""Session recovery on load.

``reconcile_session`` turns whatever is in the pointer cache into a usable
session. A missing, malformed, unknown, expired, foreign or unreachable
pointer is discarded and replaced by a fresh session at step 0 with empty
answer data. Only a failure to create that fresh session is raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from funnel.client import CreatedSession, FunnelSessionClient
from funnel.errors import FunnelApiError, SessionCorruptError, SessionCreationError
from funnel.models import Funnel, InvitePaymentStatus
from funnel.pointer_cache import PointerCache

logger = logging.getLogger(__name__)

DEFAULT_ID_PREFIX = "flow_"


class RestartReason:
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    COMPLETED = "completed"
    FUNNEL_MISMATCH = "funnel_mismatch"
    UNREACHABLE = "unreachable"


@dataclass
class RestoredSession:
    """Outcome of session reconciliation."""
    session_id: str
    current_step_index: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    restored: bool = False
    discarded_session_id: Optional[str] = None
    restart_reason: Optional[str] = None
    payment_status: InvitePaymentStatus = InvitePaymentStatus.REQUIRED

    @property
    def skips_payment(self) -> bool:
        return self.payment_status.skips_payment


def is_valid_pointer(pointer: Any, id_prefix: str = DEFAULT_ID_PREFIX) -> bool:
    """Surface check: a non-empty string carrying the session id scheme prefix."""
    return isinstance(pointer, str) and len(pointer) > len(id_prefix) and pointer.startswith(id_prefix)


async def _restore(funnel: Funnel, pointer: str, client: FunnelSessionClient) -> RestoredSession:
    try:
        snapshot = await client.get_session(pointer)
    except FunnelApiError as e:
        if e.status_code == 404:
            raise SessionCorruptError(f"Session {pointer} not found", {"reason": RestartReason.NOT_FOUND}) from e
        raise SessionCorruptError(
            f"Could not fetch session {pointer}: {e.message}",
            {"reason": RestartReason.UNREACHABLE, "statusCode": e.status_code},
        ) from e

    session = snapshot.session
    if snapshot.expired:
        raise SessionCorruptError(f"Session {pointer} expired", {"reason": RestartReason.EXPIRED})
    if session.funnel_id != funnel.id:
        raise SessionCorruptError(
            f"Session {pointer} belongs to funnel {session.funnel_id}",
            {"reason": RestartReason.FUNNEL_MISMATCH},
        )
    if session.is_complete:
        raise SessionCorruptError(f"Session {pointer} already completed", {"reason": RestartReason.COMPLETED})

    step_count = len(funnel.steps)
    index = min(max(session.current_step_index, 0), step_count)
    if index != session.current_step_index:
        logger.warning(f"Clamped restored step index {session.current_step_index} to {index} for session {pointer}")

    return RestoredSession(
        session_id=session.id,
        current_step_index=index,
        data=dict(session.data),
        user_id=session.user_id,
        restored=True,
        payment_status=session.payment_status,
    )


async def _create(
    funnel: Funnel,
    cache: PointerCache,
    client: FunnelSessionClient,
    invite_code: Optional[str],
    referrer_id: Optional[str],
) -> CreatedSession:
    try:
        created = await client.create_session(funnel.id, invite_code=invite_code, referrer_id=referrer_id)
    except FunnelApiError as e:
        logger.error(f"Failed to create session for funnel {funnel.id}: {e.message}")
        raise SessionCreationError(
            f"Could not start funnel {funnel.id}",
            {"statusCode": e.status_code, "reason": e.message},
        ) from e

    cache.set(funnel.id, created.session_id)
    logger.info(f"Started session {created.session_id} for funnel {funnel.id} ({created.payment_status.value})")
    return created


async def reconcile_session(
    funnel: Funnel,
    cache: PointerCache,
    client: FunnelSessionClient,
    invite_code: Optional[str] = None,
    referrer_id: Optional[str] = None,
    id_prefix: str = DEFAULT_ID_PREFIX,
) -> RestoredSession:
    """
    Restore the cached session for ``funnel`` or start a fresh one.

    Args:
        funnel: Funnel being loaded
        cache: Client-side pointer cache
        client: Session API client
        invite_code: Invite the user arrived with (used for a fresh session)
        referrer_id: Referring user (used for a fresh session)
        id_prefix: Scheme prefix expected on session ids

    Returns:
        RestoredSession; ``restored`` is False for a fresh session.

    Raises:
        SessionCreationError: A fresh session could not be created.
    """
    pointer = cache.get(funnel.id)
    discarded: Optional[str] = None
    reason: Optional[str] = None

    if pointer is not None:
        try:
            if not is_valid_pointer(pointer, id_prefix):
                raise SessionCorruptError(f"Malformed session pointer {pointer!r}", {"reason": RestartReason.MALFORMED})
            return await _restore(funnel, pointer, client)
        except SessionCorruptError as e:
            reason = e.details.get("reason")
            discarded = pointer
            logger.info(f"Discarding session pointer for funnel {funnel.id}: {e.message}")
            cache.remove(funnel.id)

    created = await _create(funnel, cache, client, invite_code, referrer_id)
    return RestoredSession(
        session_id=created.session_id,
        discarded_session_id=discarded,
        restart_reason=reason,
        payment_status=created.payment_status,
    )
