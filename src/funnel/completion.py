"""Completion Handler.

Client half of funnel completion. Flushes the final answers, asks the server
to finalize with the same session id on every attempt, and clears the cached
pointer only after the server confirms. A failure keeps the pointer so the
user can retry.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from funnel.client import FunnelSessionClient
from funnel.errors import CompletionFailedError, FunnelApiError
from funnel.pointer_cache import PointerCache

logger = logging.getLogger(__name__)

# Answer-data keys written by the payment step
PAYMENT_REFERENCE_KEYS = (
    "stripePaymentIntentId",
    "stripeCheckoutSessionId",
    "stripeSubscriptionId",
)


def collect_payment_references(data: Mapping[str, Any]) -> Dict[str, str]:
    """Pull payment reference ids out of accumulated answer data."""
    return {key: str(data[key]) for key in PAYMENT_REFERENCE_KEYS if data.get(key)}


@dataclass
class CompletionResult:
    redirect_url: str
    enrollment_id: Optional[str] = None
    already_completed: bool = False


class CompletionHandler:
    """
    Finalizes one funnel's session.

    Args:
        funnel_id: Funnel whose pointer is cleared on success
        client: Session API client
        cache: Client-side pointer cache
        default_redirect_url: Platform default when nothing else applies
    """

    def __init__(
        self,
        funnel_id: str,
        client: FunnelSessionClient,
        cache: PointerCache,
        default_redirect_url: str = "/",
    ):
        self.funnel_id = funnel_id
        self.client = client
        self.cache = cache
        self.default_redirect_url = default_redirect_url

    async def complete(
        self,
        session_id: str,
        final_data: Mapping[str, Any],
        payment_references: Optional[Mapping[str, str]] = None,
        custom_redirect: Optional[str] = None,
    ) -> CompletionResult:
        """
        Finalize the funnel.

        Redirect priority: ``custom_redirect``, then the server's redirect,
        then the platform default.

        Raises:
            CompletionFailedError: finalize did not succeed; safe to retry
        """
        references = collect_payment_references(final_data)
        references.update({k: v for k, v in (payment_references or {}).items() if v})

        await self._flush_answers(session_id, final_data)

        try:
            payload = await self.client.complete(session_id, payment_references=references or None)
        except FunnelApiError as e:
            logger.error(f"Completion of session {session_id} failed ({e.status_code}): {e.message}")
            raise CompletionFailedError(
                "We couldn't finish setting up your enrollment. Please try again.",
                {"sessionId": session_id, "statusCode": e.status_code, **e.details},
            ) from e

        self.cache.remove(self.funnel_id)

        redirect_url = custom_redirect or payload.get("redirectUrl") or self.default_redirect_url
        logger.info(f"Completed session {session_id}, redirecting to {redirect_url}")
        return CompletionResult(
            redirect_url=redirect_url,
            enrollment_id=payload.get("enrollmentId"),
            already_completed=bool(payload.get("alreadyCompleted", False)),
        )

    async def _flush_answers(self, session_id: str, final_data: Mapping[str, Any]) -> None:
        # The server finalizes from its stored answers, so they must be current
        if not final_data:
            return
        try:
            await self.client.patch_session(session_id, data=dict(final_data))
        except FunnelApiError as e:
            if e.status_code == 409:
                # Already completed by an earlier attempt; finalize returns the recorded result
                return
            if e.status_code == 410:
                logger.warning(f"Session {session_id} expired before its final answers were saved")
                return
            logger.error(f"Could not save final answers for session {session_id}: {e.message}")
            raise CompletionFailedError(
                "We couldn't save your answers. Please try again.",
                {"sessionId": session_id, "statusCode": e.status_code},
            ) from e
