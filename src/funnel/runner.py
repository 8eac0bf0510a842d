"""Funnel Runner.

Drives one traversal of one funnel:

    step completed -> branch tracker -> navigator -> persist (background) -> next step

Progress patches are fire-and-forget. They are sent in order, one after the
other, so the last patch on the wire always carries the true current step
index; a failed patch is logged and navigation continues on local state.
Completion is awaited, and no step interaction is accepted while it is in
flight or after it failed until it is retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from funnel.branching import BranchTracker, upsell_marker
from funnel.client import FunnelSessionClient
from funnel.collaborators import OfferAvailability, unavailable_offer_ids
from funnel.completion import CompletionHandler
from funnel.errors import (
    CompletionFailedError,
    CrossTenantConflictError,
    FunnelApiError,
    FunnelBusyError,
    FunnelError,
    LinkingFailedError,
)
from funnel.event_bus import EventBus
from funnel.events import (
    FunnelCompleted,
    SessionLinked,
    SessionRestarted,
    SessionStarted,
    StepCompleted,
    UpsellDeclined,
)
from funnel.models import Funnel, FunnelStep, NavigationState, StepType
from funnel.navigator import FunnelComplete, NextStep, next_for_state, previous_step
from funnel.pointer_cache import PointerCache
from funnel.recovery import DEFAULT_ID_PREFIX, RestoredSession, reconcile_session

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Where the funnel went after a step action."""
    next_index: Optional[int] = None
    completed: bool = False
    redirect_url: Optional[str] = None
    enrollment_id: Optional[str] = None


@dataclass
class LinkOutcome:
    linked: bool
    already_linked: bool = False
    conflict: bool = False
    choices: Tuple[str, ...] = ()
    organization_id: Optional[str] = None


class FunnelRunner:
    """
    Client-side orchestration of a funnel session.

    Args:
        funnel: Funnel definition
        client: Session API client
        cache: Pointer cache
        skip_payment: Force payment steps to be skipped; otherwise they are
            skipped when the session's invite is pre-paid or free
        offer_availability: Optional check for offers that can no longer be sold
        event_bus: Bus for step and completion events
        invite_code: Invite the user arrived with
        referrer_id: Referring user
        default_redirect_url: Platform default after completion
        id_prefix: Scheme prefix of session ids
    """

    def __init__(
        self,
        funnel: Funnel,
        client: FunnelSessionClient,
        cache: PointerCache,
        skip_payment: bool = False,
        offer_availability: Optional[OfferAvailability] = None,
        event_bus: Optional[EventBus] = None,
        invite_code: Optional[str] = None,
        referrer_id: Optional[str] = None,
        default_redirect_url: str = "/",
        id_prefix: str = DEFAULT_ID_PREFIX,
    ):
        self.funnel = funnel
        self.client = client
        self.cache = cache
        self.skip_payment = skip_payment
        self.offer_availability = offer_availability
        self.event_bus = event_bus or EventBus()
        self.invite_code = invite_code
        self.referrer_id = referrer_id
        self.id_prefix = id_prefix
        self.completion = CompletionHandler(funnel.id, client, cache, default_redirect_url)

        self.session_id: Optional[str] = None
        self.state = NavigationState(skip_payment=skip_payment)
        self.tracker = BranchTracker(funnel.steps)
        self.linked = False
        self.finished = False
        self.redirect_url: Optional[str] = None

        self._completing = False
        self._pending_completion: Optional[FunnelComplete] = None
        self._patches: Set[asyncio.Task] = set()
        self._last_patch: Optional[asyncio.Task] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def steps(self) -> List[FunnelStep]:
        return self.funnel.steps

    @property
    def current_step(self) -> Optional[FunnelStep]:
        if self.session_id is None or self.finished:
            return None
        index = self.state.current_index
        return self.steps[index] if 0 <= index < len(self.steps) else None

    @property
    def awaiting_completion(self) -> bool:
        """True after a failed completion, until retry_completion succeeds."""
        return self._pending_completion is not None

    async def start(self) -> Optional[FunnelStep]:
        """
        Restore or create the session and return the step to display.

        Raises:
            SessionCreationError: A fresh session could not be created.
        """
        restored = await reconcile_session(
            self.funnel,
            self.cache,
            self.client,
            invite_code=self.invite_code,
            referrer_id=self.referrer_id,
            id_prefix=self.id_prefix,
        )
        unavailable = frozenset(await unavailable_offer_ids(self.funnel, self.offer_availability))

        self.session_id = restored.session_id
        self.tracker = BranchTracker(self.steps, unavailable)
        self.state = NavigationState(
            current_index=restored.current_step_index,
            data=dict(restored.data),
            skip_payment=self.skip_payment or restored.skips_payment,
            unavailable_offer_step_ids=unavailable,
        )
        self.linked = restored.user_id is not None
        self.finished = False
        self._pending_completion = None

        self._publish_start(restored)

        if restored.restored and self.state.current_index >= len(self.steps):
            # Every step was passed but finalize never succeeded
            self._pending_completion = next_for_state(self.steps, self.state)
        return self.current_step

    async def drain(self) -> None:
        """Wait for outstanding background patches."""
        while True:
            pending = [task for task in self._patches if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # =========================================================================
    # STEP ACTIONS
    # =========================================================================

    async def complete_step(self, step_data: Optional[Dict[str, Any]] = None) -> StepOutcome:
        """
        Complete the current step with its answer data and move on.

        Raises:
            FunnelBusyError: Completion in flight or awaiting retry
            LinkingFailedError: Signup step left before the session was linked
            CompletionFailedError: The funnel ended and finalize failed
        """
        step = self._require_interactive()
        if step.type == StepType.SIGNUP and not self.linked:
            raise LinkingFailedError(
                "Your account isn't connected to this signup yet. Please try again.",
                {"stepId": step.id},
            )
        return await self._advance(step, dict(step_data or {}))

    async def accept_offer(self, enrollment_id: Optional[str] = None) -> StepOutcome:
        """Accept the current upsell or downsell."""
        step = self._require_interactive()
        if step.type == StepType.UPSELL:
            markers = self.tracker.on_upsell_accepted(step.id, enrollment_id)
            self.state.declined_upsells = self.tracker.declined_upsells
        elif step.type == StepType.DOWNSELL:
            markers = self.tracker.on_downsell_accepted(step.id, enrollment_id)
        else:
            raise ValueError(f"Step {step.id} is not an offer step")
        return await self._advance(step, markers)

    async def decline_offer(self) -> StepOutcome:
        """
        Decline the current upsell or downsell.

        Declining an upsell with a linked downsell jumps straight to it;
        otherwise forward navigation resumes.
        """
        step = self._require_interactive()
        if step.type == StepType.UPSELL:
            downsell_index = self.tracker.on_upsell_declined(step.id)
            self.state.declined_upsells = self.tracker.declined_upsells
            self._publish(UpsellDeclined(
                funnel_id=self.funnel.id,
                session_id=self.session_id,
                step_id=step.id,
                downsell_step_index=downsell_index,
            ))
            return await self._advance(step, upsell_marker(step.id, False), jump_to=downsell_index)
        if step.type == StepType.DOWNSELL:
            return await self._advance(step, self.tracker.on_downsell_declined(step.id))
        raise ValueError(f"Step {step.id} is not an offer step")

    async def go_back(self) -> Optional[int]:
        """Return to the previously displayed step; None at the first step."""
        self._require_interactive()
        index = previous_step(self.state)
        if index is None:
            return None
        self.state.history.pop()
        self.state.current_index = index
        if self.steps[index].type == StepType.UPSELL:
            # Returning to an upsell reopens its decision
            self.tracker.reopen_upsell(self.steps[index].id)
            self.state.declined_upsells = self.tracker.declined_upsells
        self._schedule_patch(current_step_index=index)
        return index

    # =========================================================================
    # LINKING
    # =========================================================================

    async def link_user(self, confirm_join: bool = False) -> LinkOutcome:
        """
        Link the session to the authenticated user.

        A cross-tenant identity comes back as a conflict carrying the
        choices to offer; re-call with ``confirm_join=True`` to join.

        Raises:
            LinkingFailedError: Linking failed; safe to retry
        """
        if self.session_id is None:
            raise LinkingFailedError("Funnel has not started")

        try:
            payload = await self.client.link_user(self.session_id, confirm_join=confirm_join)
        except FunnelApiError as e:
            if e.status_code == 409 and e.details.get("error") == "CrossTenantConflict":
                logger.info(f"Cross-tenant conflict linking session {self.session_id}")
                return LinkOutcome(
                    linked=False,
                    conflict=True,
                    choices=tuple(e.details.get("choices") or (
                        CrossTenantConflictError.CONTINUE_AND_JOIN,
                        CrossTenantConflictError.SIGN_OUT_AND_RETRY,
                    )),
                    organization_id=e.details.get("organizationId"),
                )
            logger.error(f"Linking session {self.session_id} failed ({e.status_code}): {e.message}")
            raise LinkingFailedError(
                "We couldn't connect your account. Please try again.",
                {"sessionId": self.session_id, "statusCode": e.status_code},
            ) from e

        self.linked = True
        already_linked = bool(payload.get("alreadyLinked", False))
        self._publish(SessionLinked(
            funnel_id=self.funnel.id,
            session_id=self.session_id,
            already_linked=already_linked,
        ))
        return LinkOutcome(linked=True, already_linked=already_linked)

    # =========================================================================
    # COMPLETION
    # =========================================================================

    async def retry_completion(self) -> StepOutcome:
        """Retry a failed completion with the same session id."""
        if self._pending_completion is None:
            raise FunnelError("No completion to retry")
        if self._completing:
            raise FunnelBusyError("Completion already in progress")
        return await self._finish(self._pending_completion)

    async def _finish(self, result: FunnelComplete) -> StepOutcome:
        self._completing = True
        try:
            await self.drain()
            completion = await self.completion.complete(
                self.session_id,
                self.state.data,
                custom_redirect=result.redirect_url,
            )
        except CompletionFailedError:
            self._pending_completion = result
            raise
        finally:
            self._completing = False

        self._pending_completion = None
        self.finished = True
        self.redirect_url = completion.redirect_url
        self.state.current_index = len(self.steps)
        self._publish(FunnelCompleted(
            funnel_id=self.funnel.id,
            session_id=self.session_id,
            redirect_url=completion.redirect_url,
            already_completed=completion.already_completed,
        ))
        return StepOutcome(
            completed=True,
            redirect_url=completion.redirect_url,
            enrollment_id=completion.enrollment_id,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require_interactive(self) -> FunnelStep:
        if self._completing:
            raise FunnelBusyError("Completion in progress")
        if self._pending_completion is not None:
            raise FunnelBusyError("Completion failed; retry before continuing")
        step = self.current_step
        if step is None:
            raise FunnelError("No step to interact with")
        return step

    async def _advance(
        self,
        step: FunnelStep,
        step_data: Dict[str, Any],
        jump_to: Optional[int] = None,
    ) -> StepOutcome:
        index = self.state.current_index
        self.state.merge_data(step_data)

        if jump_to is not None:
            result = NextStep(index=jump_to)
        else:
            result = next_for_state(self.steps, self.state)

        next_index = result.index if isinstance(result, NextStep) else None
        self._publish(StepCompleted(
            funnel_id=self.funnel.id,
            session_id=self.session_id,
            step_id=step.id,
            step_type=step.type.value,
            step_index=index,
            step_data=step_data,
            next_step_index=next_index,
        ))

        if next_index is None:
            self.state.history.append(index)
            self.state.current_index = len(self.steps)
            self._schedule_patch(current_step_index=len(self.steps), completed_step_index=index, data=step_data)
            return await self._finish(result)

        self.state.history.append(index)
        self.state.current_index = next_index
        self._schedule_patch(current_step_index=next_index, completed_step_index=index, data=step_data)
        return StepOutcome(next_index=next_index)

    def _schedule_patch(self, **patch: Any) -> None:
        previous = self._last_patch
        task = asyncio.create_task(self._send_patch(previous, patch))
        self._last_patch = task
        self._patches.add(task)
        task.add_done_callback(self._patches.discard)

    async def _send_patch(self, previous: Optional[asyncio.Task], patch: Dict[str, Any]) -> None:
        if previous is not None and not previous.done():
            await asyncio.gather(previous, return_exceptions=True)
        try:
            await self.client.patch_session(self.session_id, **patch)
        except FunnelApiError as e:
            logger.warning(f"Background patch of session {self.session_id} failed ({e.status_code}): {e.message}")

    def _publish(self, event) -> None:
        self.event_bus.publish(event)

    def _publish_start(self, restored: RestoredSession) -> None:
        if restored.discarded_session_id is not None:
            self._publish(SessionRestarted(
                funnel_id=self.funnel.id,
                session_id=restored.session_id,
                reason=restored.restart_reason or "unknown",
                discarded_session_id=restored.discarded_session_id,
            ))
        self._publish(SessionStarted(
            funnel_id=self.funnel.id,
            session_id=restored.session_id,
            restored=restored.restored,
            current_step_index=restored.current_step_index,
        ))
