"""Step Navigator.

Pure decision logic: given the current step index, the accumulated answer
data and the branch state, compute the next step to display or signal that
the funnel is complete.

Checks run in a fixed precedence for every candidate step, scanning forward
from ``current_index + 1``:

1. payment steps are skipped when the invite skips payment
2. offer steps whose product can no longer be sold are skipped
3. downsell steps are skipped unless their linked upsell was declined
4. a success step configured to skip its page completes the funnel
5. the step's showIf rule must hold

Structural checks (1-4) come before the data-dependent showIf rule so stale
answer data can never override a structural skip.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Any, Callable, Dict, Mapping, Optional, Sequence, Union

from funnel.conditions import evaluate_show_if
from funnel.models import (
    FunnelStep,
    NavigationState,
    StepType,
    SuccessStepConfig,
    UpsellStepConfig,
)

logger = logging.getLogger(__name__)


class CompletionReason(str, Enum):
    END_OF_FUNNEL = "end_of_funnel"
    SUCCESS_SKIPPED = "success_skipped"


@dataclass(frozen=True)
class NextStep:
    """Display the step at ``index``."""
    index: int


@dataclass(frozen=True)
class FunnelComplete:
    """No further step to display; hand over to the completion handler."""
    reason: CompletionReason
    redirect_url: Optional[str] = None


NavigationResult = Union[NextStep, FunnelComplete]


class _Route(Enum):
    CANDIDATE = "candidate"
    SKIP = "skip"
    COMPLETE = "complete"


@dataclass(frozen=True)
class _ScanContext:
    steps: Sequence[FunnelStep]
    declined_upsells: AbstractSet[str]
    skip_payment: bool
    unavailable_offers: AbstractSet[str]


def _route_content(step: FunnelStep, ctx: _ScanContext) -> _Route:
    return _Route.CANDIDATE


def _route_payment(step: FunnelStep, ctx: _ScanContext) -> _Route:
    return _Route.SKIP if ctx.skip_payment else _Route.CANDIDATE


def _route_upsell(step: FunnelStep, ctx: _ScanContext) -> _Route:
    # A declined upsell is never offered twice
    if step.id in ctx.unavailable_offers or step.id in ctx.declined_upsells:
        return _Route.SKIP
    return _Route.CANDIDATE


def _route_downsell(step: FunnelStep, ctx: _ScanContext) -> _Route:
    if step.id in ctx.unavailable_offers:
        return _Route.SKIP
    if declined_upsell_links_to(ctx.steps, step, ctx.declined_upsells):
        return _Route.CANDIDATE
    return _Route.SKIP


def _route_success(step: FunnelStep, ctx: _ScanContext) -> _Route:
    config = step.config
    if isinstance(config, SuccessStepConfig) and config.skip_success_page:
        return _Route.COMPLETE
    return _Route.CANDIDATE


# Every step type must be routed; checked at import time below.
_STEP_ROUTES: Dict[StepType, Callable[[FunnelStep, _ScanContext], _Route]] = {
    StepType.QUESTION: _route_content,
    StepType.SIGNUP: _route_content,
    StepType.PAYMENT: _route_payment,
    StepType.GOAL_SETTING: _route_content,
    StepType.IDENTITY: _route_content,
    StepType.ANALYZING: _route_content,
    StepType.PLAN_REVEAL: _route_content,
    StepType.EXPLAINER: _route_content,
    StepType.LANDING_PAGE: _route_content,
    StepType.UPSELL: _route_upsell,
    StepType.DOWNSELL: _route_downsell,
    StepType.INFO: _route_content,
    StepType.SUCCESS: _route_success,
}

_missing_routes = set(StepType) - set(_STEP_ROUTES)
if _missing_routes:
    raise RuntimeError(f"No navigator route for step types: {sorted(t.value for t in _missing_routes)}")


def declined_upsell_links_to(
    steps: Sequence[FunnelStep],
    downsell: FunnelStep,
    declined_upsells: AbstractSet[str],
) -> bool:
    """True if an upsell before ``downsell`` links to it and was declined."""
    for step in steps:
        if step.id == downsell.id:
            return False
        config = step.config
        if (
            isinstance(config, UpsellStepConfig)
            and config.linked_downsell_step_id == downsell.id
            and step.id in declined_upsells
        ):
            return True
    return False


def _end_of_funnel_redirect(steps: Sequence[FunnelStep]) -> Optional[str]:
    for step in steps:
        if isinstance(step.config, SuccessStepConfig):
            return step.config.skip_success_redirect
    return None


def compute_next_step(
    steps: Sequence[FunnelStep],
    current_index: int,
    answer_data: Mapping[str, Any],
    declined_upsells: AbstractSet[str] = frozenset(),
    skip_payment: bool = False,
    unavailable_offers: AbstractSet[str] = frozenset(),
) -> NavigationResult:
    """
    Compute the next step index to display.

    Args:
        steps: Ordered funnel steps
        current_index: Index of the step just completed
        answer_data: Accumulated answers, including the current step's
        declined_upsells: Ids of upsell steps the user declined
        skip_payment: True when the invite is pre-paid or free
        unavailable_offers: Ids of offer steps that can no longer be sold

    Returns:
        NextStep with the index to show, or FunnelComplete.
    """
    ctx = _ScanContext(
        steps=steps,
        declined_upsells=declined_upsells,
        skip_payment=skip_payment,
        unavailable_offers=unavailable_offers,
    )

    for index in range(max(current_index + 1, 0), len(steps)):
        step = steps[index]
        route = _STEP_ROUTES[step.type](step, ctx)

        if route is _Route.SKIP:
            logger.debug(f"Skipping step {step.id} ({step.type.value}) structurally")
            continue

        if route is _Route.COMPLETE:
            config = step.config
            redirect = config.skip_success_redirect if isinstance(config, SuccessStepConfig) else None
            return FunnelComplete(reason=CompletionReason.SUCCESS_SKIPPED, redirect_url=redirect)

        if not evaluate_show_if(step.show_if, answer_data):
            logger.debug(f"Skipping step {step.id}: showIf on '{step.show_if.field}' not met")
            continue

        return NextStep(index=index)

    return FunnelComplete(
        reason=CompletionReason.END_OF_FUNNEL,
        redirect_url=_end_of_funnel_redirect(steps),
    )


def next_for_state(steps: Sequence[FunnelStep], state: NavigationState) -> NavigationResult:
    """Run the navigator from a NavigationState."""
    return compute_next_step(
        steps,
        state.current_index,
        state.data,
        declined_upsells=state.declined_upsells,
        skip_payment=state.skip_payment,
        unavailable_offers=state.unavailable_offer_step_ids,
    )


def previous_step(state: NavigationState) -> Optional[int]:
    """Index of the previously displayed step, or None at the start."""
    if state.history:
        return state.history[-1]
    return None
