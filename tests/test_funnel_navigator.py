"""
Tests for the Step Navigator.

Covers skip precedence, success-page skipping, end-of-funnel completion,
and the structural properties that must hold for every funnel.
"""

import itertools

import pytest

from funnel.models import NavigationState, StepType
from funnel.navigator import (
    CompletionReason,
    FunnelComplete,
    NextStep,
    compute_next_step,
    next_for_state,
    previous_step,
)
from tests.helpers.funnel_builders import build_funnel, step


class TestForwardScan:

    def test_advances_to_next_step(self):
        funnel = build_funnel([step("a", "info"), step("b", "info")])
        assert compute_next_step(funnel.steps, 0, {}) == NextStep(index=1)

    def test_end_of_list_completes(self):
        funnel = build_funnel([step("a", "info"), step("b", "info")])
        result = compute_next_step(funnel.steps, 1, {})
        assert result == FunnelComplete(reason=CompletionReason.END_OF_FUNNEL, redirect_url=None)

    def test_end_of_list_uses_first_success_redirect(self):
        funnel = build_funnel([
            step("a", "info"),
            step("done", "success", skipSuccessRedirect="/dashboard"),
        ])
        result = compute_next_step(funnel.steps, 1, {})
        assert isinstance(result, FunnelComplete)
        assert result.redirect_url == "/dashboard"

    def test_payment_shown_when_required(self):
        funnel = build_funnel([step("a", "info"), step("pay", "payment")])
        assert compute_next_step(funnel.steps, 0, {}, skip_payment=False) == NextStep(index=1)

    def test_payment_skipped_for_prepaid(self):
        funnel = build_funnel([step("a", "info"), step("pay", "payment"), step("b", "info")])
        assert compute_next_step(funnel.steps, 0, {}, skip_payment=True) == NextStep(index=2)

    def test_show_if_skips_step(self):
        funnel = build_funnel([
            step("q", "question", fieldName="goal"),
            step("fitness_only", "info", show_if={"field": "goal", "operator": "eq", "value": "fitness"}),
            step("b", "info"),
        ])
        assert compute_next_step(funnel.steps, 0, {"goal": "career"}) == NextStep(index=2)
        assert compute_next_step(funnel.steps, 0, {"goal": "fitness"}) == NextStep(index=1)

    def test_unavailable_offer_skipped(self):
        funnel = build_funnel([step("a", "info"), step("up", "upsell"), step("b", "info")])
        result = compute_next_step(funnel.steps, 0, {}, unavailable_offers={"up"})
        assert result == NextStep(index=2)

    def test_next_for_state_uses_state_fields(self):
        funnel = build_funnel([step("a", "info"), step("pay", "payment"), step("b", "info")])
        state = NavigationState(current_index=0, skip_payment=True)
        assert next_for_state(funnel.steps, state) == NextStep(index=2)


class TestSuccessSkip:

    def test_skip_success_page_completes_immediately(self):
        funnel = build_funnel([
            step("a", "info"),
            step("done", "success", skipSuccessPage=True, skipSuccessRedirect="/welcome"),
            step("after", "info"),
        ])
        result = compute_next_step(funnel.steps, 0, {})
        assert result == FunnelComplete(reason=CompletionReason.SUCCESS_SKIPPED, redirect_url="/welcome")

    def test_success_page_shown_by_default(self):
        funnel = build_funnel([step("a", "info"), step("done", "success")])
        assert compute_next_step(funnel.steps, 0, {}) == NextStep(index=1)

    def test_structural_skip_wins_over_show_if(self):
        """A success skip completes even when its showIf would hide the step."""
        funnel = build_funnel([
            step("a", "info"),
            step("done", "success", skipSuccessPage=True,
                 show_if={"field": "goal", "operator": "eq", "value": "never"}),
        ])
        result = compute_next_step(funnel.steps, 0, {"goal": "fitness"})
        assert isinstance(result, FunnelComplete)
        assert result.reason == CompletionReason.SUCCESS_SKIPPED

    def test_prepaid_scenario(self):
        """question -> signup -> success(skip) with payment never shown."""
        funnel = build_funnel([
            step("q", "question"),
            step("signup", "signup"),
            step("pay", "payment"),
            step("done", "success", skipSuccessPage=True, skipSuccessRedirect="/welcome"),
        ])

        shown = [0]
        result = compute_next_step(funnel.steps, 0, {"answer": "yes"}, skip_payment=True)
        while isinstance(result, NextStep):
            shown.append(result.index)
            result = compute_next_step(funnel.steps, result.index, {"answer": "yes"}, skip_payment=True)

        assert [funnel.steps[i].id for i in shown] == ["q", "signup"]
        assert result == FunnelComplete(reason=CompletionReason.SUCCESS_SKIPPED, redirect_url="/welcome")


class TestDownsellGating:

    @pytest.fixture
    def offer_funnel(self):
        return build_funnel([
            step("q", "question"),
            step("upsell", "upsell", linkedDownsellStepId="downsell"),
            step("info", "info"),
            step("other", "info"),
            step("downsell", "downsell"),
            step("done", "success"),
        ])

    def test_downsell_skipped_in_forward_scan(self, offer_funnel):
        assert compute_next_step(offer_funnel.steps, 3, {}) == NextStep(index=5)

    def test_downsell_reachable_after_linked_upsell_declined(self, offer_funnel):
        result = compute_next_step(offer_funnel.steps, 3, {}, declined_upsells={"upsell"})
        assert result == NextStep(index=4)

    def test_declined_upsell_never_offered_again(self, offer_funnel):
        result = compute_next_step(offer_funnel.steps, 0, {}, declined_upsells={"upsell"})
        assert result == NextStep(index=2)

    def test_unlinked_downsell_always_skipped(self):
        funnel = build_funnel([step("a", "info"), step("orphan", "downsell"), step("b", "info")])
        assert compute_next_step(funnel.steps, 0, {}, declined_upsells={"anything"}) == NextStep(index=2)


class TestPreviousStep:

    def test_previous_from_history(self):
        state = NavigationState(current_index=4, history=[0, 1, 3])
        assert previous_step(state) == 3

    def test_previous_at_start(self):
        assert previous_step(NavigationState()) is None


# =============================================================================
# PROPERTIES
# =============================================================================

STEP_TYPES_FOR_PROPERTIES = ["info", "payment", "upsell", "downsell", "question", "signup"]


def _all_funnels(length):
    for types in itertools.product(STEP_TYPES_FOR_PROPERTIES, repeat=length):
        documents = []
        for position, step_type in enumerate(types):
            config = {}
            if step_type == "upsell":
                # Link to the next downsell, if any
                for later in range(position + 1, length):
                    if types[later] == "downsell":
                        config["linkedDownsellStepId"] = f"s{later}"
                        break
            documents.append(step(f"s{position}", step_type, **config))
        yield build_funnel(documents)


class TestNavigatorProperties:

    @pytest.mark.parametrize("length", [3, 4])
    def test_never_lands_on_payment_when_prepaid(self, length):
        for funnel in _all_funnels(length):
            for current in range(-1, length):
                result = compute_next_step(funnel.steps, current, {}, skip_payment=True)
                if isinstance(result, NextStep):
                    assert funnel.steps[result.index].type != StepType.PAYMENT

    @pytest.mark.parametrize("length", [3, 4])
    def test_forward_scan_never_returns_downsell_without_declined_upsell(self, length):
        for funnel in _all_funnels(length):
            for current in range(-1, length):
                result = compute_next_step(funnel.steps, current, {})
                if isinstance(result, NextStep):
                    assert funnel.steps[result.index].type != StepType.DOWNSELL

    @pytest.mark.parametrize("length", [3, 4])
    def test_result_is_always_forward(self, length):
        for funnel in _all_funnels(length):
            declined = {s.id for s in funnel.steps if s.type == StepType.UPSELL}
            for current in range(-1, length):
                result = compute_next_step(funnel.steps, current, {}, declined_upsells=declined)
                if isinstance(result, NextStep):
                    assert current < result.index < length
