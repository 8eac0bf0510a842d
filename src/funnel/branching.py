"""Branch Tracker for upsell/downsell offers.

Declining an upsell that links to a downsell is the only way a downsell is
ever reached: the tracker returns the downsell index as an immediate jump,
bypassing the navigator's forward scan. The declined set is ephemeral
navigation state rebuilt empty on every session load.

Branching is single level: a downsell never links to a further offer.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional, Sequence, Set

from funnel.models import FunnelStep, StepType, UpsellStepConfig

logger = logging.getLogger(__name__)


def upsell_marker(step_id: str, accepted: bool, enrollment_id: Optional[str] = None) -> Dict[str, Any]:
    """Answer-data markers recorded for an upsell decision."""
    data: Dict[str, Any] = {f"upsell_{step_id}_accepted": accepted}
    if accepted and enrollment_id:
        data[f"upsell_{step_id}_enrollmentId"] = enrollment_id
    return data


def downsell_marker(step_id: str, accepted: bool, enrollment_id: Optional[str] = None) -> Dict[str, Any]:
    """Answer-data markers recorded for a downsell decision."""
    data: Dict[str, Any] = {f"downsell_{step_id}_accepted": accepted}
    if accepted and enrollment_id:
        data[f"downsell_{step_id}_enrollmentId"] = enrollment_id
    return data


class BranchTracker:
    """
    Tracks declined upsells and resolves upsell -> downsell jumps.

    Args:
        steps: Ordered funnel steps
        unavailable_offers: Offer step ids that can no longer be sold; a
            decline never jumps to an unavailable downsell
    """

    def __init__(self, steps: Sequence[FunnelStep], unavailable_offers: FrozenSet[str] = frozenset()):
        self._steps = list(steps)
        self._index_by_id = {step.id: index for index, step in enumerate(self._steps)}
        self._declined: Set[str] = set()
        self.unavailable_offers = frozenset(unavailable_offers)

    @property
    def declined_upsells(self) -> FrozenSet[str]:
        return frozenset(self._declined)

    def reset(self) -> None:
        self._declined.clear()

    def _require_step(self, step_id: str, expected: StepType) -> FunnelStep:
        index = self._index_by_id.get(step_id)
        if index is None:
            raise KeyError(f"Unknown step id: {step_id}")
        step = self._steps[index]
        if step.type != expected:
            raise ValueError(f"Step {step_id} is a {step.type.value} step, expected {expected.value}")
        return step

    def on_upsell_accepted(self, step_id: str, enrollment_id: Optional[str] = None) -> Dict[str, Any]:
        """Record an accepted upsell; returns the answer markers to persist."""
        self._require_step(step_id, StepType.UPSELL)
        self._declined.discard(step_id)
        logger.info(f"Upsell {step_id} accepted")
        return upsell_marker(step_id, True, enrollment_id)

    def reopen_upsell(self, step_id: str) -> None:
        """Forget an earlier decline when the user returns to the upsell."""
        self._require_step(step_id, StepType.UPSELL)
        self._declined.discard(step_id)

    def on_upsell_declined(self, step_id: str) -> Optional[int]:
        """
        Record a declined upsell.

        Returns:
            Index of the linked downsell to jump to, or None when the upsell
            has no (reachable) downsell and forward navigation should resume.
        """
        step = self._require_step(step_id, StepType.UPSELL)
        self._declined.add(step_id)

        config = step.config
        linked_id = config.linked_downsell_step_id if isinstance(config, UpsellStepConfig) else None
        if not linked_id:
            logger.info(f"Upsell {step_id} declined, no linked downsell")
            return None

        downsell_index = self._index_by_id.get(linked_id)
        if downsell_index is None:
            logger.warning(f"Upsell {step_id} links to missing downsell {linked_id}")
            return None

        if self._steps[downsell_index].type != StepType.DOWNSELL:
            logger.warning(f"Upsell {step_id} links to non-downsell step {linked_id}")
            return None

        if linked_id in self.unavailable_offers:
            logger.info(f"Downsell {linked_id} unavailable, resuming forward navigation")
            return None

        logger.info(f"Upsell {step_id} declined, jumping to downsell {linked_id} (index {downsell_index})")
        return downsell_index

    def on_downsell_accepted(self, step_id: str, enrollment_id: Optional[str] = None) -> Dict[str, Any]:
        self._require_step(step_id, StepType.DOWNSELL)
        return downsell_marker(step_id, True, enrollment_id)

    def on_downsell_declined(self, step_id: str) -> Dict[str, Any]:
        self._require_step(step_id, StepType.DOWNSELL)
        return downsell_marker(step_id, False)

    def upsell_for_downsell(self, downsell_id: str) -> Optional[str]:
        """Id of the declined upsell that led to ``downsell_id``, if any."""
        for step in self._steps:
            config = step.config
            if (
                isinstance(config, UpsellStepConfig)
                and config.linked_downsell_step_id == downsell_id
                and step.id in self._declined
            ):
                return step.id
        return None
