"""
Funnel session engine.

Client-side engine that drives a user through a funnel:
- models: funnel, step and session definitions
- navigator / conditions: next-step computation and showIf rules
- branching: upsell/downsell decline tracking
- recovery / pointer_cache: resumable sessions across reloads
- completion / runner: exactly-once finalize and step orchestration
"""

from .branching import BranchTracker
from .errors import FunnelError
from .models import Funnel, FunnelSession, FunnelStep, NavigationState, StepType
from .navigator import CompletionReason, FunnelComplete, NextStep, compute_next_step, previous_step

__all__ = [
    "BranchTracker",
    "CompletionReason",
    "compute_next_step",
    "Funnel",
    "FunnelComplete",
    "FunnelError",
    "FunnelSession",
    "FunnelStep",
    "NavigationState",
    "NextStep",
    "previous_step",
    "StepType",
]
