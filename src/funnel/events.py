"""
Funnel domain events.

Immutable records of what happened during a funnel traversal. Side
observers (analytics, pixels, notifications) subscribe to them through the
event bus; the engine's control flow never depends on a subscriber.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    """Types of funnel events."""
    SESSION_STARTED = "funnel.session_started"
    SESSION_RESTARTED = "funnel.session_restarted"
    STEP_COMPLETED = "funnel.step_completed"
    UPSELL_DECLINED = "funnel.upsell_declined"
    SESSION_LINKED = "funnel.session_linked"
    FUNNEL_COMPLETED = "funnel.completed"


class FunnelEvent(BaseModel):
    """
    Base class for all funnel events.

    All events are immutable and contain:
    - Unique event ID
    - When the event occurred
    - The funnel and session they belong to
    """
    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    occurred_at: datetime = Field(default_factory=_utcnow)
    funnel_id: str
    session_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionStarted(FunnelEvent):
    """A session was restored or created on load."""
    event_type: EventType = EventType.SESSION_STARTED
    restored: bool
    current_step_index: int


class SessionRestarted(FunnelEvent):
    """A cached pointer was unusable and a fresh session replaced it."""
    event_type: EventType = EventType.SESSION_RESTARTED
    reason: str
    discarded_session_id: Optional[str] = None


class StepCompleted(FunnelEvent):
    """The user completed a step with answer data."""
    event_type: EventType = EventType.STEP_COMPLETED
    step_id: str
    step_type: str
    step_index: int
    step_data: Dict[str, Any] = Field(default_factory=dict)
    next_step_index: Optional[int] = None


class UpsellDeclined(FunnelEvent):
    event_type: EventType = EventType.UPSELL_DECLINED
    step_id: str
    downsell_step_index: Optional[int] = None


class SessionLinked(FunnelEvent):
    event_type: EventType = EventType.SESSION_LINKED
    already_linked: bool = False


class FunnelCompleted(FunnelEvent):
    """The funnel was finalized and the client pointer cleared."""
    event_type: EventType = EventType.FUNNEL_COMPLETED
    redirect_url: str
    already_completed: bool = False
