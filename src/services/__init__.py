"""
Services Module - server-side business logic for the funnel session engine.

Application Services (orchestration):
- FunnelCompletionService: exactly-once funnel finalize
- SessionLinkingService: session-to-user linking with tenant checks

Infrastructure Services:
- Logging and observability
"""

from .funnel_completion_service import (
    CompletionOutcome,
    FunnelCompletionService,
    extract_user_data,
)
from .session_linking_service import LinkResult, SessionLinkingService

__all__ = [
    "CompletionOutcome",
    "FunnelCompletionService",
    "extract_user_data",
    "LinkResult",
    "SessionLinkingService",
]
