"""
Database Layer for the funnel session engine.

This module provides:
- SQLite-backed flow session records with merge-only answer data
- The completion ledger that makes funnel finalize exactly-once
"""

from .funnel_session_persistence import (
    CompletionRecord,
    CompletionStatus,
    FunnelSessionPersistence,
    LookupStatus,
    SessionLookup,
    get_funnel_session_persistence,
)

__all__ = [
    "CompletionRecord",
    "CompletionStatus",
    "FunnelSessionPersistence",
    "LookupStatus",
    "SessionLookup",
    "get_funnel_session_persistence",
]
