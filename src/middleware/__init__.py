"""Middleware components for the funnel session API.

Provides:
- Request correlation ID tracking
- Logging context enrichment
"""

from .correlation import (
    CorrelationIdMiddleware,
    get_request_id,
)

__all__ = [
    "CorrelationIdMiddleware",
    "get_request_id",
]
