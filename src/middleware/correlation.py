"""Request Correlation ID Middleware.

Tags every request to the session API with a request id, and every request
that names a flow session with that session id, so log lines from the
session store, completion and linking services can be tied together.

Usage:
    from fastapi import FastAPI
    from middleware.correlation import CorrelationIdMiddleware

    app = FastAPI()
    app.add_middleware(CorrelationIdMiddleware)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from services.logging_config import request_id_var, session_id_var

logger = logging.getLogger(__name__)

# Header names
REQUEST_ID_HEADER = "X-Request-ID"
SESSION_PATH_PREFIX = "/api/funnel/session/"


def get_request_id() -> Optional[str]:
    """Get the request ID of the current context, or None."""
    return request_id_var.get()


def _session_id_from(request: Request) -> Optional[str]:
    session_id = request.query_params.get("sessionId")
    if session_id:
        return session_id
    path = request.url.path
    if path.startswith(SESSION_PATH_PREFIX):
        tail = path[len(SESSION_PATH_PREFIX):]
        if tail and "/" not in tail and tail != "link-user":
            return tail
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to handle request IDs for request tracing.

    - Extracts the request ID from incoming headers or generates one
    - Sets request and session IDs in the logging context
    - Adds the request ID to response headers
    """

    def __init__(
        self,
        app,
        header_name: str = REQUEST_ID_HEADER,
        generator: Optional[Callable[[], str]] = None,
    ):
        super().__init__(app)
        self.header_name = header_name
        self.generator = generator or (lambda: str(uuid.uuid4()))

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        request_id = request.headers.get(self.header_name) or self.generator()

        request_token = request_id_var.set(request_id)
        session_token = session_id_var.set(_session_id_from(request))

        try:
            request.state.request_id = request_id
            response = await call_next(request)
            response.headers[self.header_name] = request_id
            return response
        finally:
            session_id_var.reset(session_token)
            request_id_var.reset(request_token)
