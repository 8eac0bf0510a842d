"""
FastAPI application for the funnel session engine.

Routes:
- POST  /api/funnel/session            : create a flow session
- GET   /api/funnel/session            : read a session for restoration
- PATCH /api/funnel/session/{id}       : record progress (merge semantics)
- POST  /api/funnel/session/link-user  : link the session to the signed-in user
- POST  /api/funnel/complete           : finalize the funnel exactly once
- GET   /api/funnel/health             : liveness probe
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, get_settings
from middleware.correlation import CorrelationIdMiddleware
from services.logging_config import configure_logging
from web.funnel_api import router as funnel_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Application settings (defaults to environment settings)
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_output=settings.use_json_logs)

    app = FastAPI(title=settings.name, version=settings.version, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(funnel_router)
    logger.info(f"Funnel session API ready ({settings.environment})")
    return app


app = create_app()
