"""Application settings using Pydantic Settings.

Centralized configuration for the funnel session engine.

Environment variables:
- APP_*: application-wide settings (environment, logging, CORS)
- FUNNEL_*: session store, pointer cache and completion settings
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "data" / "funnel_sessions.db"


class FunnelSettings(BaseSettings):
    """Funnel session store and client configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FUNNEL_",
        extra="ignore",
    )

    db_path: Path = Field(default=DEFAULT_DB_PATH, description="SQLite database for flow sessions")
    session_ttl_hours: int = Field(default=168, description="Absolute session lifetime (7 days)")
    session_id_prefix: str = Field(default="flow_", description="Scheme prefix of session ids")
    pointer_key_prefix: str = Field(
        default="funnel_session_",
        description="Prefix of the client-side pointer key (suffixed with the funnel id)"
    )
    default_redirect_url: str = Field(default="/", description="Platform redirect after completion")
    funnels_path: Optional[Path] = Field(
        default=None,
        description="JSON file of funnel definitions served by the local step definition store"
    )

    # Client settings
    api_base_url: str = Field(default="http://localhost:8000", description="Session API base URL")
    request_timeout_seconds: float = Field(default=10.0, description="HTTP timeout for session calls")

    @field_validator("session_ttl_hours")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session_ttl_hours must be positive")
        return value

    @field_validator("session_id_prefix")
    @classmethod
    def _non_empty_prefix(cls, value: str) -> str:
        if not value:
            raise ValueError("session_id_prefix must not be empty")
        return value


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application info
    name: str = Field(default="Funnel Session Engine", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment name")

    # API settings
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON logs (forced on in production)")

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        description="Allowed CORS origins"
    )

    @property
    def funnel(self) -> FunnelSettings:
        return get_funnel_settings()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment in ("production", "prod", "staging")

    @property
    def use_json_logs(self) -> bool:
        return self.log_json or self.is_production


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings instance.

    Returns:
        Settings: Cached settings loaded from environment.
    """
    return Settings()


@lru_cache
def get_funnel_settings() -> FunnelSettings:
    """Get cached funnel settings instance."""
    return FunnelSettings()
