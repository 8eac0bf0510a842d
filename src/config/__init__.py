"""Configuration module for the funnel session engine."""

from .settings import FunnelSettings, Settings, get_funnel_settings, get_settings

__all__ = [
    "FunnelSettings",
    "get_funnel_settings",
    "Settings",
    "get_settings",
]
