"""Configuration module for spindex."""

from .settings import (
    ApiSettings,
    CronSettings,
    DatabaseSettings,
    ObservabilitySettings,
    Settings,
    SpotifySettings,
    SyncSettings,
    get_settings,
)

__all__ = [
    "ApiSettings",
    "CronSettings",
    "DatabaseSettings",
    "ObservabilitySettings",
    "Settings",
    "SpotifySettings",
    "SyncSettings",
    "get_settings",
]
