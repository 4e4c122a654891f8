"""Configuration loading utilities for teammail."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DATABASE_PATH,
    EngineSettings,
    OAuthClientSettings,
    ProtocolSettings,
    load_settings,
    save_settings,
    validate_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DATABASE_PATH",
    "EngineSettings",
    "OAuthClientSettings",
    "ProtocolSettings",
    "load_settings",
    "save_settings",
    "validate_settings",
]
