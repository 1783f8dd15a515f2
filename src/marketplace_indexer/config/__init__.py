"""Configuration module for the marketplace indexer."""

from .settings import Settings, get_settings
from .logging import configure_logging, JSONFormatter, TextFormatter, SanitizingFilter

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "JSONFormatter",
    "TextFormatter",
    "SanitizingFilter",
]
