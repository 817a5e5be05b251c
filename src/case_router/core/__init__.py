"""Core utilities for configuration, logging, and shared models."""

from .config import AppSettings, ClassificationSettings, SyncSettings, load_app_settings
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "ClassificationSettings",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
