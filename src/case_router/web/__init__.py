"""Web application entry point for Case Router."""

from .app import create_app

__all__ = ["create_app"]
