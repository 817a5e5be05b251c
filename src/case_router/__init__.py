"""Case routing engine for law-firm correspondence."""

__version__ = "0.1.0"

__all__ = ["__version__"]
