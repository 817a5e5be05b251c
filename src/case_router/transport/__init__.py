"""Network transports."""

from .provider_client import HttpMailProvider

__all__ = ["HttpMailProvider"]
