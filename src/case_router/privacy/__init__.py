"""Message visibility."""

from .gate import PrivacyGate

__all__ = ["PrivacyGate"]
