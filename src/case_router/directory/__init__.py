"""Known correspondents of a firm."""

from .contacts import ContactDirectory, DirectoryMatch, normalize_address

__all__ = ["ContactDirectory", "DirectoryMatch", "normalize_address"]
