"""Persistence layer."""

from .attachments import LocalAttachmentStore
from .connection_pool import ConnectionPool
from .sqlite import SqliteCaseRepository

__all__ = ["ConnectionPool", "LocalAttachmentStore", "SqliteCaseRepository"]
