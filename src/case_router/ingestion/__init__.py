"""Message ingestion."""

from .ingestor import IngestResult, MessageIngestor, message_from_provider

__all__ = ["IngestResult", "MessageIngestor", "message_from_provider"]
