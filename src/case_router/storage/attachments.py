"""Local-directory attachment store."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from ..core.models import Attachment, Message

LOGGER = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class LocalAttachmentStore:
    """Write attachment content below ``root`` using deterministic paths."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    def save(self, message: Message, attachment: Attachment, content: bytes) -> str:
        """Store content and return its path relative to the store root."""
        relative = self._relative_path(message, attachment)
        target = self._root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        partial.write_bytes(content)
        partial.replace(target)
        LOGGER.debug("Stored attachment %s (%d bytes)", relative, len(content))
        return relative.as_posix()

    def exists(self, storage_ref: str) -> bool:
        return (self._root / storage_ref).is_file()

    def _relative_path(self, message: Message, attachment: Attachment) -> Path:
        filename = _UNSAFE_CHARS.sub("_", attachment.filename or "attachment")
        attachment_key = _UNSAFE_CHARS.sub("_", attachment.provider_attachment_id)
        return (
            Path(str(message.firm_id))
            / str(message.id)
            / f"{attachment_key}-{filename}"
        )


__all__ = ["LocalAttachmentStore"]
