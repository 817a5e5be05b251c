"""Visibility defaults and the publish/unpublish contract."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from datetime import datetime

from ..core.config import PrivacySettings
from ..core.datetime_utils import utc_now
from ..core.errors import NotFoundError, PrivacyError
from ..core.interfaces import MessageRepository
from ..core.models import Attachment, Message

LOGGER = logging.getLogger(__name__)


class PrivacyGate:
    """Owns the private flag of messages and their attachments."""

    def __init__(
        self,
        repository: MessageRepository,
        settings: PrivacySettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._settings = settings or PrivacySettings()
        self._elevated = {role.casefold() for role in self._settings.elevated_roles}
        self._clock = clock

    def is_elevated(self, role: str | None) -> bool:
        return bool(role) and role.casefold() in self._elevated

    def apply_default(self, message: Message, owner_role: str | None) -> bool:
        """Stamp the default flag on an unsaved message and its attachments."""
        private = self.is_elevated(owner_role)
        changed_at = self._clock()
        for flag in (
            message.visibility,
            *(attachment.visibility for attachment in message.attachments),
        ):
            flag.private = private
            flag.changed_by = message.owner_id
            flag.changed_at = changed_at
        return private

    def set_default_visibility(self, message: Message, owner_role: str | None) -> bool:
        """Make the message and its attachments private iff the owner is elevated."""
        if message.id is None:
            raise ValueError("Message must be stored before visibility is set")
        private = self.apply_default(message, owner_role)
        changed_by = message.owner_id
        changed_at = message.visibility.changed_at or self._clock()
        self._repository.set_message_visibility(
            message.id, private, changed_by, changed_at
        )
        for attachment in message.attachments:
            if attachment.id is not None:
                self._repository.set_attachment_visibility(
                    attachment.id, private, changed_by, changed_at
                )
        return private

    def publish(
        self,
        message_id: int,
        actor_id: str,
        *,
        exclude_attachments: Collection[int] = (),
    ) -> Message:
        """Make a message public; its attachments follow unless excluded."""
        message = self._owned_message(message_id, actor_id)
        changed_at = self._clock()
        if message.visibility.private:
            self._repository.set_message_visibility(
                message_id, False, actor_id, changed_at
            )
            LOGGER.info("Message %s published by %s", message_id, actor_id)
        excluded = set(exclude_attachments)
        for attachment in message.attachments:
            if attachment.id in excluded or not attachment.visibility.private:
                continue
            self._repository.set_attachment_visibility(
                int(attachment.id), False, actor_id, changed_at  # type: ignore[arg-type]
            )
        return self._reload(message_id)

    def unpublish(self, message_id: int, actor_id: str) -> Message:
        """Make a message private again; attachments keep their own flags."""
        message = self._owned_message(message_id, actor_id)
        if not message.visibility.private:
            self._repository.set_message_visibility(
                message_id, True, actor_id, self._clock()
            )
            LOGGER.info("Message %s unpublished by %s", message_id, actor_id)
        return self._reload(message_id)

    def publish_attachment(self, attachment_id: int, actor_id: str) -> Attachment:
        """Publish one attachment independently of its parent message."""
        attachment = self._repository.get_attachment(attachment_id)
        if attachment is None or attachment.message_id is None:
            raise NotFoundError(f"Attachment {attachment_id} does not exist")
        self._owned_message(attachment.message_id, actor_id)
        if attachment.visibility.private:
            self._repository.set_attachment_visibility(
                attachment_id, False, actor_id, self._clock()
            )
        refreshed = self._repository.get_attachment(attachment_id)
        if refreshed is None:  # pragma: no cover - read after write
            raise NotFoundError(f"Attachment {attachment_id} does not exist")
        return refreshed

    def thread_is_public(self, firm_id: int, conversation_id: str) -> bool:
        """A conversation is shown as public when any of its messages is."""
        return any(
            not message.visibility.private
            for message in self._repository.list_conversation(firm_id, conversation_id)
        )

    @staticmethod
    def can_view(message: Message, user_id: str) -> bool:
        """Each message's own flag decides who may read it."""
        return not message.visibility.private or message.owner_id == user_id

    def _owned_message(self, message_id: int, actor_id: str) -> Message:
        message = self._repository.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} does not exist")
        if message.owner_id != actor_id:
            raise PrivacyError(
                f"Only the owner may change visibility of message {message_id}"
            )
        return message

    def _reload(self, message_id: int) -> Message:
        message = self._repository.get_message(message_id)
        if message is None:  # pragma: no cover - read after write
            raise NotFoundError(f"Message {message_id} does not exist")
        return message


__all__ = ["PrivacyGate"]
