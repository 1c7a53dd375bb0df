"""Device-only bookkeeping: stars, pins and disappearing-message timers.

Nothing here is ever sent to the relay. State lives in an injected
MetadataBackend under the keys `starred`, `pinned:{chat_id}` and
`disappearing:{chat_id}`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.services.errors import CapacityExceededError

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ourdm_sync.models.message import LocalMessage
    from ourdm_sync.repositories.message_repo import LocalMessageStore
    from ourdm_sync.repositories.setting_repo import MetadataBackend

logger = logging.getLogger(__name__)

STARRED_KEY = "starred"


def pinned_key(chat_id: str) -> str:
    return f"pinned:{chat_id}"


def disappearing_key(chat_id: str) -> str:
    return f"disappearing:{chat_id}"


class LocalMetadataManager:
    """Stars, pins and disappearing timers scoped per chat."""

    def __init__(
        self,
        backend: MetadataBackend,
        store: LocalMessageStore | None = None,
        config: Settings | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.config = config or default_settings

    # Stars

    def starred_ids(self) -> list[str]:
        return list(self.backend.get(STARRED_KEY, []))

    def is_starred(self, message_id: str) -> bool:
        return message_id in self.starred_ids()

    def star(self, message_id: str) -> None:
        starred = self.starred_ids()
        if message_id not in starred:
            starred.append(message_id)
            self.backend.set(STARRED_KEY, starred)

    def unstar(self, message_id: str) -> None:
        starred = self.starred_ids()
        if message_id in starred:
            starred.remove(message_id)
            self.backend.set(STARRED_KEY, starred)

    def starred_messages(self) -> list[LocalMessage]:
        """Resolve starred ids to records, skipping deleted or missing ones."""
        return self._resolve(self.starred_ids())

    # Pins

    def pinned_ids(self, chat_id: str) -> list[str]:
        return list(self.backend.get(pinned_key(chat_id), []))

    def is_pinned(self, chat_id: str, message_id: str) -> bool:
        return message_id in self.pinned_ids(chat_id)

    def can_pin(self, chat_id: str) -> bool:
        """Return True while the chat has room for another pin."""
        return len(self.pinned_ids(chat_id)) < self.config.pin_limit

    def pin(self, chat_id: str, message_id: str) -> bool:
        """Pin a message; a pin beyond the per-chat cap is a silent no-op.

        Returns True if the message is pinned afterwards.
        """
        pinned = self.pinned_ids(chat_id)
        if message_id in pinned:
            return True
        try:
            self._ensure_capacity(chat_id, pinned)
        except CapacityExceededError as exc:
            logger.debug("%s", exc)
            return False
        pinned.append(message_id)
        self.backend.set(pinned_key(chat_id), pinned)
        return True

    def unpin(self, chat_id: str, message_id: str) -> None:
        pinned = self.pinned_ids(chat_id)
        if message_id in pinned:
            pinned.remove(message_id)
            self.backend.set(pinned_key(chat_id), pinned)

    def pinned_messages(self, chat_id: str) -> list[LocalMessage]:
        return self._resolve(self.pinned_ids(chat_id))

    # Disappearing messages

    def set_disappearing(self, chat_id: str, seconds: int | None) -> None:
        """Set the chat's disappearing timer; None or 0 turns it off."""
        if seconds is not None and seconds < 0:
            raise ValueError("Disappearing duration must be positive")
        if seconds:
            self.backend.set(disappearing_key(chat_id), int(seconds))
        else:
            self.backend.delete(disappearing_key(chat_id))

    def get_disappearing(self, chat_id: str) -> int | None:
        value = self.backend.get(disappearing_key(chat_id))
        return int(value) if value else None

    def _ensure_capacity(self, chat_id: str, pinned: list[str]) -> None:
        if len(pinned) >= self.config.pin_limit:
            raise CapacityExceededError(
                f"Chat {chat_id} already has {len(pinned)} pinned messages"
            )

    def _resolve(self, message_ids: list[str]) -> list[LocalMessage]:
        if self.store is None:
            return []
        return [m for m in self.store.get_many(message_ids) if not m.is_deleted]
