"""Local chat history helpers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ourdm_sync.db.time import to_datetime

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ourdm_sync.models.message import LocalMessage
    from ourdm_sync.repositories.message_repo import LocalMessageStore

logger = logging.getLogger(__name__)

TRANSCRIPT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class ChatHistory:
    """Search, export and clear a chat on this device only."""

    def __init__(self, store: LocalMessageStore) -> None:
        self.store = store

    def search(self, chat_id: str, text: str) -> list[LocalMessage]:
        if not text.strip():
            return []
        return self.store.search(chat_id, text)

    def export_transcript(self, chat_id: str) -> str:
        """Render the chat as `[time] sender: content` lines, oldest first.

        Messages deleted on this device are left out; tombstones keep their
        placeholder.
        """
        lines = []
        for message in self.store.list_chat(chat_id):
            if message.is_deleted and not message.deleted_for_everyone:
                continue
            stamp = to_datetime(message.created_at).strftime(TRANSCRIPT_TIME_FORMAT)
            lines.append(f"[{stamp}] {message.sender_id}: {message.content}\n")
        return "".join(lines)

    def clear(self, chat_id: str) -> int:
        """Hard-delete the chat's records from this device."""
        removed = self.store.clear_chat(chat_id)
        logger.info("Cleared %d message(s) from chat %s", removed, chat_id)
        return removed
