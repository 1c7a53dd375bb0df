"""Data access helpers for locally mirrored messages."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.models.message import (
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SCHEDULED,
    STATUS_SENT,
    LocalMessage,
)
from ourdm_sync.services.errors import NotFoundError

__all__ = ["LocalMessageStore", "DEFAULT_PAGE_SIZE"]

DEFAULT_PAGE_SIZE = 50


class LocalMessageStore:
    """Per-device persistent mirror of all messages.

    Writes are per-record upserts committed immediately; there are no
    cross-record invariants, so no multi-record transaction is needed.
    """

    def __init__(self, session: Session, clock: Clock = now_ms) -> None:
        """Initialize the store with a SQLAlchemy session and a millisecond clock."""
        self.session = session
        self.clock = clock

    def put(self, message: LocalMessage) -> LocalMessage:
        """Insert or replace a record keyed by `id`.

        For an existing id, every column set on `message` overwrites the stored
        value (last write wins per field).
        """
        message.updated_at = self.clock()
        existing = self.session.get(LocalMessage, message.id)
        if existing is None:
            self.session.add(message)
            self.session.commit()
            return message
        if existing is message:
            self.session.commit()
            return existing
        for column in LocalMessage.__table__.columns:
            value = getattr(message, column.key, None)
            if value is not None:
                setattr(existing, column.key, value)
        self.session.commit()
        return existing

    def get_by_id(self, message_id: str) -> LocalMessage | None:
        """Return a record by identifier."""
        return self.session.get(LocalMessage, message_id)

    def require(self, message_id: str) -> LocalMessage:
        """Return a record or raise NotFoundError."""
        message = self.get_by_id(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def update(self, message_id: str, **fields: Any) -> LocalMessage:
        """Apply a partial update to one record and commit it."""
        message = self.require(message_id)
        for name, value in fields.items():
            setattr(message, name, value)
        message.updated_at = self.clock()
        self.session.commit()
        return message

    def query_by_chat(
        self,
        chat_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        before: int | None = None,
    ) -> list[LocalMessage]:
        """Return up to `limit` of the newest messages older than `before`.

        The page is selected newest-first and returned in chronological order.
        Ties on `created_at` are broken by `id` so pagination is total.
        """
        stmt = select(LocalMessage).where(LocalMessage.chat_id == chat_id)
        if before is not None:
            stmt = stmt.where(LocalMessage.created_at < before)
        stmt = stmt.order_by(LocalMessage.created_at.desc(), LocalMessage.id.desc()).limit(limit)
        page = list(self.session.scalars(stmt))
        page.reverse()
        return page

    def delete(self, message_id: str, hard: bool) -> bool:
        """Delete a record locally.

        A hard delete removes the row; a soft delete marks it `is_deleted` so it
        stays visible to this device only. Returns False if the id is unknown.
        """
        message = self.get_by_id(message_id)
        if message is None:
            return False
        if hard:
            self.session.delete(message)
        else:
            message.is_deleted = True
            message.updated_at = self.clock()
        self.session.commit()
        return True

    def save(self, *messages: LocalMessage) -> None:
        """Commit in-place changes to already loaded records."""
        now = self.clock()
        for message in messages:
            message.updated_at = now
        self.session.commit()

    def get_many(self, message_ids: Iterable[str]) -> list[LocalMessage]:
        """Return the records for `message_ids` in the order given, skipping unknown ids."""
        ids = list(message_ids)
        if not ids:
            return []
        found = {m.id: m for m in self.session.scalars(select(LocalMessage).where(LocalMessage.id.in_(ids)))}
        return [found[i] for i in ids if i in found]

    def list_read_candidates(self, chat_id: str, reader_id: str) -> list[LocalMessage]:
        """Return messages in a chat that `reader_id` has not read yet.

        Only messages the relay already acknowledged qualify; unsent records
        cannot be read.
        """
        stmt = (
            select(LocalMessage)
            .where(
                LocalMessage.chat_id == chat_id,
                LocalMessage.sender_id != reader_id,
                LocalMessage.status.in_((STATUS_SENT, STATUS_DELIVERED)),
            )
            .order_by(LocalMessage.created_at, LocalMessage.id)
        )
        return list(self.session.scalars(stmt))

    def list_due_scheduled(self, now: int) -> list[LocalMessage]:
        """Return unsent scheduled records whose time has come."""
        stmt = (
            select(LocalMessage)
            .where(
                LocalMessage.status.in_((STATUS_PENDING, STATUS_SCHEDULED)),
                LocalMessage.synced_to_server.is_(False),
                LocalMessage.scheduled_for.is_not(None),
                LocalMessage.scheduled_for <= now,
            )
            .order_by(LocalMessage.scheduled_for, LocalMessage.id)
        )
        return list(self.session.scalars(stmt))

    def list_unsent(self, now: int, max_attempts: int, limit: int) -> list[LocalMessage]:
        """Return pending or failed records eligible for another send attempt."""
        stmt = (
            select(LocalMessage)
            .where(
                LocalMessage.status.in_((STATUS_PENDING, STATUS_FAILED)),
                LocalMessage.synced_to_server.is_(False),
                LocalMessage.send_attempts > 0,
                LocalMessage.send_attempts < max_attempts,
                or_(LocalMessage.scheduled_for.is_(None), LocalMessage.scheduled_for <= now),
            )
            .order_by(LocalMessage.created_at, LocalMessage.id)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def search(self, chat_id: str, text: str) -> list[LocalMessage]:
        """Return non-deleted messages in a chat containing `text`, case-insensitively."""
        stmt = (
            select(LocalMessage)
            .where(
                LocalMessage.chat_id == chat_id,
                LocalMessage.is_deleted.is_(False),
                func.lower(LocalMessage.content).contains(text.lower(), autoescape=True),
            )
            .order_by(LocalMessage.created_at, LocalMessage.id)
        )
        return list(self.session.scalars(stmt))

    def list_chat(self, chat_id: str) -> list[LocalMessage]:
        """Return every record in a chat in chronological order."""
        stmt = (
            select(LocalMessage)
            .where(LocalMessage.chat_id == chat_id)
            .order_by(LocalMessage.created_at, LocalMessage.id)
        )
        return list(self.session.scalars(stmt))

    def clear_chat(self, chat_id: str) -> int:
        """Hard-delete every record in a chat and return how many were removed."""
        messages = self.list_chat(chat_id)
        for message in messages:
            self.session.delete(message)
        self.session.commit()
        return len(messages)
