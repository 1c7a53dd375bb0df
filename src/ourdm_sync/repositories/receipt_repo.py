"""Data access helpers for the receipt log."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.models.receipt import ReceiptEvent

__all__ = ["ReceiptLog"]


class ReceiptLog:
    """Remembers which `(message_id, status)` receipts have been applied."""

    def __init__(self, session: Session, clock: Clock = now_ms) -> None:
        self.session = session
        self.clock = clock

    def get(self, message_id: str, status: str) -> ReceiptEvent | None:
        stmt = select(ReceiptEvent).where(
            ReceiptEvent.message_id == message_id,
            ReceiptEvent.status == status,
        )
        return self.session.scalars(stmt).first()

    def record(self, message_id: str, status: str, *, published: bool = False) -> ReceiptEvent | None:
        """Stage a receipt in the current transaction.

        Returns the new event, or None when the pair was already recorded. The
        caller commits together with the status change it belongs to.
        """
        if self.get(message_id, status) is not None:
            return None
        event = ReceiptEvent(
            message_id=message_id,
            status=status,
            recorded_at=self.clock(),
            published=published,
        )
        self.session.add(event)
        return event

    def mark_published(self, event: ReceiptEvent) -> None:
        event.published = True
        self.session.commit()

    def unpublished(self, limit: int) -> list[ReceiptEvent]:
        """Return receipts that have not reached the receipt feed yet."""
        stmt = (
            select(ReceiptEvent)
            .where(ReceiptEvent.published.is_(False))
            .order_by(ReceiptEvent.id)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))
